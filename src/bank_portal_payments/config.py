from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_LOGIN_URL = "https://empresas.bancogalicia.com.ar/login"

# Delays that pace human-like interaction; fast mode halves these.
# Navigation settles and timeouts are left alone: the portal decides how long those take.
INTERACTION_DELAYS = frozenset(
    {
        "key_delay",
        "login_key_delay",
        "post_field_delay",
        "after_filled_delay",
        "after_add_delay",
        "add_settle",
    }
)


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


@dataclass(frozen=True)
class PortalCredentials:
    username: str
    password: str

    def is_complete(self) -> bool:
        return bool((self.username or "").strip()) and bool((self.password or "").strip())


class TimingConfig(BaseModel):
    """
    Human-paced defaults (milliseconds). The portal exposes no "ready" signal, so most of
    these were tuned by watching it.
    """

    model_config = ConfigDict(frozen=True)

    key_delay_ms: int = 50
    login_key_delay_ms: int = 70
    post_field_delay_ms: int = 800
    after_filled_delay_ms: int = 1500
    after_add_delay_ms: int = 400
    add_settle_ms: int = 2500
    add_confirm_timeout_ms: int = 15_000

    login_settle_ms: int = 4000
    dashboard_settle_ms: int = 6000
    menu_settle_ms: int = 7000
    account_resolve_ms: int = 2000
    continue_progress_timeout_ms: int = 12_000

    login_timeout_ms: int = 60_000
    otp_detect_timeout_ms: int = 180_000
    success_timeout_ms: int = 120_000
    manual_success_timeout_ms: int = 1_800_000

    poll_interval_ms: int = 500
    confirmation_poll_ms: int = 750

    @field_validator("*")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timing values must be >= 0")
        return v


class AutomationConfig(BaseModel):
    """
    Everything one automation run needs. Built once, never mutated, passed to every component.
    """

    model_config = ConfigDict(frozen=True)

    login_url: str = DEFAULT_LOGIN_URL
    username: str = ""
    password: str = Field(default="", repr=False)

    # Manual OTP is the safe default: a human types the code into the live browser.
    manual_otp: bool = True
    otp_code: str = Field(default="", repr=False)

    fast_mode: bool = True
    debug: bool = False
    screenshots: bool = False
    screenshot_dir: str = "debug-screenshots"

    # Some date pickers only close on a click outside every frame.
    date_corner_click: bool = False

    headless: bool = False
    slow_mo_ms: int = 0
    viewport_width: int = 1400
    viewport_height: int = 900
    profile_root: str = "."

    timing: TimingConfig = TimingConfig()

    @property
    def credentials(self) -> PortalCredentials:
        return PortalCredentials(username=self.username, password=self.password)

    @property
    def screenshots_enabled(self) -> bool:
        return self.debug and self.screenshots

    def delay_ms(self, name: str) -> int:
        value = int(getattr(self.timing, f"{name}_ms"))
        if self.fast_mode and name in INTERACTION_DELAYS:
            return value // 2
        return value

    def profile_dir(self, profile_name: str) -> Path:
        return Path(self.profile_root) / profile_name

    def success_timeout_for(self, *, manual: bool) -> int:
        base = self.timing.success_timeout_ms
        if manual:
            return max(base, self.timing.manual_success_timeout_ms)
        return base


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = ".data/automation.log"


class StoreConfig(BaseModel):
    data_dir: str = ".data"


class AppConfig(BaseModel):
    automation: AutomationConfig = AutomationConfig()
    logging: LoggingConfig = LoggingConfig()
    store: StoreConfig = StoreConfig()


_TIMING_ENV = {
    "key_delay_ms": "PORTAL_KEY_DELAY_MS",
    "post_field_delay_ms": "PORTAL_POST_FIELD_DELAY_MS",
    "after_filled_delay_ms": "PORTAL_AFTER_FILLED_DELAY_MS",
    "after_add_delay_ms": "PORTAL_AFTER_ADD_DELAY_MS",
    "add_confirm_timeout_ms": "PORTAL_ADD_CONFIRM_TIMEOUT_MS",
    "otp_detect_timeout_ms": "OTP_DETECT_TIMEOUT_MS",
    "success_timeout_ms": "SUCCESS_DETECT_TIMEOUT_MS",
    "manual_success_timeout_ms": "MANUAL_SUCCESS_TIMEOUT_MS",
    "login_timeout_ms": "PORTAL_LOGIN_TIMEOUT_MS",
}


def _timing_from_env() -> dict:
    out: dict = {}
    for field, var in _TIMING_ENV.items():
        raw = (os.getenv(var, "") or "").strip()
        if raw:
            out[field] = int(raw)
    return out


def _default_config_from_env() -> dict:
    """
    Env-only config so most setups only need `.env`; YAML stays an optional override.
    """
    return {
        "automation": {
            "login_url": os.getenv("PORTAL_LOGIN_URL", DEFAULT_LOGIN_URL),
            "username": os.getenv("PORTAL_USERNAME", ""),
            "password": os.getenv("PORTAL_PASSWORD", ""),
            "manual_otp": _env_bool("PORTAL_MANUAL_OTP", default=True),
            "otp_code": os.getenv("OTP_CODE", ""),
            "fast_mode": _env_bool("PORTAL_FAST", default=True),
            "debug": _env_bool("PORTAL_DEBUG", default=False),
            "screenshots": _env_bool("PORTAL_SCREENSHOTS", default=False),
            "screenshot_dir": os.getenv("PORTAL_SCREENSHOT_DIR", "debug-screenshots"),
            "date_corner_click": _env_bool("PORTAL_DATE_CORNER_CLICK", default=False),
            "headless": _env_bool("PORTAL_HEADLESS", default=False),
            "profile_root": os.getenv("PORTAL_PROFILE_ROOT", "."),
            "timing": _timing_from_env(),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", ".data/automation.log"),
        },
        "store": {
            "data_dir": os.getenv("STORE_DATA_DIR", ".data"),
        },
    }


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
