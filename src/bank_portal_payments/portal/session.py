from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from ..config import AutomationConfig, PortalCredentials
from ..runlog import RunLog
from .errors import AuthenticationError, LoginTimeoutError, MissingCredentialsError
from .page_facts import collect_facts, first_match, poll
from .selectors import DEFAULT_SELECTORS, PortalSelectors


logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class Session:
    """
    A live, logged-in browser page owned by exactly one automation run.

    All waiting goes through `sleep`/`now` so a run can be replayed against a fake page
    with a simulated clock.
    """

    def __init__(
        self,
        *,
        page: Any,
        config: AutomationConfig,
        log: RunLog,
        context: Any = None,
        playwright: Any = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.page = page
        self.context = context
        self.config = config
        self.log = log
        self._playwright = playwright
        self._clock = clock or _monotonic_ms
        self._shot_counter = 0
        self.closed = False

    def now(self) -> float:
        return self._clock()

    def sleep(self, ms: int) -> None:
        if ms > 0:
            self.page.wait_for_timeout(ms)

    @property
    def keyboard(self) -> Any:
        return self.page.keyboard

    def scopes(self) -> list[Any]:
        """Main frame first, then every child frame in document order."""
        main = self.page.main_frame
        return [main] + [f for f in self.page.frames if f is not main]

    def press(self, key: str) -> None:
        try:
            self.page.keyboard.press(key)
        except PlaywrightError:
            logger.debug("Key press failed (key=%s).", key, exc_info=True)

    def capture(self, stage: str) -> Optional[Path]:
        """
        Save a stage screenshot when debug screenshots are enabled. Never fails the run.
        """
        if not self.config.screenshots_enabled:
            return None
        self._shot_counter += 1
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", stage).strip("_")[:60] or "stage"
        out_dir = Path(self.config.screenshot_dir)
        path = out_dir / f"{int(time.time() * 1000)}-{self._shot_counter:02d}-{safe}.png"
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(path), full_page=True)
        except (PlaywrightError, OSError):
            logger.debug("Failed to save stage screenshot (stage=%s).", stage, exc_info=True)
            return None
        self.log.debug(f"[screenshot] {path}")
        return path

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if self.context is not None:
                self.context.close()
        except PlaywrightError:
            logger.debug("Failed to close browser context.", exc_info=True)
        finally:
            if self._playwright is not None:
                try:
                    self._playwright.stop()
                except PlaywrightError:
                    logger.debug("Failed to stop Playwright.", exc_info=True)


class SessionController:
    """
    Launches the per-flow persistent browser profile and logs in.

    The profile directory is fixed per flow so the bank's device trust survives between
    runs; it is never cleaned up here.
    """

    def __init__(
        self,
        config: AutomationConfig,
        log: RunLog,
        *,
        profile_name: str,
        selectors: Optional[PortalSelectors] = None,
    ) -> None:
        self.config = config
        self.log = log
        self.profile_name = profile_name
        self.selectors = selectors or DEFAULT_SELECTORS

    def open(self, credentials: Optional[PortalCredentials] = None) -> Session:
        creds = credentials or self.config.credentials
        if not creds.is_complete():
            raise MissingCredentialsError("Missing portal credentials (set PORTAL_USERNAME and PORTAL_PASSWORD in .env)")

        self.log.info("Opening browser...")
        session = self._launch()
        try:
            self.login(session, creds)
        except BaseException:
            session.capture("login-failure")
            session.close()
            raise
        return session

    def _launch(self) -> Session:
        cfg = self.config
        profile = cfg.profile_dir(self.profile_name)
        profile.mkdir(parents=True, exist_ok=True)

        pw = sync_playwright().start()
        launch_kwargs = {
            "user_data_dir": str(profile),
            "headless": cfg.headless,
            "slow_mo": int(cfg.slow_mo_ms or 0),
            "viewport": {"width": cfg.viewport_width, "height": cfg.viewport_height},
            "args": ["--no-sandbox", "--disable-setuid-sandbox"],
        }
        try:
            # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser.
            try:
                context = pw.chromium.launch_persistent_context(**launch_kwargs)
            except PlaywrightError as e:
                msg = str(e)
                if "Executable doesn't exist" not in msg:
                    raise
                logger.warning(
                    "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                    msg,
                )
                try:
                    context = pw.chromium.launch_persistent_context(channel="chrome", **launch_kwargs)
                except PlaywrightError:
                    context = pw.chromium.launch_persistent_context(channel="msedge", **launch_kwargs)
        except BaseException:
            pw.stop()
            raise

        page = context.pages[0] if context.pages else context.new_page()
        logger.info("Browser launched with profile=%s", profile)
        return Session(page=page, context=context, playwright=pw, config=cfg, log=self.log)

    def login(self, session: Session, creds: PortalCredentials) -> None:
        cfg = self.config
        sel = self.selectors
        page = session.page

        self.log.info("Logging in...")
        page.goto(cfg.login_url, wait_until="domcontentloaded")
        session.sleep(cfg.delay_ms("login_settle"))
        session.capture("login-page")

        frame = self._find_auth_frame(session)
        inputs = frame.locator(sel.login_input)
        if inputs.count() < 2:
            raise AuthenticationError("Login form not found (expected username and password inputs)")

        key_delay = cfg.delay_ms("login_key_delay")
        for idx, value in ((0, creds.username), (1, creds.password)):
            field = inputs.nth(idx)
            field.focus()
            session.keyboard.type(value, delay=key_delay)
        session.capture("login-filled")

        submit = frame.locator(sel.login_submit)
        if submit.count() > 0:
            submit.nth(0).click()
        elif frame.locator(sel.login_any_button).count() > 0:
            frame.locator(sel.login_any_button).nth(0).click()
        else:
            session.press("Enter")

        landed = poll(
            lambda: first_match(collect_facts(session.scopes()), sel.landing_marker),
            now=session.now,
            sleep=session.sleep,
            timeout_ms=cfg.timing.login_timeout_ms,
            interval_ms=cfg.timing.poll_interval_ms,
        )
        if landed is None:
            raise LoginTimeoutError(
                f"Login did not reach the accounts dashboard within {cfg.timing.login_timeout_ms / 1000:.0f}s"
            )
        session.capture("logged-in")
        self.log.info("Login OK.")

    def _find_auth_frame(self, session: Session) -> Any:
        """
        The login form lives in an iframe on some page versions; pick the frame whose HTML
        mentions the username/password keywords, falling back to the main frame.
        """
        keywords = self.selectors.auth_frame_keywords

        def _probe() -> Any:
            for frame in session.scopes():
                try:
                    html = (frame.content() or "").lower()
                except PlaywrightError:
                    continue
                if any(k in html for k in keywords):
                    return frame
            return None

        for _ in range(10):
            frame = _probe()
            if frame is not None:
                if frame is not session.page.main_frame:
                    self.log.debug("[login] Auth form found inside a frame.")
                return frame
            session.sleep(self.config.timing.poll_interval_ms)

        self.log.debug("[login] Auth frame not identified; using main frame.")
        return session.page.main_frame

