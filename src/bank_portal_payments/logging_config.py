import logging
import os
from pathlib import Path
from typing import Iterable, Optional


MASK = "***"


class SecretMaskFilter(logging.Filter):
    """Replace portal secrets (password, OTP code) in formatted log messages."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        # longest first so a secret containing another is masked whole
        self.secrets = sorted({s for s in secrets if s and len(s) >= 4}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self.secrets:
            masked = masked.replace(secret, MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(
    level: str = "INFO",
    file_path: Optional[str] = None,
    *,
    secrets: Iterable[str] = (),
) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    mask = SecretMaskFilter(secrets)
    for handler in handlers:
        handler.addFilter(mask)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # the CLI reconfigures once the config file is loaded
    )

    # Playwright's driver logs every protocol hop at DEBUG.
    for noisy in ("playwright", "asyncio"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
