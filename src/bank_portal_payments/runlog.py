from __future__ import annotations

import logging
from typing import Optional


logger = logging.getLogger(__name__)


class RunLog:
    """
    Append-only, human-readable trace of one automation run.

    Lines are returned to the caller with the run result, so they are never reordered or
    dropped. Each line is also mirrored to the Python logger so it lands in the log file.
    """

    WARN_PREFIX = "[WARN] "
    ERROR_PREFIX = "ERROR: "

    def __init__(self, *, verbose: bool = False, name: Optional[str] = None) -> None:
        self.verbose = verbose
        self._lines: list[str] = []
        self._logger = logging.getLogger(name) if name else logger

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def info(self, message: str) -> None:
        self._lines.append(message)
        self._logger.info(message)

    def debug(self, message: str) -> None:
        # Debug lines only reach the run log in debug mode; the Python logger always sees them.
        if self.verbose:
            self._lines.append(message)
        self._logger.debug(message)

    def warning(self, message: str) -> None:
        self._lines.append(self.WARN_PREFIX + message)
        self._logger.warning(message)

    def error(self, message: str) -> None:
        self._lines.append(self.ERROR_PREFIX + message)
        self._logger.error(message)

    def warnings(self) -> list[str]:
        return [ln for ln in self._lines if ln.startswith(self.WARN_PREFIX)]

    def errors(self) -> list[str]:
        return [ln for ln in self._lines if ln.startswith(self.ERROR_PREFIX)]
