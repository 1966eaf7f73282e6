"""
Logging setup shared by every tabjar module.

Modules only ever call ``logging.getLogger(__name__)``; the handler and
formatter are attached once by :func:`setup_logging`, which the runner
calls before anything else.  Importing a module never touches handlers.
"""

from __future__ import annotations

import logging
from typing import Any

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    COLORS: dict[int, str] = {
        TRACE: "\033[0;37m",
        logging.DEBUG: "\033[0m",
        logging.INFO: "\033[34m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[1;31m",
        logging.CRITICAL: "\033[1;37;41m",
    }
    RESET: str = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        c = self.COLORS.get(record.levelno, self.RESET)
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}{self.RESET}"
        record.levelname = f"{c}{record.levelname:<8}{self.RESET}"
        return super().format(record)


LOG_FORMAT = "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"


def get_logger(name: str) -> CustomLogger:
    """Return a module logger typed as :class:`CustomLogger` (has ``trace``)."""
    return logging.getLogger(name)  # type: ignore[return-value]


def parse_level(level: str | int) -> int:
    """Accept ``"trace"``, ``"debug"``, ... or a numeric level."""
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name == "TRACE":
        return TRACE
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Attach the coloured stream handler to the ``tabjar`` logger tree.

    Calling it again only adjusts the level; it never stacks handlers.
    """
    root = logging.getLogger("tabjar")
    lvl = parse_level(level)
    root.setLevel(lvl)

    for h in root.handlers:
        if getattr(h, "_tabjar", False):
            h.setLevel(lvl)
            return root

    handler = logging.StreamHandler()
    handler.setLevel(lvl)
    handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    handler._tabjar = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root
