"""Logging setup shared by every sharepack module."""

import logging
import sys
from logging.handlers import RotatingFileHandler

from sharepack.config import env

_ROOT_NAME = "sharepack"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_configured = False


class CustomLogger(logging.Logger):
    """Logger with *_trace helpers that attach the current stack/exception."""

    def error_trace(self, msg, *args, **kwargs) -> None:
        """Log an error with the active exception's traceback."""
        kwargs.setdefault("exc_info", True)
        self.error(msg, *args, **kwargs)

    def warning_trace(self, msg, *args, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self.warning(msg, *args, **kwargs)

    def info_trace(self, msg, *args, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self.info(msg, *args, **kwargs)

    def debug_trace(self, msg, *args, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self.debug(msg, *args, **kwargs)


logging.setLoggerClass(CustomLogger)


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(getattr(logging, env.LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if env.ENABLE_LOGGING:
        try:
            env.LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                env.LOG_DIR / "sharepack.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"File logging disabled, cannot write to {env.LOG_DIR}: {e}")


def setup_logger(name: str) -> CustomLogger:
    """Return a module logger under the sharepack hierarchy."""
    _configure_root()
    if name != _ROOT_NAME and not name.startswith(_ROOT_NAME + "."):
        name = f"{_ROOT_NAME}.{name}"
    logger = logging.getLogger(name)
    if not isinstance(logger, CustomLogger):
        # Created before this module set the logger class; rebind its class.
        logger.__class__ = CustomLogger
    return logger
