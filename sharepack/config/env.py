"""Bootstrap configuration read from the environment.

These values are needed before the settings registry is available (log and
config locations), so they are plain module attributes.
"""

import os
from pathlib import Path


def string_to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "yes", "1", "y", "on")


_DEFAULT_HOME = Path.home() / ".sharepack"

CONFIG_DIR = Path(os.getenv("CONFIG_DIR", str(_DEFAULT_HOME)))
LOG_DIR = Path(os.getenv("LOG_ROOT", str(CONFIG_DIR / "logs")))
TMP_DIR = Path(os.getenv("TMP_DIR", str(CONFIG_DIR / "tmp")))

DEBUG = string_to_bool(os.getenv("DEBUG", "false"))
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "false"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()
