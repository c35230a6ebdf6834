"""Registry of typed settings, resolved ENV -> config file -> default.

Modules declare their settings with ``@register_settings``; each tab is
persisted as ``$CONFIG_DIR/settings/<tab>.json``. Environment values are
strings and are parsed by the field that owns them.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from sharepack.config.env import string_to_bool
from sharepack.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class FieldBase:
    key: str                              # Env var name and config file key
    label: str
    description: str = ""
    default: Any = None
    env_supported: bool = True

    secret = False

    def parse(self, raw: str) -> Any:
        return raw

    def display(self, value: Any) -> str:
        if self.secret and value:
            return "********"
        return repr(value)


@dataclass
class TextField(FieldBase):
    default: str = ""


@dataclass
class PasswordField(TextField):
    secret = True


@dataclass
class CheckboxField(FieldBase):
    default: bool = False

    def parse(self, raw: str) -> bool:
        return string_to_bool(raw)


@dataclass
class NumberField(FieldBase):
    """Integer or float, clamped to ``[min_value, max_value]``."""
    default: float = 0
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def parse(self, raw: str) -> Any:
        try:
            number = float(raw) if "." in raw else int(raw)
        except ValueError:
            logger.warning(f"{self.key}={raw!r} is not a number, using {self.default}")
            return self.default
        if self.min_value is not None and number < self.min_value:
            number = self.min_value
        if self.max_value is not None and number > self.max_value:
            number = self.max_value
        return number


@dataclass
class SelectField(FieldBase):
    options: List[Dict[str, str]] = field(default_factory=list)  # [{"value": ..., "label": ...}]

    def parse(self, raw: str) -> Any:
        allowed = [option["value"] for option in self.options]
        if allowed and raw not in allowed:
            logger.warning(f"{self.key}={raw!r} is not one of {allowed}, using {self.default!r}")
            return self.default
        return raw


@dataclass
class SettingsTab:
    name: str
    display_name: str
    fields: List[FieldBase] = field(default_factory=list)
    order: int = 100


_tabs: Dict[str, SettingsTab] = {}
_fields: Dict[str, Tuple[str, FieldBase]] = {}
_lock = Lock()


def register_settings(name: str, display_name: str, order: int = 100):
    """Decorator: register the fields returned by the wrapped function as a tab."""

    def decorator(func: Callable[[], List[FieldBase]]):
        fields = func()
        with _lock:
            _tabs[name] = SettingsTab(name, display_name, fields, order)
            for settings_field in fields:
                previous = _fields.get(settings_field.key)
                if previous and previous[0] != name:
                    logger.warning(f"Setting {settings_field.key} moved from tab {previous[0]} to {name}")
                _fields[settings_field.key] = (name, settings_field)
        logger.debug(f"Registered settings tab {name} with {len(fields)} field(s)")
        return func

    return decorator


def get_all_settings_tabs() -> List[SettingsTab]:
    with _lock:
        return sorted(_tabs.values(), key=lambda tab: (tab.order, tab.name))


def find_field(key: str) -> Optional[Tuple[str, FieldBase]]:
    """``(tab name, field)`` for ``key``, or None when nothing registered it."""
    with _lock:
        return _fields.get(key)


def _config_file(tab_name: str) -> Path:
    from sharepack.config import env
    return Path(env.CONFIG_DIR) / "settings" / f"{tab_name}.json"


def load_config_file(tab_name: str) -> Dict[str, Any]:
    path = _config_file(tab_name)
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error(f"Ignoring config file {path}: expected an object, got {type(data).__name__}")
        return {}
    return data


def save_config_file(tab_name: str, values: Dict[str, Any]) -> bool:
    """Merge ``values`` into the tab's config file. Returns False on I/O errors."""
    path = _config_file(tab_name)
    merged = load_config_file(tab_name)
    merged.update(values)
    tmp_path = path.with_suffix(".json.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(merged, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error(f"Could not save settings tab {tab_name} to {path}: {e}")
        return False
    logger.info(f"Saved {len(values)} setting(s) to {path}")
    return True


def is_value_from_env(settings_field: FieldBase) -> bool:
    return settings_field.env_supported and settings_field.key in os.environ


def get_setting_value(settings_field: FieldBase, tab_name: str) -> Any:
    if is_value_from_env(settings_field):
        return settings_field.parse(os.environ[settings_field.key])

    stored = load_config_file(tab_name)
    if settings_field.key in stored:
        return stored[settings_field.key]

    return settings_field.default


def describe_settings() -> List[str]:
    """``KEY = value (source)`` lines for every registered setting, secrets masked."""
    lines = []
    for tab in get_all_settings_tabs():
        stored = load_config_file(tab.name)
        for settings_field in tab.fields:
            if is_value_from_env(settings_field):
                source = "env"
            elif settings_field.key in stored:
                source = "config"
            else:
                source = "default"
            value = get_setting_value(settings_field, tab.name)
            lines.append(f"{settings_field.key} = {settings_field.display(value)} ({source})")
    return lines
