"""Runtime configuration facade over the settings registry."""

from typing import Any

from sharepack.core import settings_registry


class Config:
    """Look up registered settings by key.

    Values resolve ENV -> config file -> field default on every access, so
    tests can patch the environment without reloading modules.
    """

    def get(self, key: str, default: Any = None) -> Any:
        _ensure_settings_loaded()
        found = settings_registry.find_field(key)
        if found is None:
            return default
        tab_name, settings_field = found
        value = settings_registry.get_setting_value(settings_field, tab_name)
        return default if value is None else value

    def __getattr__(self, key: str) -> Any:
        if not key.isupper():
            raise AttributeError(key)
        _ensure_settings_loaded()
        if settings_registry.find_field(key) is None:
            raise AttributeError(f"Unknown setting: {key}")
        return self.get(key)


def _ensure_settings_loaded() -> None:
    # Registration happens as an import side effect.
    import sharepack.config.settings  # noqa: F401


config = Config()
