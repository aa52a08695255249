from .core import (
    APISettings,
    DatabaseSettings,
    PolicySettings,
    SecuritySettings,
    Settings,
    last_yaml_path,
    load_settings,
    sanitize_dict,
)

__all__ = [
    "APISettings",
    "DatabaseSettings",
    "PolicySettings",
    "SecuritySettings",
    "Settings",
    "last_yaml_path",
    "load_settings",
    "sanitize_dict",
]
