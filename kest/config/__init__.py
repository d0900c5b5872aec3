"""
kest.config - Project configuration (``.kest/config.yaml``).
"""

from .settings import (
    ENV_LOG_LEVEL,
    Defaults,
    Environment,
    KestSettings,
    find_project_root,
    load_settings,
    settings_from_dict,
)

__all__ = [
    "ENV_LOG_LEVEL",
    "Defaults",
    "Environment",
    "KestSettings",
    "find_project_root",
    "load_settings",
    "settings_from_dict",
]
