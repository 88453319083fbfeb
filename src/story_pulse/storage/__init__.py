"""Settings persistence."""

from story_pulse.storage.settings_store import (
    MemorySettingsStore,
    SettingsStore,
    SqlSettingsStore,
    load_device_settings,
    save_device_settings,
)

__all__ = [
    "MemorySettingsStore",
    "SettingsStore",
    "SqlSettingsStore",
    "load_device_settings",
    "save_device_settings",
]
