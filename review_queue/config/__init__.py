"""Configuration module for Review Queue."""

from review_queue.config.presets import BUILT_IN_PRESETS, ReviewPreset, apply_preset, get_preset
from review_queue.config.settings import MAX_WORKERS, Settings, get_settings, load_settings_from_yaml

__all__ = [
    "BUILT_IN_PRESETS",
    "MAX_WORKERS",
    "ReviewPreset",
    "Settings",
    "apply_preset",
    "get_preset",
    "get_settings",
    "load_settings_from_yaml",
]
