from .core import (
    CaptureLimits,
    RecorderSettings,
    load_config,
    settings_from_config,
    validate_config,
)
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "CaptureLimits",
    "EnginePaths",
    "RecorderSettings",
    "get_runtime_info",
    "load_config",
    "settings_from_config",
    "validate_config",
]
