import json
import logging
import os
from dataclasses import dataclass, field

from config.settings import (
    DEFAULT_CAPTURE_BINARY,
    DEFAULT_CAPTURE_FLAGS,
    DEFAULT_ESTIMATED_CAPTURE_SIZE_MB,
    DEFAULT_LIMIT_CHECK_SECONDS,
    DEFAULT_OUTPUT_EXTENSION,
    DEFAULT_SCAN_INTERVAL_SECONDS,
    DEFAULT_SOURCE_URL_TEMPLATE,
    MAX_SCAN_INTERVAL_SECONDS,
    MIN_SCAN_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

_LIMIT_KEYS = (
    "min_free_disk_mb",
    "max_capture_size_mb",
    "max_total_captures_mb",
    "max_capture_duration_hours",
)


@dataclass(frozen=True)
class CaptureLimits:
    """Disk and runtime limits for captures. A value of 0 always means no constraint."""

    min_free_disk_mb: int = 0
    max_capture_size_mb: int = 0
    max_total_captures_mb: int = 0
    max_capture_duration_hours: float = 0
    estimated_capture_size_mb: int = DEFAULT_ESTIMATED_CAPTURE_SIZE_MB

    @property
    def max_capture_bytes(self) -> int:
        return int(self.max_capture_size_mb) * 1024 * 1024

    @property
    def max_duration_seconds(self) -> float:
        return float(self.max_capture_duration_hours) * 3600.0


@dataclass(frozen=True)
class RecorderSettings:
    recordings_dir: str | None = None
    capture_binary: str = DEFAULT_CAPTURE_BINARY
    capture_flags: tuple[str, ...] = DEFAULT_CAPTURE_FLAGS
    source_url_template: str = DEFAULT_SOURCE_URL_TEMPLATE
    output_extension: str = DEFAULT_OUTPUT_EXTENSION
    scan_interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS
    scan_on_startup: bool = True
    limit_check_seconds: float = DEFAULT_LIMIT_CHECK_SECONDS
    log_capture_output: bool = True
    limits: CaptureLimits = field(default_factory=CaptureLimits)
    telegram: dict | None = None

    def source_url(self, name: str) -> str:
        return self.source_url_template.format(name=name)


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def load_config_or_default(path):
    """Read the config file, returning an empty config when the file is absent."""
    if not path or not os.path.exists(path):
        logger.info("No config file at %s; using defaults", path)
        return {}
    return load_config(path)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    recordings_dir = config.get("recordings_dir")
    if recordings_dir is not None and not isinstance(recordings_dir, str):
        errors.append("recordings_dir must be a string")

    capture_binary = config.get("capture_binary")
    if capture_binary is not None and (not isinstance(capture_binary, str) or not capture_binary.strip()):
        errors.append("capture_binary must be a non-empty string")

    capture_flags = config.get("capture_flags")
    if capture_flags is not None:
        if not isinstance(capture_flags, list) or not all(isinstance(f, str) for f in capture_flags):
            errors.append("capture_flags must be a list of strings")

    template = config.get("source_url_template")
    if template is not None:
        if not isinstance(template, str):
            errors.append("source_url_template must be a string")
        elif "{name}" not in template:
            errors.append("source_url_template must contain '{name}'")

    extension = config.get("output_extension")
    if extension is not None and (not isinstance(extension, str) or not extension.strip(".").strip()):
        errors.append("output_extension must be a non-empty string")

    for key in _LIMIT_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if not _is_number(value):
            errors.append(f"{key} must be a number")
        elif value < 0:
            errors.append(f"{key} must be >= 0 (0 = unlimited)")

    estimated = config.get("estimated_capture_size_mb")
    if estimated is not None:
        if not _is_number(estimated):
            errors.append("estimated_capture_size_mb must be a number")
        elif estimated < 0:
            errors.append("estimated_capture_size_mb must be >= 0")

    interval = config.get("scan_interval_seconds")
    if interval is not None:
        if not isinstance(interval, int) or isinstance(interval, bool):
            errors.append("scan_interval_seconds must be an integer")
        elif not (MIN_SCAN_INTERVAL_SECONDS <= interval <= MAX_SCAN_INTERVAL_SECONDS):
            errors.append(
                f"scan_interval_seconds must be between {MIN_SCAN_INTERVAL_SECONDS} "
                f"and {MAX_SCAN_INTERVAL_SECONDS}"
            )

    for key in ("scan_on_startup", "log_capture_output"):
        value = config.get(key)
        if value is not None and not isinstance(value, bool):
            errors.append(f"{key} must be true/false")

    limit_check = config.get("limit_check_seconds")
    if limit_check is not None:
        if not _is_number(limit_check):
            errors.append("limit_check_seconds must be a number")
        elif limit_check <= 0:
            errors.append("limit_check_seconds must be > 0")

    telegram = config.get("telegram")
    if telegram is not None:
        if not isinstance(telegram, dict):
            errors.append("telegram must be an object")
        else:
            for key in ("bot_token", "chat_id"):
                value = telegram.get(key)
                if value is not None and not isinstance(value, (str, int)):
                    errors.append(f"telegram.{key} must be a string")

    return errors


def settings_from_config(config):
    """Build ``RecorderSettings`` from a validated config dict."""
    config = config or {}
    limits = CaptureLimits(
        min_free_disk_mb=config.get("min_free_disk_mb", 0),
        max_capture_size_mb=config.get("max_capture_size_mb", 0),
        max_total_captures_mb=config.get("max_total_captures_mb", 0),
        max_capture_duration_hours=config.get("max_capture_duration_hours", 0),
        estimated_capture_size_mb=config.get("estimated_capture_size_mb", DEFAULT_ESTIMATED_CAPTURE_SIZE_MB),
    )
    flags = config.get("capture_flags")
    return RecorderSettings(
        recordings_dir=config.get("recordings_dir"),
        capture_binary=config.get("capture_binary") or DEFAULT_CAPTURE_BINARY,
        capture_flags=tuple(flags) if flags is not None else DEFAULT_CAPTURE_FLAGS,
        source_url_template=config.get("source_url_template") or DEFAULT_SOURCE_URL_TEMPLATE,
        output_extension=str(config.get("output_extension") or DEFAULT_OUTPUT_EXTENSION).lstrip("."),
        scan_interval_seconds=config.get("scan_interval_seconds", DEFAULT_SCAN_INTERVAL_SECONDS),
        scan_on_startup=config.get("scan_on_startup", True),
        limit_check_seconds=config.get("limit_check_seconds", DEFAULT_LIMIT_CHECK_SECONDS),
        log_capture_output=config.get("log_capture_output", True),
        limits=limits,
        telegram=config.get("telegram"),
    )
