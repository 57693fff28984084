"""Disk budget admission gate for new captures.

``check_disk_budget`` is pure: it decides from already-measured filesystem facts
and the configured limits. ``measure_disk_usage`` gathers those facts, and
``evaluate_disk_budget`` does both for callers that just want a decision.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass

from config.settings import DISK_CRITICAL_PERCENT, DISK_WARNING_PERCENT
from engine.core import CaptureLimits

logger = logging.getLogger(__name__)

_MB = 1024 * 1024

CHECK_MIN_FREE = "min_free_disk"
CHECK_MAX_TOTAL = "max_total_captures"


@dataclass(frozen=True)
class DiskUsage:
    total_bytes: int
    free_bytes: int
    used_bytes: int
    used_percent: int
    recordings_bytes: int = 0

    @property
    def free_mb(self) -> int:
        return self.free_bytes // _MB

    @property
    def recordings_mb(self) -> int:
        return self.recordings_bytes // _MB


@dataclass(frozen=True)
class DiskCheckResult:
    allowed: bool
    free_space_mb: int
    used_percentage: int
    recordings_size_mb: int
    estimated_size_mb: int
    reason: str | None = None
    check: str | None = None
    max_capture_bytes: int = 0
    max_duration_seconds: float = 0

    def summary(self) -> str:
        return f"Disk space: {self.free_space_mb}MB free ({self.used_percentage}% used)"

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def get_total_recordings_size_bytes(recordings_dir) -> int:
    total_bytes = 0
    if not os.path.isdir(recordings_dir):
        return total_bytes
    for root, dirs, files in os.walk(recordings_dir):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        for name in files:
            if name.startswith("."):
                continue
            try:
                total_bytes += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total_bytes


def get_total_recordings_size_mb(recordings_dir) -> int:
    return get_total_recordings_size_bytes(recordings_dir) // _MB


def measure_disk_usage(path, *, include_recordings=True) -> DiskUsage:
    """Read free/used space for the filesystem holding ``path``.

    Unreadable filesystems report zero free space so that a configured
    minimum-free limit denies rather than admits.
    """
    recordings_bytes = get_total_recordings_size_bytes(path) if include_recordings else 0
    try:
        stat = os.statvfs(path)
    except OSError:
        logger.exception("Failed to read disk usage for %s", path)
        return DiskUsage(0, 0, 0, 0, recordings_bytes)
    total = stat.f_frsize * stat.f_blocks
    available = stat.f_frsize * stat.f_bavail
    used = total - stat.f_frsize * stat.f_bfree
    used_percent = round((used / total) * 100) if total else 0
    return DiskUsage(
        total_bytes=total,
        free_bytes=available,
        used_bytes=used,
        used_percent=used_percent,
        recordings_bytes=recordings_bytes,
    )


def _estimated_size_mb(limits: CaptureLimits) -> int:
    estimate = int(limits.estimated_capture_size_mb or 0)
    if limits.max_capture_size_mb and limits.max_capture_size_mb > 0:
        estimate = min(estimate, int(limits.max_capture_size_mb))
    return max(0, estimate)


def check_disk_budget(usage: DiskUsage, limits: CaptureLimits) -> DiskCheckResult:
    """Admit or deny a new capture given measured usage and configured limits."""
    free_mb = usage.free_mb
    recordings_mb = usage.recordings_mb
    estimate = _estimated_size_mb(limits)
    base = {
        "free_space_mb": free_mb,
        "used_percentage": usage.used_percent,
        "recordings_size_mb": recordings_mb,
        "estimated_size_mb": estimate,
        "max_capture_bytes": limits.max_capture_bytes,
        "max_duration_seconds": limits.max_duration_seconds,
    }

    min_free = int(limits.min_free_disk_mb or 0)
    if min_free > 0 and free_mb < min_free + estimate:
        return DiskCheckResult(
            allowed=False,
            check=CHECK_MIN_FREE,
            reason=(
                f"Insufficient disk space. Free: {free_mb}MB, Required: {min_free + estimate}MB "
                f"(min free: {min_free}MB + estimated: {estimate}MB)"
            ),
            **base,
        )

    max_total = int(limits.max_total_captures_mb or 0)
    if max_total > 0 and recordings_mb + estimate > max_total:
        return DiskCheckResult(
            allowed=False,
            check=CHECK_MAX_TOTAL,
            reason=(
                f"Total captures size limit would be exceeded. Current: {recordings_mb}MB, "
                f"Limit: {max_total}MB"
            ),
            **base,
        )

    return DiskCheckResult(allowed=True, **base)


def evaluate_disk_budget(recordings_dir, limits: CaptureLimits) -> DiskCheckResult:
    include_recordings = bool(limits.max_total_captures_mb and limits.max_total_captures_mb > 0)
    return check_disk_budget(measure_disk_usage(recordings_dir, include_recordings=include_recordings), limits)


def format_bytes(num_bytes) -> str:
    if not num_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    index = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / (1024 ** index), 2)
    return f"{value:g} {units[index]}"


def get_disk_space_status(recordings_dir) -> dict:
    usage = measure_disk_usage(recordings_dir, include_recordings=False)
    status = "ok"
    if usage.used_percent >= DISK_CRITICAL_PERCENT:
        status = "critical"
    elif usage.used_percent >= DISK_WARNING_PERCENT:
        status = "warning"
    return {
        "total": format_bytes(usage.total_bytes),
        "used": format_bytes(usage.used_bytes),
        "free": format_bytes(usage.free_bytes),
        "used_percentage": usage.used_percent,
        "status": status,
    }
