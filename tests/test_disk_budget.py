from __future__ import annotations

import os
from collections import namedtuple

from engine.core import CaptureLimits
from engine.disk_budget import (
    CHECK_MAX_TOTAL,
    CHECK_MIN_FREE,
    check_disk_budget,
    format_bytes,
    get_disk_space_status,
    get_total_recordings_size_mb,
    measure_disk_usage,
)
from fakes import MB, disk_usage

_StatVFS = namedtuple("_StatVFS", "f_frsize f_blocks f_bavail f_bfree")


def _usage(free_mb, **kwargs):
    return disk_usage(free_mb, **kwargs)("/recordings")


def test_min_free_denies_when_free_space_below_threshold() -> None:
    result = check_disk_budget(_usage(100), CaptureLimits(min_free_disk_mb=5000))

    assert result.allowed is False
    assert result.check == CHECK_MIN_FREE
    assert result.reason.startswith("Insufficient disk space. Free: 100MB")
    assert "Required: 6000MB" in result.reason


def test_min_free_accounts_for_estimated_capture_size() -> None:
    limits = CaptureLimits(min_free_disk_mb=5000, estimated_capture_size_mb=1000)

    assert check_disk_budget(_usage(5500), limits).allowed is False
    assert check_disk_budget(_usage(6000), limits).allowed is True


def test_zero_limits_never_deny() -> None:
    result = check_disk_budget(_usage(0, recordings_mb=900_000), CaptureLimits())

    assert result.allowed is True
    assert result.reason is None


def test_total_captures_limit_denies() -> None:
    result = check_disk_budget(
        _usage(50_000, recordings_mb=9_500),
        CaptureLimits(max_total_captures_mb=10_000),
    )

    assert result.allowed is False
    assert result.check == CHECK_MAX_TOTAL
    assert "Current: 9500MB" in result.reason


def test_estimate_is_capped_by_per_capture_limit() -> None:
    result = check_disk_budget(
        _usage(50_000, recordings_mb=9_500),
        CaptureLimits(max_total_captures_mb=10_000, max_capture_size_mb=200),
    )

    assert result.estimated_size_mb == 200
    assert result.allowed is True
    assert result.max_capture_bytes == 200 * MB


def test_admitted_result_carries_summary() -> None:
    result = check_disk_budget(_usage(40_000), CaptureLimits(max_capture_duration_hours=2))

    assert result.summary() == "Disk space: 40000MB free (60% used)"
    assert result.max_duration_seconds == 7200


def test_recordings_size_ignores_hidden_files(tmp_path) -> None:
    (tmp_path / "a.mp4").write_bytes(b"x" * (2 * MB))
    (tmp_path / ".partial").write_bytes(b"x" * (5 * MB))
    nested = tmp_path / "sub"
    nested.mkdir()
    (nested / "b.mp4").write_bytes(b"x" * MB)

    assert get_total_recordings_size_mb(str(tmp_path)) == 3
    assert get_total_recordings_size_mb(str(tmp_path / "missing")) == 0


def test_measure_disk_usage_reads_statvfs(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(os, "statvfs", lambda _path: _StatVFS(4096, 1000, 200, 250), raising=False)

    usage = measure_disk_usage(str(tmp_path), include_recordings=False)

    assert usage.total_bytes == 4096 * 1000
    assert usage.free_bytes == 4096 * 200
    assert usage.used_percent == 75


def test_unreadable_filesystem_reports_no_free_space(tmp_path, monkeypatch) -> None:
    def _fail(_path):
        raise OSError("gone")

    monkeypatch.setattr(os, "statvfs", _fail, raising=False)

    usage = measure_disk_usage(str(tmp_path), include_recordings=False)
    assert usage.free_bytes == 0
    assert check_disk_budget(usage, CaptureLimits(min_free_disk_mb=1)).allowed is False


def test_disk_status_thresholds(tmp_path, monkeypatch) -> None:
    blocks = {"free": 100}
    monkeypatch.setattr(
        os,
        "statvfs",
        lambda _path: _StatVFS(1024, 1000, blocks["free"], blocks["free"]),
        raising=False,
    )

    assert get_disk_space_status(str(tmp_path))["status"] == "warning"
    blocks["free"] = 40
    assert get_disk_space_status(str(tmp_path))["status"] == "critical"
    blocks["free"] = 500
    status = get_disk_space_status(str(tmp_path))
    assert status["status"] == "ok"
    assert status["used_percentage"] == 50


def test_format_bytes() -> None:
    assert format_bytes(0) == "0 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(3 * 1024 ** 3) == "3 GB"
