from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from media.path_builder import (
    build_capture_filename,
    build_capture_path,
    resolve_collision_path,
    sanitize_component,
)

_NOW = datetime(2026, 3, 14, 21, 5, 9, tzinfo=timezone.utc)


def test_filename_has_source_timestamp_and_suffix() -> None:
    name = build_capture_filename("alice", "mp4", now=_NOW)

    assert re.fullmatch(r"alice_2026-03-14T21-05-09_[0-9a-f]{8}\.mp4", name)


def test_same_second_captures_get_distinct_names() -> None:
    names = {build_capture_filename("alice", "mp4", now=_NOW) for _ in range(20)}

    assert len(names) == 20


def test_extension_leading_dot_is_ignored() -> None:
    assert build_capture_filename("alice", ".ts", now=_NOW).endswith(".ts")


def test_sanitize_component_strips_unsafe_characters() -> None:
    assert sanitize_component('bad:name/with*"chars"') == "badnamewithchars"
    assert sanitize_component("two  words") == "two_words"
    assert sanitize_component("") == "unknown"
    assert sanitize_component("...") == "unknown"


def test_build_capture_path_is_under_root(tmp_path: Path) -> None:
    path = build_capture_path(tmp_path, "alice", "mp4", now=_NOW)

    assert path.parent == tmp_path
    assert not path.exists()


def test_resolve_collision_path_appends_counter(tmp_path: Path) -> None:
    existing = tmp_path / "alice.mp4"
    existing.write_bytes(b"")
    (tmp_path / "alice (2).mp4").write_bytes(b"")

    assert resolve_collision_path(str(existing)) == str(tmp_path / "alice (3).mp4")
