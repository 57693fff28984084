from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from db.capture_store import CaptureStore


@pytest.fixture
def store(tmp_path) -> CaptureStore:
    store = CaptureStore(str(tmp_path / "db.sqlite"))
    store.ensure_schema()
    return store


def test_schema_is_idempotent(store: CaptureStore) -> None:
    store.ensure_schema()

    assert store.get_stats()["id"] == 1


def test_create_source_normalizes_username(store: CaptureStore) -> None:
    source = store.create_source("  Alice ")

    assert source.username == "alice"
    assert source.display_name == "  Alice "
    assert source.quality_preference == "best"
    assert source.eligible_for_auto_capture is True
    assert store.get_source_by_username("ALICE").id == source.id


def test_duplicate_username_is_rejected(store: CaptureStore) -> None:
    store.create_source("alice")

    with pytest.raises(sqlite3.IntegrityError):
        store.create_source("Alice")


def test_auto_capture_listing_respects_flags(store: CaptureStore) -> None:
    store.create_source("alice")
    store.create_source("bob", auto_capture=False)
    carol = store.create_source("carol")
    store.create_source("dave", monitoring_enabled=False)
    store.update_source(carol.id, is_active=False)

    assert [source.username for source in store.list_auto_capture_sources()] == ["alice"]
    assert len(store.list_sources()) == 3
    assert len(store.list_sources(include_inactive=True)) == 4


def test_finalize_capture_writes_terminal_state_once(store: CaptureStore) -> None:
    source = store.create_source("alice")
    capture = store.create_capture(source.id, file_path="/recordings/a.mp4", quality="best")

    assert capture.status == "active"
    assert store.finalize_capture(capture.id, status="completed", duration_seconds=3, file_size_bytes=1024)
    assert not store.finalize_capture(capture.id, status="stopped", duration_seconds=9, file_size_bytes=1)

    record = store.get_capture(capture.id)
    assert record.status == "completed"
    assert record.duration_seconds == 3
    assert record.file_size_bytes == 1024
    assert record.ended_at is not None
    assert record.source_username == "alice"


def test_finalize_rejects_non_terminal_status(store: CaptureStore) -> None:
    source = store.create_source("alice")
    capture = store.create_capture(source.id, file_path="/recordings/a.mp4")

    with pytest.raises(ValueError):
        store.finalize_capture(capture.id, status="active", duration_seconds=0, file_size_bytes=0)


def test_find_captures_filters(store: CaptureStore) -> None:
    alice = store.create_source("alice")
    bob = store.create_source("bob")
    first = store.create_capture(alice.id, file_path="/r/1.mp4", stream_title="Speedrun night")
    store.create_capture(bob.id, file_path="/r/2.mp4", stream_title="Cooking")
    store.finalize_capture(first.id, status="completed", duration_seconds=1, file_size_bytes=1)

    assert [c.id for c in store.find_captures(status="completed")] == [first.id]
    assert [c.source_id for c in store.find_captures(source_id=bob.id)] == [bob.id]
    assert [c.stream_title for c in store.find_captures(search="speedrun")] == ["Speedrun night"]
    assert store.find_active_capture(bob.id) is not None
    assert store.find_active_capture(alice.id) is None


def test_mark_orphaned_captures_stopped(store: CaptureStore) -> None:
    source = store.create_source("alice")
    now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    orphan = store.create_capture(
        source.id,
        file_path="/r/1.mp4",
        started_at=(now - timedelta(minutes=5)).isoformat(),
    )

    assert store.mark_orphaned_captures_stopped(now=now) == 1
    record = store.get_capture(orphan.id)
    assert record.status == "stopped"
    assert record.duration_seconds == 300
    assert record.ended_at == now.isoformat()
    assert store.mark_orphaned_captures_stopped(now=now) == 0


def test_orphaned_capture_size_is_read_from_disk(store: CaptureStore, tmp_path) -> None:
    source = store.create_source("alice")
    recording = tmp_path / "alice_partial.mp4"
    recording.write_bytes(b"\x00" * 2048)
    with_file = store.create_capture(source.id, file_path=str(recording))
    missing = store.create_capture(source.id, file_path=str(tmp_path / "gone.mp4"))

    assert store.mark_orphaned_captures_stopped() == 2

    assert store.get_capture(with_file.id).file_size_bytes == 2048
    assert store.get_capture(missing.id).file_size_bytes == 0


def test_log_trail_filters_and_retention(store: CaptureStore) -> None:
    source = store.create_source("alice")
    capture = store.create_capture(source.id, file_path="/r/1.mp4")
    store.append_log("Started capture to 1.mp4", capture_id=capture.id, source_name="alice", level="success")
    store.append_log("reload failed", capture_id=capture.id, source_name="alice", level="warn")
    store.append_log("unknown level", source_name="bob", level="debug")

    assert len(store.list_logs(capture_id=capture.id)) == 2
    assert [e.message for e in store.list_logs(level="warn")] == ["reload failed"]
    assert store.list_logs(source_name="bob")[0].level == "info"

    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE capture_logs SET created_at=? WHERE source_name='bob'", ("2000-01-01T00:00:00+00:00",))
    conn.commit()
    conn.close()

    assert store.clear_old_logs(days=7) == 1
    assert len(store.list_logs()) == 2


def test_stats_recalculation(store: CaptureStore) -> None:
    alice = store.create_source("alice")
    bob = store.create_source("bob")
    done = store.create_capture(alice.id, file_path="/r/1.mp4")
    failed = store.create_capture(bob.id, file_path="/r/2.mp4")
    store.create_capture(bob.id, file_path="/r/3.mp4")
    store.finalize_capture(done.id, status="completed", duration_seconds=10, file_size_bytes=5000)
    store.finalize_capture(failed.id, status="error", duration_seconds=0, file_size_bytes=0, error_message="boom")

    stats = store.recalculate_stats()
    assert stats["total_downloaded_bytes"] == 5000
    assert stats["total_captures"] == 3
    assert stats["total_sources"] == 2
    assert stats["active_captures"] == 1
    assert store.capture_counts() == {"total": 3, "active": 1, "completed": 1, "error": 1, "stopped": 0}

    system = store.get_system_stats(active_count=0)
    assert system["active_captures"] == 0
    assert system["capture_counts"]["error"] == 1
