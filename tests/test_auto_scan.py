import asyncio

from db.capture_store import CaptureStore
from engine.core import RecorderSettings
from engine.scanner import AutoScanScheduler
from engine.supervisor import AlreadyCapturing, CaptureSupervisor
from fakes import FakeClock, FakeSpawner, disk_usage


def _setup(tmp_path, spawner):
    store = CaptureStore(str(tmp_path / "db.sqlite"))
    store.ensure_schema()
    settings = RecorderSettings()
    supervisor = CaptureSupervisor(
        store,
        settings,
        recordings_dir=str(tmp_path / "recordings"),
        spawn=spawner,
        clock=FakeClock(),
        disk_usage=disk_usage(),
        shutdown_kill_grace=0.05,
    )
    scanner = AutoScanScheduler(supervisor, store, interval_seconds=60)
    return store, supervisor, scanner


def test_scan_starts_only_live_auto_capture_sources(tmp_path):
    spawner = FakeSpawner(live={"alice", "carol"})
    store, supervisor, scanner = _setup(tmp_path, spawner)
    alice = store.create_source("alice")
    store.create_source("bob")
    store.create_source("carol", auto_capture=False)

    async def scenario():
        summary = await scanner.scan()
        active = supervisor.list_active()
        await supervisor.shutdown()
        return summary, active

    summary, active = asyncio.run(scenario())
    assert summary.checked == 2
    assert summary.live == ["alice"]
    assert summary.started == ["alice"]
    assert [item["source_id"] for item in active] == [alice.id]


def test_scan_skips_sources_already_capturing(tmp_path):
    spawner = FakeSpawner(live={"alice"})
    store, supervisor, scanner = _setup(tmp_path, spawner)
    alice = store.create_source("alice")

    async def scenario():
        await supervisor.start(alice.id)
        probes_before = len(spawner.probes)
        summary = await scanner.scan()
        probes_after = len(spawner.probes)
        await supervisor.shutdown()
        return summary, probes_before, probes_after

    summary, probes_before, probes_after = asyncio.run(scenario())
    assert summary.skipped == ["alice"]
    assert summary.started == []
    assert probes_after == probes_before
    assert len(spawner.captures) == 1


def test_already_capturing_from_start_is_treated_as_benign(tmp_path, monkeypatch):
    spawner = FakeSpawner(live={"alice"})
    store, supervisor, scanner = _setup(tmp_path, spawner)
    store.create_source("alice")

    async def _raced_start(_source_id):
        raise AlreadyCapturing("Already capturing alice")

    monkeypatch.setattr(supervisor, "start", _raced_start)
    summary = asyncio.run(scanner.scan())
    assert summary.skipped == ["alice"]
    assert summary.failed == {}


def test_start_failures_are_recorded_in_summary(tmp_path):
    spawner = FakeSpawner(live={"alice"}, capture_error=OSError("exec format error"))
    store, _supervisor, scanner = _setup(tmp_path, spawner)
    store.create_source("alice")

    summary = asyncio.run(scanner.scan())
    assert summary.started == []
    assert "alice" in summary.failed


def test_trigger_skips_while_scan_in_progress(tmp_path):
    spawner = FakeSpawner(live=set(), probe_delay=0.1)
    store, _supervisor, scanner = _setup(tmp_path, spawner)
    store.create_source("alice")

    async def scenario():
        first = scanner.trigger()
        second = scanner.trigger()
        in_progress = scanner.scan_in_progress
        await scanner._scan_task
        third = scanner.trigger()
        await scanner._scan_task
        return first, second, in_progress, third

    first, second, in_progress, third = asyncio.run(scenario())
    assert (first, second, in_progress, third) == (True, False, True, True)
    assert scanner.scans_skipped == 1
    assert scanner.scans_completed == 2
    assert len(spawner.probes) == 2
    assert scanner.last_summary.checked == 1


def test_trigger_refused_after_shutdown(tmp_path):
    spawner = FakeSpawner(live={"alice"})
    _store, supervisor, scanner = _setup(tmp_path, spawner)

    async def scenario():
        await supervisor.shutdown()
        return scanner.trigger()

    assert asyncio.run(scenario()) is False


def test_scheduler_start_stop_and_status(tmp_path):
    spawner = FakeSpawner()
    _store, _supervisor, scanner = _setup(tmp_path, spawner)

    async def scenario():
        scanner.start()
        running = scanner.status()
        scanner.stop()
        return running, scanner.status()

    running, stopped = asyncio.run(scenario())
    assert running["running"] is True
    assert running["interval_seconds"] == 60
    assert running["next_scan_at"] is not None
    assert running["last_scan"] is None
    assert stopped["running"] is False
    assert stopped["next_scan_at"] is None


def test_manual_start_during_probe_is_skipped_by_scan(tmp_path):
    spawner = FakeSpawner(live={"alice"}, probe_delay=0.1)
    store, supervisor, scanner = _setup(tmp_path, spawner)
    alice = store.create_source("alice")

    async def scenario():
        scan = asyncio.ensure_future(scanner.scan())
        while not spawner.probes:
            await asyncio.sleep(0.005)
        manual = asyncio.ensure_future(supervisor.start(alice.id))
        summary = await scan
        capture_id = await manual
        await supervisor.shutdown()
        return summary, capture_id

    summary, capture_id = asyncio.run(scenario())

    assert summary.live == ["alice"]
    assert summary.skipped == ["alice"]
    assert summary.started == []
    assert summary.failed == {}
    assert len(spawner.captures) == 1
    assert [c.id for c in store.find_captures(source_id=alice.id)] == [capture_id]
