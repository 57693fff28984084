import asyncio
import signal
import tempfile
import unittest

from db.capture_store import CaptureStore
from engine.core import RecorderSettings
from engine.shutdown import ShutdownCoordinator
from engine.supervisor import CaptureSupervisor, ShuttingDown
from fakes import FakeClock, FakeSpawner, disk_usage


class _RecordingScanner:
    def __init__(self):
        self.stop_calls = 0

    def stop(self):
        self.stop_calls += 1


class ShutdownCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = CaptureStore(f"{self.tmpdir.name}/db.sqlite")
        self.store.ensure_schema()
        self.spawner = FakeSpawner(live={"alice", "bob"})
        self.supervisor = CaptureSupervisor(
            self.store,
            RecorderSettings(),
            recordings_dir=f"{self.tmpdir.name}/recordings",
            spawn=self.spawner,
            clock=FakeClock(),
            disk_usage=disk_usage(),
            shutdown_kill_grace=0.05,
        )
        self.scanner = _RecordingScanner()
        self.completed = []
        self.coordinator = ShutdownCoordinator(
            self.supervisor,
            self.scanner,
            on_complete=lambda: self.completed.append(True),
        )

    async def asyncTearDown(self):
        self.coordinator.uninstall()
        self.tmpdir.cleanup()

    async def test_shutdown_drains_active_captures(self):
        alice = self.store.create_source("alice")
        bob = self.store.create_source("bob")
        first = await self.supervisor.start(alice.id)
        second = await self.supervisor.start(bob.id)

        await self.coordinator.shutdown(reason="test")

        self.assertEqual(self.supervisor.active_count(), 0)
        self.assertEqual(self.store.get_capture(first).status, "stopped")
        self.assertEqual(self.store.get_capture(second).status, "stopped")
        self.assertEqual(self.scanner.stop_calls, 1)
        self.assertEqual(self.completed, [True])
        self.assertTrue(self.coordinator.done)

    async def test_second_trigger_is_a_no_op(self):
        first = self.coordinator.request_shutdown(reason="SIGTERM")
        second = self.coordinator.request_shutdown(reason="SIGINT")
        self.assertIs(first, second)
        await asyncio.gather(self.coordinator.shutdown(), first)
        self.assertEqual(self.coordinator.reason, "SIGTERM")
        self.assertEqual(self.scanner.stop_calls, 1)
        self.assertEqual(self.completed, [True])

    async def test_new_starts_rejected_as_soon_as_shutdown_requested(self):
        alice = self.store.create_source("alice")
        self.coordinator.request_shutdown(reason="test")
        with self.assertRaises(ShuttingDown):
            await self.supervisor.start(alice.id)
        await self.coordinator.wait()

    async def test_signal_handler_triggers_shutdown(self):
        self.coordinator._on_signal(signal.SIGTERM)
        await self.coordinator.wait()
        self.assertEqual(self.coordinator.reason, "SIGTERM")
        self.assertTrue(self.supervisor.shutting_down)

    async def test_unhandled_loop_fault_triggers_shutdown(self):
        loop = asyncio.get_running_loop()
        with self.assertLogs(level="ERROR"):
            self.coordinator._on_loop_exception(
                loop,
                {"message": "Task exception was never retrieved", "exception": RuntimeError("boom")},
            )
        await self.coordinator.wait()
        self.assertEqual(self.coordinator.reason, "fault: RuntimeError")

    async def test_loop_message_without_exception_is_ignored(self):
        loop = asyncio.get_running_loop()
        with self.assertLogs(level="ERROR"):
            self.coordinator._on_loop_exception(loop, {"message": "socket warning"})
        self.assertFalse(self.coordinator.started)

    async def test_install_registers_exception_handler(self):
        loop = asyncio.get_running_loop()
        self.coordinator.install(loop)
        self.assertEqual(loop.get_exception_handler(), self.coordinator._on_loop_exception)
        self.coordinator.uninstall()
        self.assertIsNone(loop.get_exception_handler())

    async def test_wait_resolves_once_another_caller_requests_shutdown(self):
        waiter = asyncio.ensure_future(self.coordinator.wait())
        await asyncio.sleep(0.01)
        self.assertFalse(waiter.done())

        self.coordinator.request_shutdown(reason="api")
        await asyncio.wait_for(waiter, timeout=1.0)

        self.assertTrue(self.coordinator.done)
        self.assertEqual(self.completed, [True])
