"""Capture supervision: owns the active-capture table and every capture's lifecycle.

All mutation of in-memory state happens on the event loop thread. Exclusivity
checks are repeated synchronously after every suspension point, and the only
way a handle leaves the active table is ``_release_handle``; whoever receives
the handle from it is the single writer of the terminal record.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import anyio

from config.settings import (
    DEFAULT_QUALITY,
    ESTIMATED_MB_PER_SECOND_PER_CAPTURE,
    SHUTDOWN_KILL_GRACE_SECONDS,
    SHUTDOWN_PENDING_START_WAIT_SECONDS,
    STOP_GRACE_SECONDS,
)
from db.capture_store import (
    CAPTURE_STATUS_COMPLETED,
    CAPTURE_STATUS_ERROR,
    CAPTURE_STATUS_STOPPED,
    CaptureStore,
    Source,
)
from engine.core import RecorderSettings
from engine.disk_budget import DiskCheckResult, DiskUsage, check_disk_budget, format_bytes, measure_disk_usage
from engine.prober import NOT_LIVE, ProbeResult, StreamProber
from media.path_builder import build_capture_path, ensure_parent_dir

logger = logging.getLogger(__name__)

EVENT_CAPTURE_STARTED = "capture_started"
EVENT_CAPTURE_ENDED = "capture_ended"

_OUTPUT_DRAIN_TIMEOUT_SECONDS = 2.0


class CaptureError(Exception):
    """Base class for rejected capture requests; the message is user-facing."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SourceNotFound(CaptureError):
    pass


class AlreadyCapturing(CaptureError):
    pass


class ShuttingDown(CaptureError):
    pass


class InsufficientResources(CaptureError):
    def __init__(self, reason: str, *, check: str | None = None, result: DiskCheckResult | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.check = check
        self.result = result


class ProcessSpawnFailure(CaptureError):
    pass


@dataclass(frozen=True)
class CaptureEvent:
    kind: str
    capture_id: int
    source_id: int
    source_name: str
    status: str | None = None
    exit_code: int | None = None
    duration_seconds: int | None = None
    file_size_bytes: int | None = None


@dataclass(eq=False)
class ActiveCapture:
    process: Any
    capture_id: int
    source_id: int
    source_name: str
    started_at: datetime
    started_monotonic: float
    file_path: str
    max_capture_bytes: int = 0
    max_duration_seconds: float = 0
    stop_requested: bool = False
    stop_reason: str | None = None
    last_stderr: str | None = None
    monitor: asyncio.Task | None = field(default=None, repr=False)
    kill_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def view(self) -> dict:
        return {
            "capture_id": self.capture_id,
            "source_id": self.source_id,
            "source_name": self.source_name,
            "started_at": self.started_at.isoformat(),
            "file_path": self.file_path,
        }


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except (TypeError, ValueError) as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


def _file_size(path) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def _signal_quietly(proc, method: str) -> None:
    try:
        if proc.returncode is None:
            getattr(proc, method)()
    except ProcessLookupError:
        pass


class CaptureSupervisor:
    def __init__(
        self,
        store: CaptureStore,
        settings: RecorderSettings,
        *,
        recordings_dir: str,
        prober: StreamProber | None = None,
        spawn: Callable[..., Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        disk_usage: Callable[[str], DiskUsage] | None = None,
        stop_grace: float = STOP_GRACE_SECONDS,
        shutdown_kill_grace: float = SHUTDOWN_KILL_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.settings = settings
        self.recordings_dir = recordings_dir
        self._spawn = spawn or asyncio.create_subprocess_exec
        self.prober = prober or StreamProber(settings, spawn=self._spawn)
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc).replace(microsecond=0))
        self._disk_usage = disk_usage or functools.partial(
            measure_disk_usage,
            include_recordings=bool(settings.limits.max_total_captures_mb),
        )
        self._stop_grace = stop_grace
        self._shutdown_kill_grace = shutdown_kill_grace

        self._active: dict[int, ActiveCapture] = {}
        self._starting: set[int] = set()
        self._shutting_down = False
        self._shutdown_task: asyncio.Future | None = None
        self._listeners: list[Callable[[CaptureEvent], Any]] = []
        self._listener_tasks: set[asyncio.Future] = set()
        # Exit finalizations that already own a released handle.
        self._exit_tasks: set[asyncio.Future] = set()

    # --- helpers

    async def _io(self, fn, *args, **kwargs):
        return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))

    async def _append_log(self, message, *, capture_id=None, source_name=None, level="info"):
        try:
            await self._io(
                self.store.append_log,
                message,
                capture_id=capture_id,
                source_name=source_name,
                level=level,
            )
        except sqlite3.Error:
            logger.exception("Failed to append capture log source=%s capture_id=%s", source_name, capture_id)

    async def _recalculate_stats(self):
        try:
            await self._io(self.store.recalculate_stats)
        except sqlite3.Error:
            logger.exception("Failed to recalculate capture stats")

    def _check_disk_budget(self) -> DiskCheckResult:
        return check_disk_budget(self._disk_usage(self.recordings_dir), self.settings.limits)

    def build_capture_argv(self, source: Source, output_path) -> list[str]:
        return [
            self.settings.capture_binary,
            *self.settings.capture_flags,
            "-o",
            str(output_path),
            self.settings.source_url(source.username),
            source.quality_preference or DEFAULT_QUALITY,
        ]

    # --- observers

    def subscribe(self, callback: Callable[[CaptureEvent], Any]) -> Callable[[], None]:
        """Register a listener for capture events. Returns an unsubscribe callable."""
        self._listeners.append(callback)

        def _unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event: CaptureEvent) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Capture event listener failed event=%s", event.kind)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Capture event listener failed", exc_info=exc)

    # --- read-only views (in-memory only)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_capturing(self, source_id: int) -> bool:
        return source_id in self._active or source_id in self._starting

    def list_active(self) -> list[dict]:
        return [handle.view() for handle in self._active.values()]

    def active_count(self) -> int:
        return len(self._active)

    def estimated_throughput(self) -> str:
        count = len(self._active)
        if count == 0:
            return "0 MB/s"
        return f"~{count * ESTIMATED_MB_PER_SECOND_PER_CAPTURE} MB/s"

    async def system_stats(self) -> dict:
        stats = await self._io(self.store.get_system_stats, self.active_count())
        stats["total_downloaded"] = format_bytes(stats["total_downloaded_bytes"])
        stats["estimated_throughput"] = self.estimated_throughput()
        return stats

    # --- lifecycle

    async def recover_orphans(self) -> int:
        """Finalize captures a previous process left ``active``."""
        count = await self._io(self.store.mark_orphaned_captures_stopped, now=self._now())
        if count:
            logger.info("Finalized %d orphaned capture(s) from a previous session as stopped", count)
            await self._recalculate_stats()
        return count

    async def start(self, source_id: int) -> int:
        if self._shutting_down:
            raise ShuttingDown("Service is shutting down; not starting new captures")
        source = await self._io(self.store.get_source, source_id)
        if source is None:
            raise SourceNotFound(f"Source {source_id} not found")
        if self._shutting_down:
            raise ShuttingDown("Service is shutting down; not starting new captures")
        if self.is_capturing(source_id):
            raise AlreadyCapturing(f"Already capturing {source.username}")
        self._starting.add(source_id)
        try:
            return await self._start_reserved(source)
        finally:
            self._starting.discard(source_id)

    async def _start_reserved(self, source: Source) -> int:
        existing = await self._io(self.store.find_active_capture, source.id)
        if existing is not None:
            raise AlreadyCapturing(f"Already capturing {source.username} (capture {existing.id} is still active)")

        decision = await self._io(self._check_disk_budget)
        if not decision.allowed:
            await self._append_log(
                f"Capture not started: {decision.reason}",
                source_name=source.username,
                level="warn",
            )
            _log_event(
                logging.WARNING,
                "capture_rejected",
                source=source.username,
                check=decision.check,
                free_mb=decision.free_space_mb,
            )
            raise InsufficientResources(decision.reason, check=decision.check, result=decision)

        probe: ProbeResult = await self.prober.probe(source.username, source.quality_preference)
        if probe is None:
            probe = NOT_LIVE
        if self._shutting_down:
            raise ShuttingDown("Service is shutting down; not starting new captures")

        started_at = self._now()
        output_path = build_capture_path(
            self.recordings_dir,
            source.username,
            self.settings.output_extension,
            now=started_at,
        )
        await self._io(ensure_parent_dir, output_path)
        record = await self._io(
            self.store.create_capture,
            source.id,
            file_path=str(output_path),
            quality=source.quality_preference,
            stream_title=probe.title,
            stream_category=probe.category,
            started_at=started_at.isoformat(),
        )
        await self._append_log(decision.summary(), capture_id=record.id, source_name=source.username)

        argv = self.build_capture_argv(source, output_path)
        try:
            process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            message = f"Failed to start capture process: {exc}"
            await self._io(
                self.store.finalize_capture,
                record.id,
                status=CAPTURE_STATUS_ERROR,
                duration_seconds=0,
                file_size_bytes=0,
                ended_at=self._now().isoformat(),
                error_message=message,
            )
            await self._append_log(message, capture_id=record.id, source_name=source.username, level="error")
            await self._recalculate_stats()
            _log_event(logging.ERROR, "capture_spawn_failed", source=source.username, capture_id=record.id, err=str(exc))
            raise ProcessSpawnFailure(message) from exc

        handle = ActiveCapture(
            process=process,
            capture_id=record.id,
            source_id=source.id,
            source_name=source.username,
            started_at=started_at,
            started_monotonic=self._clock(),
            file_path=str(output_path),
            max_capture_bytes=decision.max_capture_bytes,
            max_duration_seconds=decision.max_duration_seconds,
        )

        if self._shutting_down:
            # Shutdown began while the process was spawning and will not see this handle.
            await self._io(
                self.store.finalize_capture,
                record.id,
                status=CAPTURE_STATUS_STOPPED,
                duration_seconds=0,
                file_size_bytes=await self._io(_file_size, handle.file_path),
                ended_at=self._now().isoformat(),
            )
            await self._append_log(
                "Capture stopped: service is shutting down",
                capture_id=record.id,
                source_name=source.username,
                level="warn",
            )
            await self._terminate_process(process, self._shutdown_kill_grace)
            raise ShuttingDown("Service is shutting down; not starting new captures")

        self._active[source.id] = handle
        handle.monitor = asyncio.create_task(self._monitor(handle), name=f"capture-{source.username}")

        await self._append_log(
            f"Started capture to {output_path.name}",
            capture_id=record.id,
            source_name=source.username,
            level="success",
        )
        await self._recalculate_stats()
        _log_event(
            logging.INFO,
            "capture_started",
            source=source.username,
            capture_id=record.id,
            file_path=str(output_path),
            title=probe.title,
        )
        self._emit(
            CaptureEvent(
                kind=EVENT_CAPTURE_STARTED,
                capture_id=record.id,
                source_id=source.id,
                source_name=source.username,
            )
        )
        return record.id

    def stop(self, source_id: int, *, reason: str | None = None) -> bool:
        """Ask a capture to end. Finalization happens later, on the process-exit path."""
        handle = self._active.get(source_id)
        if handle is None:
            return False
        handle.stop_requested = True
        if reason and not handle.stop_reason:
            handle.stop_reason = reason
        _signal_quietly(handle.process, "terminate")
        if handle.kill_timer is None:
            loop = asyncio.get_running_loop()
            handle.kill_timer = loop.call_later(self._stop_grace, self._force_kill, handle)
        _log_event(logging.INFO, "capture_stop_requested", source=handle.source_name, capture_id=handle.capture_id)
        return True

    def _force_kill(self, handle: ActiveCapture) -> None:
        handle.kill_timer = None
        if handle.process.returncode is None:
            logger.warning("Capture process ignored SIGTERM; killing source=%s", handle.source_name)
            _signal_quietly(handle.process, "kill")

    def _release_handle(self, source_id: int, capture_id: int | None = None) -> ActiveCapture | None:
        handle = self._active.get(source_id)
        if handle is None:
            return None
        if capture_id is not None and handle.capture_id != capture_id:
            return None
        del self._active[source_id]
        if handle.kill_timer is not None:
            handle.kill_timer.cancel()
            handle.kill_timer = None
        return handle

    def _terminal_status(self, handle: ActiveCapture, exit_code, size: int) -> tuple[str, str | None]:
        if exit_code == 0:
            return CAPTURE_STATUS_COMPLETED, None
        if not handle.stop_requested and size == 0:
            detail = f": {handle.last_stderr}" if handle.last_stderr else ""
            return CAPTURE_STATUS_ERROR, f"Capture process exited with code {exit_code} before writing any data{detail}"
        return CAPTURE_STATUS_STOPPED, handle.stop_reason

    async def on_process_exit(self, source_id: int, exit_code, *, capture_id: int | None = None) -> str | None:
        """Finalize a capture after its process exited. No-op if the handle is already gone."""
        handle = self._release_handle(source_id, capture_id)
        if handle is None:
            logger.debug("Process exit for source %s already finalized", source_id)
            return None

        # The caller may be cancelled (loop teardown); the terminal write still lands.
        task = asyncio.ensure_future(self._finalize_exit(handle, exit_code))
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)
        return await asyncio.shield(task)

    async def _finalize_exit(self, handle: ActiveCapture, exit_code) -> str:
        duration = max(0, int(self._clock() - handle.started_monotonic))
        size = await self._io(_file_size, handle.file_path)
        status, error_message = self._terminal_status(handle, exit_code, size)
        level = {"completed": "success", "error": "error"}.get(status, "warn")
        try:
            await self._io(
                self.store.finalize_capture,
                handle.capture_id,
                status=status,
                duration_seconds=duration,
                file_size_bytes=size,
                ended_at=self._now().isoformat(),
                error_message=error_message,
            )
        except sqlite3.Error:
            logger.exception("Failed to finalize capture %s", handle.capture_id)
        await self._append_log(
            f"Capture ended with code {exit_code}. Duration: {duration}s, Size: {size} bytes",
            capture_id=handle.capture_id,
            source_name=handle.source_name,
            level=level,
        )
        await self._recalculate_stats()
        _log_event(
            logging.INFO if status == CAPTURE_STATUS_COMPLETED else logging.WARNING,
            "capture_ended",
            source=handle.source_name,
            capture_id=handle.capture_id,
            status=status,
            exit_code=exit_code,
            duration_seconds=duration,
            file_size_bytes=size,
        )
        self._emit(
            CaptureEvent(
                kind=EVENT_CAPTURE_ENDED,
                capture_id=handle.capture_id,
                source_id=handle.source_id,
                source_name=handle.source_name,
                status=status,
                exit_code=exit_code,
                duration_seconds=duration,
                file_size_bytes=size,
            )
        )
        return status

    # --- per-capture monitor

    async def _monitor(self, handle: ActiveCapture) -> None:
        proc = handle.process
        readers = [
            asyncio.create_task(self._forward_output(handle, getattr(proc, "stdout", None), "info")),
            asyncio.create_task(self._forward_output(handle, getattr(proc, "stderr", None), "warn")),
        ]
        enforcer = None
        if handle.max_capture_bytes or handle.max_duration_seconds:
            enforcer = asyncio.create_task(self._enforce_limits(handle))
        try:
            exit_code = await proc.wait()
            _done, pending = await asyncio.wait(readers, timeout=_OUTPUT_DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()
        finally:
            if enforcer is not None:
                enforcer.cancel()
            for task in readers:
                if not task.done():
                    task.cancel()
        await self.on_process_exit(handle.source_id, exit_code, capture_id=handle.capture_id)

    async def _forward_output(self, handle: ActiveCapture, stream, level: str) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning("Skipping oversized output line source=%s", handle.source_name)
                continue
            if not line:
                return
            message = line.decode("utf-8", errors="replace").strip() if isinstance(line, bytes) else str(line).strip()
            if not message:
                continue
            if level == "warn":
                handle.last_stderr = message
            if self.settings.log_capture_output:
                await self._append_log(
                    message,
                    capture_id=handle.capture_id,
                    source_name=handle.source_name,
                    level=level,
                )

    async def _enforce_limits(self, handle: ActiveCapture) -> None:
        interval = max(0.01, float(self.settings.limit_check_seconds))
        while self._active.get(handle.source_id) is handle:
            await asyncio.sleep(interval)
            if self._active.get(handle.source_id) is not handle:
                return
            reason = None
            elapsed = self._clock() - handle.started_monotonic
            if handle.max_duration_seconds and elapsed >= handle.max_duration_seconds:
                hours = handle.max_duration_seconds / 3600.0
                reason = f"Maximum capture duration reached ({hours:g}h)"
            elif handle.max_capture_bytes:
                size = await self._io(_file_size, handle.file_path)
                if size >= handle.max_capture_bytes:
                    reason = f"Maximum capture size reached ({handle.max_capture_bytes // (1024 * 1024)}MB)"
            if reason:
                await self._append_log(
                    f"{reason}; stopping capture",
                    capture_id=handle.capture_id,
                    source_name=handle.source_name,
                    level="warn",
                )
                self.stop(handle.source_id, reason=reason)
                return

    # --- shutdown

    def begin_shutdown(self) -> None:
        """Reject all new starts from now on."""
        self._shutting_down = True

    async def shutdown(self) -> None:
        """Stop every capture and persist terminal state. Safe to call repeatedly and concurrently."""
        self.begin_shutdown()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._drain())
        else:
            logger.info("Capture shutdown already in progress")
        await asyncio.shield(self._shutdown_task)

    async def _wait_for_pending_starts(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + SHUTDOWN_PENDING_START_WAIT_SECONDS
        while self._starting and loop.time() < deadline:
            await asyncio.sleep(0.05)
        if self._starting:
            logger.warning("Shutdown continuing with %d start request(s) still pending", len(self._starting))

    async def _drain(self) -> None:
        await self._wait_for_pending_starts()
        handles = []
        for source_id in list(self._active):
            handle = self._release_handle(source_id)
            if handle is not None:
                handles.append(handle)
        logger.info("Stopping %d active capture(s) for shutdown", len(handles))

        # Terminal state is persisted before any process is signalled.
        finished = []
        for handle in handles:
            duration = max(0, int(self._clock() - handle.started_monotonic))
            size = await self._io(_file_size, handle.file_path)
            try:
                await self._io(
                    self.store.finalize_capture,
                    handle.capture_id,
                    status=CAPTURE_STATUS_STOPPED,
                    duration_seconds=duration,
                    file_size_bytes=size,
                    ended_at=self._now().isoformat(),
                )
            except sqlite3.Error:
                logger.exception("Failed to persist shutdown stop for capture %s", handle.capture_id)
            await self._append_log(
                f"Capture stopped by shutdown. Duration: {duration}s, Size: {size} bytes",
                capture_id=handle.capture_id,
                source_name=handle.source_name,
                level="warn",
            )
            finished.append((handle, duration, size))
        if handles:
            await self._recalculate_stats()

        await asyncio.gather(
            *(self._terminate_process(handle.process, self._shutdown_kill_grace) for handle in handles)
        )

        monitors = [handle.monitor for handle in handles if handle.monitor is not None]
        if monitors:
            _done, pending = await asyncio.wait(monitors, timeout=self._shutdown_kill_grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._active.clear()

        # Natural exits released before the drain started are still writing their records.
        exiting = list(self._exit_tasks)
        if exiting:
            logger.info("Waiting for %d capture exit(s) to finish recording", len(exiting))
            for result in await asyncio.gather(*exiting, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.error("Capture exit finalization failed", exc_info=result)

        for handle, duration, size in finished:
            self._emit(
                CaptureEvent(
                    kind=EVENT_CAPTURE_ENDED,
                    capture_id=handle.capture_id,
                    source_id=handle.source_id,
                    source_name=handle.source_name,
                    status=CAPTURE_STATUS_STOPPED,
                    exit_code=handle.process.returncode,
                    duration_seconds=duration,
                    file_size_bytes=size,
                )
            )
        _log_event(logging.INFO, "capture_shutdown_complete", stopped=len(handles))

    async def _terminate_process(self, proc, grace: float):
        if proc.returncode is not None:
            return proc.returncode
        _signal_quietly(proc, "terminate")
        try:
            return await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Capture process did not exit within %.1fs; killing", grace)
        _signal_quietly(proc, "kill")
        try:
            return await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.error("Capture process did not exit after SIGKILL")
            return None
