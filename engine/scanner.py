"""Periodic availability scan that starts captures for live auto-capture sources."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import anyio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from db.capture_store import CaptureStore, utc_now
from engine.prober import StreamProber
from engine.supervisor import AlreadyCapturing, CaptureError, CaptureSupervisor, ShuttingDown

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "auto_scan"


@dataclass
class ScanSummary:
    started_at: str
    finished_at: str | None = None
    checked: int = 0
    live: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "checked": self.checked,
            "live": list(self.live),
            "started": list(self.started),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
        }


class AutoScanScheduler:
    """Runs at most one scan at a time; ticks that arrive mid-scan are dropped, not queued."""

    def __init__(
        self,
        supervisor: CaptureSupervisor,
        store: CaptureStore,
        *,
        prober: StreamProber | None = None,
        interval_seconds: int = 60,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._store = store
        self._prober = prober or supervisor.prober
        self.interval_seconds = int(interval_seconds)
        self._scheduler = scheduler
        self._scan_task: asyncio.Task | None = None
        self._stopped = False
        self.last_summary: ScanSummary | None = None
        self.scans_completed = 0
        self.scans_skipped = 0

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running and not self._stopped)

    def start(self, *, run_on_startup: bool = False) -> None:
        """Start the interval timer. Must be called from the event loop thread."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        start_date = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
        self._scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds, start_date=start_date),
            id=SCAN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        self._stopped = False
        logger.info("Auto scan active interval=%ss", self.interval_seconds)
        if run_on_startup:
            self.trigger(reason="startup")

    def stop(self) -> None:
        """Stop the timer. A scan already running is left to finish."""
        if self._stopped:
            return
        self._stopped = True
        scheduler = self._scheduler
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        logger.info("Auto scan stopped")

    async def _scheduled_tick(self) -> None:
        self.trigger(reason="scheduled")

    def trigger(self, *, reason: str = "manual") -> bool:
        """Begin a scan without waiting for it. Returns False when the request was skipped."""
        if self._stopped or self._supervisor.shutting_down:
            logger.info("Scan (%s) skipped; scheduler stopped", reason)
            return False
        if self.scan_in_progress:
            self.scans_skipped += 1
            logger.info("Scan (%s) skipped; scan already active", reason)
            return False
        self._scan_task = asyncio.ensure_future(self._run_scan(reason))
        return True

    async def _run_scan(self, reason: str) -> None:
        try:
            summary = await self.scan()
        except Exception:
            logger.exception("Auto scan (%s) failed", reason)
            return
        self.last_summary = summary
        self.scans_completed += 1

    async def scan(self) -> ScanSummary:
        summary = ScanSummary(started_at=utc_now())
        sources = await anyio.to_thread.run_sync(self._store.list_auto_capture_sources)
        logger.info("Checking %d source(s) for live streams", len(sources))
        for source in sources:
            if self._supervisor.shutting_down:
                break
            if self._supervisor.is_capturing(source.id):
                summary.skipped.append(source.username)
                continue
            summary.checked += 1
            result = await self._prober.probe(source.username, source.quality_preference)
            if not result.live:
                continue
            summary.live.append(source.username)
            # A manual start may have landed while the probe was running.
            if self._supervisor.is_capturing(source.id):
                summary.skipped.append(source.username)
                continue
            try:
                await self._supervisor.start(source.id)
            except AlreadyCapturing:
                logger.info("Auto scan: %s already capturing", source.username)
                summary.skipped.append(source.username)
            except ShuttingDown:
                break
            except CaptureError as exc:
                logger.warning("Auto scan: could not start %s: %s", source.username, exc.message)
                summary.failed[source.username] = exc.message
            else:
                logger.info("Auto scan: started capture for %s", source.username)
                summary.started.append(source.username)
        summary.finished_at = utc_now()
        logger.info(
            "Auto scan finished checked=%d live=%d started=%d failed=%d",
            summary.checked,
            len(summary.live),
            len(summary.started),
            len(summary.failed),
        )
        return summary

    def _next_scan_iso(self):
        scheduler = self._scheduler
        if not scheduler or self._stopped:
            return None
        job = scheduler.get_job(SCAN_JOB_ID)
        if not job or not job.next_run_time:
            return None
        next_run = job.next_run_time
        if next_run.tzinfo is None:
            next_run = next_run.replace(tzinfo=timezone.utc)
        return next_run.astimezone(timezone.utc).isoformat()

    def status(self) -> dict:
        last = self.last_summary
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "scan_in_progress": self.scan_in_progress,
            "last_scan_at": last.finished_at if last else None,
            "last_scan": last.to_dict() if last else None,
            "next_scan_at": self._next_scan_iso(),
            "scans_completed": self.scans_completed,
            "scans_skipped": self.scans_skipped,
            "active_captures": self._supervisor.active_count(),
        }
