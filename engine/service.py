"""Wiring of store, prober, supervisor, scanner and shutdown for one service process."""

from __future__ import annotations

import functools
import logging
import os
import time

import anyio

from config.settings import LOG_RETENTION_DAYS
from db.capture_store import CaptureStore
from engine.core import RecorderSettings, load_config_or_default, settings_from_config, validate_config
from engine.notify import TelegramCaptureNotifier
from engine.paths import EnginePaths, ensure_dir
from engine.prober import StreamProber
from engine.scanner import AutoScanScheduler
from engine.shutdown import ShutdownCoordinator
from engine.supervisor import CaptureSupervisor

logger = logging.getLogger(__name__)

LOG_FILENAME = "streamkeeper.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_dir, *, console=True, level=logging.INFO):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(level)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        root.addHandler(file_handler)
    if console and not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler.setLevel(level)
        root.addHandler(console_handler)
    return log_path


def load_settings(config_path) -> RecorderSettings:
    """Read and validate the config file. Raises ValueError listing every problem."""
    config = load_config_or_default(config_path)
    errors = validate_config(config)
    if errors:
        raise ValueError("Invalid config: " + "; ".join(errors))
    return settings_from_config(config)


class RecorderService:
    def __init__(
        self,
        settings: RecorderSettings,
        paths: EnginePaths,
        *,
        spawn=None,
        clock=time.monotonic,
        disk_usage=None,
        scheduler=None,
    ):
        self.settings = settings
        self.paths = paths
        self.recordings_dir = settings.recordings_dir or paths.recordings_dir
        self.store = CaptureStore(paths.db_path)
        self.prober = StreamProber(settings, spawn=spawn)
        self.supervisor = CaptureSupervisor(
            self.store,
            settings,
            recordings_dir=self.recordings_dir,
            prober=self.prober,
            spawn=spawn,
            clock=clock,
            disk_usage=disk_usage,
        )
        self.scanner = AutoScanScheduler(
            self.supervisor,
            self.store,
            prober=self.prober,
            interval_seconds=settings.scan_interval_seconds,
            scheduler=scheduler,
        )
        self.coordinator = ShutdownCoordinator(self.supervisor, self.scanner)
        self.notifier = TelegramCaptureNotifier(settings.telegram)
        self._unsubscribe = None

    async def start(self, *, auto_scan=True, install_signals=False):
        ensure_dir(self.recordings_dir)
        await anyio.to_thread.run_sync(self.store.ensure_schema)
        await self.supervisor.recover_orphans()
        removed = await anyio.to_thread.run_sync(
            functools.partial(self.store.clear_old_logs, days=LOG_RETENTION_DAYS)
        )
        if removed:
            logger.info("Removed %d capture log entries older than %d days", removed, LOG_RETENTION_DAYS)
        if self.notifier.enabled and self._unsubscribe is None:
            self._unsubscribe = self.supervisor.subscribe(self.notifier)
        if install_signals:
            self.coordinator.install()
        if auto_scan:
            self.scanner.start(run_on_startup=self.settings.scan_on_startup)
        logger.info(
            "Capture service started recordings_dir=%s auto_scan=%s",
            self.recordings_dir,
            auto_scan,
        )

    async def shutdown(self, *, reason="requested"):
        await self.coordinator.shutdown(reason=reason)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.coordinator.uninstall()

    async def wait_for_shutdown(self):
        await self.coordinator.wait()
