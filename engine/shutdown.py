"""Signal and fault driven shutdown of the capture service."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

from engine.scanner import AutoScanScheduler
from engine.supervisor import CaptureSupervisor

logger = logging.getLogger(__name__)

_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownCoordinator:
    """Drains the supervisor once, no matter how many triggers arrive.

    Order: reject new starts, stop the scan timer, then let the supervisor persist
    and terminate every active capture.
    """

    def __init__(
        self,
        supervisor: CaptureSupervisor,
        scanner: AutoScanScheduler | None = None,
        *,
        on_complete: Callable[[], None] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._scanner = scanner
        self._on_complete = on_complete
        self._task: asyncio.Future | None = None
        self._requested = asyncio.Event()
        self._installed_signals: list[int] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self.reason: str | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGTERM/SIGINT and unhandled loop faults to ``request_shutdown``."""
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        for sig in _SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handler for %s unavailable on this platform", signal.Signals(sig).name)
                continue
            self._installed_signals.append(sig)
        loop.set_exception_handler(self._on_loop_exception)

    def uninstall(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals = []
        loop.set_exception_handler(None)

    def _on_signal(self, sig) -> None:
        name = signal.Signals(sig).name
        logger.warning("Received %s; shutting down", name)
        self.request_shutdown(reason=name)

    def _on_loop_exception(self, loop, context) -> None:
        loop.default_exception_handler(context)
        exc = context.get("exception")
        if exc is None or isinstance(exc, asyncio.CancelledError):
            return
        logger.error("Unhandled fault (%s); shutting down", type(exc).__name__)
        self.request_shutdown(reason=f"fault: {type(exc).__name__}")

    def request_shutdown(self, *, reason: str = "requested") -> asyncio.Future:
        if self._task is not None:
            logger.info("Shutdown already in progress (%s); ignoring %s", self.reason, reason)
            return self._task
        self.reason = reason
        self._supervisor.begin_shutdown()
        self._task = asyncio.ensure_future(self._run())
        self._requested.set()
        return self._task

    async def shutdown(self, *, reason: str = "requested") -> None:
        await asyncio.shield(self.request_shutdown(reason=reason))

    async def wait(self) -> None:
        """Wait for a shutdown that somebody else triggers."""
        await self._requested.wait()
        await asyncio.shield(self._task)

    async def _run(self) -> None:
        logger.info("Shutdown started reason=%s", self.reason)
        if self._scanner is not None:
            self._scanner.stop()
        try:
            await self._supervisor.shutdown()
        finally:
            logger.info("Shutdown complete reason=%s", self.reason)
            if self._on_complete is not None:
                self._on_complete()
