"""Availability probing through the capture binary's JSON query mode."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from config.settings import DEFAULT_QUALITY, PROBE_TIMEOUT_SECONDS
from engine.core import RecorderSettings

logger = logging.getLogger(__name__)

SpawnFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ProbeResult:
    live: bool
    title: str | None = None
    category: str | None = None
    error: str | None = None

    @property
    def metadata(self) -> dict | None:
        if self.title is None and self.category is None:
            return None
        return {"title": self.title, "category": self.category}


NOT_LIVE = ProbeResult(live=False)

MALFORMED_OUTPUT = "malformed probe output"
UNEXPECTED_OUTPUT = "unexpected probe output"


def _clean_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def classify_probe_output(raw) -> ProbeResult:
    """Classify one JSON document printed by the capture binary in query mode.

    An explicit ``error`` field means offline. ``type``/``url`` (a resolved stream)
    or a non-empty ``streams`` map means live. Anything unparseable is offline.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw or "")
    except json.JSONDecodeError:
        return ProbeResult(live=False, error=MALFORMED_OUTPUT)
    if not isinstance(payload, dict):
        return ProbeResult(live=False, error=UNEXPECTED_OUTPUT)

    error = payload.get("error")
    if error:
        return ProbeResult(live=False, error=str(error))

    streams = payload.get("streams")
    live = bool(payload.get("type") or payload.get("url") or (isinstance(streams, dict) and streams))
    if not live:
        return NOT_LIVE

    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        return ProbeResult(live=True)
    return ProbeResult(
        live=True,
        title=_clean_text(metadata.get("title")),
        category=_clean_text(metadata.get("category")),
    )


def _kill_quietly(proc):
    try:
        if proc.returncode is None:
            proc.kill()
    except ProcessLookupError:
        pass


class StreamProber:
    """Spawn one short-lived query process per probe. Never raises for probe failures."""

    def __init__(
        self,
        settings: RecorderSettings,
        *,
        spawn: SpawnFn | None = None,
        timeout: float = PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._settings = settings
        self._spawn = spawn or asyncio.create_subprocess_exec
        self.timeout = timeout

    def build_argv(self, source_name: str, quality: str | None = None) -> list[str]:
        return [
            self._settings.capture_binary,
            "--json",
            self._settings.source_url(source_name),
            quality or DEFAULT_QUALITY,
        ]

    async def probe(self, source_name: str, quality: str | None = None) -> ProbeResult:
        argv = self.build_argv(source_name, quality)
        try:
            proc = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.warning("probe_spawn_failed source=%s err=%s", source_name, exc)
            return ProbeResult(live=False, error=f"spawn failed: {exc}")

        try:
            stdout, _stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("probe_timeout source=%s timeout=%.1fs", source_name, self.timeout)
            _kill_quietly(proc)
            try:
                await asyncio.wait_for(proc.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("probe process did not exit after kill source=%s", source_name)
            return ProbeResult(live=False, error="probe timed out")
        except asyncio.CancelledError:
            _kill_quietly(proc)
            raise
        except OSError as exc:
            logger.warning("probe_io_failed source=%s err=%s", source_name, exc)
            _kill_quietly(proc)
            return ProbeResult(live=False, error=f"probe failed: {exc}")

        result = classify_probe_output(stdout)
        if result.error in (MALFORMED_OUTPUT, UNEXPECTED_OUTPUT):
            logger.warning("probe_output_invalid source=%s reason=%s", source_name, result.error)
        elif result.error:
            logger.info("probe_offline source=%s reason=%s", source_name, result.error)
        return result

    async def is_live(self, source_name: str, quality: str | None = None) -> bool:
        return (await self.probe(source_name, quality)).live
