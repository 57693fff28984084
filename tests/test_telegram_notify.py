from __future__ import annotations

import asyncio
from types import SimpleNamespace

import requests

from engine import notify
from engine.supervisor import EVENT_CAPTURE_ENDED, EVENT_CAPTURE_STARTED, CaptureEvent

_TELEGRAM = {"bot_token": "123:abc", "chat_id": "42"}


def _ended(**overrides) -> CaptureEvent:
    fields = dict(
        kind=EVENT_CAPTURE_ENDED,
        capture_id=1,
        source_id=1,
        source_name="alice",
        status="completed",
        exit_code=0,
        duration_seconds=3725,
        file_size_bytes=1536,
    )
    fields.update(overrides)
    return CaptureEvent(**fields)


def test_capture_ended_message_format() -> None:
    message = notify.format_capture_ended(_ended())

    assert message == "Capture completed: alice\nDuration: 1h 2m 5s\nSize: 1.5 KB"


def test_notifier_posts_on_capture_ended(monkeypatch) -> None:
    sent = []

    def _post(url, json, timeout):
        sent.append((url, json))
        return SimpleNamespace(ok=True, text="")

    monkeypatch.setattr(notify.requests, "post", _post)

    result = asyncio.run(notify.TelegramCaptureNotifier(_TELEGRAM)(_ended()))

    assert result is True
    assert sent[0][0] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert sent[0][1]["chat_id"] == "42"


def test_notifier_ignores_start_events_and_missing_config(monkeypatch) -> None:
    monkeypatch.setattr(notify.requests, "post", lambda *a, **k: (_ for _ in ()).throw(AssertionError("no post")))

    assert asyncio.run(notify.TelegramCaptureNotifier(_TELEGRAM)(_ended(kind=EVENT_CAPTURE_STARTED))) is False
    assert asyncio.run(notify.TelegramCaptureNotifier(None)(_ended())) is False


def test_request_failures_are_logged_not_raised(monkeypatch, caplog) -> None:
    def _post(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(notify.requests, "post", _post)

    assert notify.telegram_notify(_TELEGRAM, "hello") is False
    assert "Telegram notify failed" in caplog.text
