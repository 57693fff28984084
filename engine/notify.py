import logging

import anyio
import requests

from engine.disk_budget import format_bytes
from engine.supervisor import EVENT_CAPTURE_ENDED, CaptureEvent

logger = logging.getLogger(__name__)


def telegram_notify(telegram, message):
    if not telegram or not message:
        return False
    bot_token = telegram.get("bot_token")
    chat_id = telegram.get("chat_id")
    if not bot_token or not chat_id:
        return False
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {"chat_id": chat_id, "text": message}
    try:
        resp = requests.post(url, json=payload, timeout=15)
        if resp.ok:
            return True
        logger.warning("Telegram notify failed: %s", resp.text)
    except requests.RequestException:
        logger.exception("Telegram notify failed")
    return False


def format_capture_ended(event: CaptureEvent) -> str:
    minutes, seconds = divmod(int(event.duration_seconds or 0), 60)
    hours, minutes = divmod(minutes, 60)
    return (
        f"Capture {event.status}: {event.source_name}\n"
        f"Duration: {hours}h {minutes}m {seconds}s\n"
        f"Size: {format_bytes(event.file_size_bytes or 0)}"
    )


class TelegramCaptureNotifier:
    """Capture event listener that posts a Telegram message when a capture ends."""

    def __init__(self, telegram):
        self.telegram = telegram or {}

    @property
    def enabled(self):
        return bool(self.telegram.get("bot_token") and self.telegram.get("chat_id"))

    async def __call__(self, event: CaptureEvent):
        if event.kind != EVENT_CAPTURE_ENDED or not self.enabled:
            return False
        message = format_capture_ended(event)
        return await anyio.to_thread.run_sync(telegram_notify, self.telegram, message)
