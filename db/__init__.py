"""Database helpers for StreamKeeper."""

from db.capture_store import CaptureLogEntry, CaptureRecord, CaptureStore, Source

__all__ = ["CaptureLogEntry", "CaptureRecord", "CaptureStore", "Source"]
