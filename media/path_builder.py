"""Capture output path construction utilities."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MULTISPACE_RE = re.compile(r"\s+")


def sanitize_component(text) -> str:
    """Return an OS-safe filesystem component with stable fallback."""
    sanitized = _INVALID_FS_CHARS_RE.sub("", str(text or ""))
    sanitized = _MULTISPACE_RE.sub("_", sanitized).strip()
    sanitized = sanitized.rstrip(" .")
    return sanitized or "unknown"


def build_capture_filename(source_name: str, ext: str, *, now: datetime | None = None) -> str:
    """Build ``{source}_{UTC timestamp}_{random suffix}.{ext}``.

    The random suffix keeps two captures started within the same second apart.
    """
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    extension = str(ext or "").lstrip(".") or "mp4"
    return f"{sanitize_component(source_name)}_{stamp}_{uuid4().hex[:8]}.{extension}"


def resolve_collision_path(path: str) -> str:
    if not os.path.exists(path):
        return path
    stem, ext = os.path.splitext(path)
    attempt = 2
    while True:
        candidate = f"{stem} ({attempt}){ext}"
        if not os.path.exists(candidate):
            return candidate
        attempt += 1


def build_capture_path(root, source_name: str, ext: str, *, now: datetime | None = None) -> Path:
    """Build a non-existing output path under ``root`` without creating the file."""
    candidate = Path(root) / build_capture_filename(source_name, ext, now=now)
    return Path(resolve_collision_path(str(candidate)))


def ensure_parent_dir(path: Path) -> None:
    """Ensure the parent directory for a file path exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
