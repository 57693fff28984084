"""SQLite persistence for monitored sources, capture records and the capture log trail."""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from db.migrations import ensure_all_tables

CAPTURE_STATUS_ACTIVE = "active"
CAPTURE_STATUS_COMPLETED = "completed"
CAPTURE_STATUS_ERROR = "error"
CAPTURE_STATUS_STOPPED = "stopped"

CAPTURE_STATUSES = (
    CAPTURE_STATUS_ACTIVE,
    CAPTURE_STATUS_COMPLETED,
    CAPTURE_STATUS_ERROR,
    CAPTURE_STATUS_STOPPED,
)
TERMINAL_STATUSES = (
    CAPTURE_STATUS_COMPLETED,
    CAPTURE_STATUS_ERROR,
    CAPTURE_STATUS_STOPPED,
)

LOG_LEVELS = ("info", "warn", "error", "success")

_CAPTURE_UPDATABLE_FIELDS = (
    "stream_title",
    "stream_category",
    "file_size_bytes",
    "duration_seconds",
    "quality",
    "ended_at",
    "status",
    "error_message",
)
_SOURCE_UPDATABLE_FIELDS = (
    "display_name",
    "is_active",
    "monitoring_enabled",
    "auto_capture",
    "quality_preference",
)


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_timestamp(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _file_size_or(path, default):
    try:
        return os.path.getsize(path)
    except (OSError, TypeError):
        return default or 0


@dataclass(frozen=True)
class Source:
    id: int
    username: str
    display_name: str | None
    is_active: bool
    monitoring_enabled: bool
    auto_capture: bool
    quality_preference: str
    created_at: str | None
    updated_at: str | None

    @property
    def eligible_for_auto_capture(self) -> bool:
        return self.is_active and self.monitoring_enabled and self.auto_capture


@dataclass(frozen=True)
class CaptureRecord:
    id: int
    source_id: int
    stream_title: str | None
    stream_category: str | None
    file_path: str
    file_size_bytes: int
    duration_seconds: int
    quality: str | None
    started_at: str
    ended_at: str | None
    status: str
    error_message: str | None
    source_username: str | None = None
    source_display_name: str | None = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass(frozen=True)
class CaptureLogEntry:
    id: int
    capture_id: int | None
    source_name: str | None
    message: str
    level: str
    created_at: str

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class CaptureStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def ensure_schema(self):
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            ensure_all_tables(conn)
        finally:
            conn.close()

    # --- rows

    @staticmethod
    def _row_to_source(row):
        if not row:
            return None
        return Source(
            id=row["id"],
            username=row["username"],
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            monitoring_enabled=bool(row["monitoring_enabled"]),
            auto_capture=bool(row["auto_capture"]),
            quality_preference=row["quality_preference"] or "best",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_capture(row):
        if not row:
            return None
        row = dict(row)
        return CaptureRecord(
            id=row["id"],
            source_id=row["source_id"],
            stream_title=row["stream_title"],
            stream_category=row["stream_category"],
            file_path=row["file_path"],
            file_size_bytes=row["file_size_bytes"] or 0,
            duration_seconds=row["duration_seconds"] or 0,
            quality=row["quality"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            status=row["status"],
            error_message=row["error_message"],
            source_username=row.get("source_username"),
            source_display_name=row.get("source_display_name"),
        )

    @staticmethod
    def _row_to_log(row):
        return CaptureLogEntry(
            id=row["id"],
            capture_id=row["capture_id"],
            source_name=row["source_name"],
            message=row["message"],
            level=row["level"],
            created_at=row["created_at"],
        )

    # --- sources

    def create_source(self, username, *, display_name=None, auto_capture=True, quality_preference=None,
                      monitoring_enabled=True):
        name = (username or "").strip().lower()
        if not name:
            raise ValueError("username is required")
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sources (
                    username, display_name, is_active, monitoring_enabled, auto_capture,
                    quality_preference, created_at, updated_at
                )
                VALUES (?, ?, 1, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    display_name or username,
                    1 if monitoring_enabled else 0,
                    1 if auto_capture else 0,
                    quality_preference or "best",
                    now,
                    now,
                ),
            )
            conn.commit()
            source_id = cur.lastrowid
        finally:
            conn.close()
        return self.get_source(source_id)

    def get_source(self, source_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM sources WHERE id=?", (source_id,))
            return self._row_to_source(cur.fetchone())
        finally:
            conn.close()

    def get_source_by_username(self, username):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM sources WHERE username=?", ((username or "").strip().lower(),))
            return self._row_to_source(cur.fetchone())
        finally:
            conn.close()

    def list_sources(self, *, include_inactive=False):
        conn = self._connect()
        try:
            cur = conn.cursor()
            if include_inactive:
                cur.execute("SELECT * FROM sources ORDER BY username ASC")
            else:
                cur.execute("SELECT * FROM sources WHERE is_active=1 ORDER BY username ASC")
            return [self._row_to_source(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def list_auto_capture_sources(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM sources
                WHERE is_active=1 AND monitoring_enabled=1 AND auto_capture=1
                ORDER BY username ASC
                """
            )
            return [self._row_to_source(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def update_source(self, source_id, **fields):
        sets = []
        values = []
        for key in _SOURCE_UPDATABLE_FIELDS:
            if key not in fields or fields[key] is None:
                continue
            value = fields[key]
            if isinstance(value, bool):
                value = 1 if value else 0
            sets.append(f"{key}=?")
            values.append(value)
        if not sets:
            return self.get_source(source_id)
        sets.append("updated_at=?")
        values.append(utc_now())
        values.append(source_id)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(f"UPDATE sources SET {', '.join(sets)} WHERE id=?", values)
            conn.commit()
        finally:
            conn.close()
        return self.get_source(source_id)

    def count_sources(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM sources WHERE is_active=1")
            return int(cur.fetchone()[0])
        finally:
            conn.close()

    # --- captures

    def create_capture(self, source_id, *, file_path, quality=None, stream_title=None, stream_category=None,
                       started_at=None):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO captures (
                    source_id, stream_title, stream_category, file_path, quality, started_at, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_id,
                    stream_title or None,
                    stream_category or None,
                    file_path,
                    quality or None,
                    started_at or utc_now(),
                    CAPTURE_STATUS_ACTIVE,
                ),
            )
            conn.commit()
            capture_id = cur.lastrowid
        finally:
            conn.close()
        return self.get_capture(capture_id)

    def get_capture(self, capture_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT c.*, s.username AS source_username, s.display_name AS source_display_name
                FROM captures c
                LEFT JOIN sources s ON c.source_id = s.id
                WHERE c.id=?
                """,
                (capture_id,),
            )
            return self._row_to_capture(cur.fetchone())
        finally:
            conn.close()

    def update_capture(self, capture_id, **fields):
        sets = []
        values = []
        for key in _CAPTURE_UPDATABLE_FIELDS:
            if key in fields:
                sets.append(f"{key}=?")
                values.append(fields[key])
        if not sets:
            return self.get_capture(capture_id)
        values.append(capture_id)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(f"UPDATE captures SET {', '.join(sets)} WHERE id=?", values)
            conn.commit()
        finally:
            conn.close()
        return self.get_capture(capture_id)

    def finalize_capture(self, capture_id, *, status, duration_seconds, file_size_bytes, ended_at=None,
                         error_message=None):
        """Write terminal fields once; returns False if the record already left ``active``."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"unsupported terminal status: {status}")
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE captures
                SET status=?, ended_at=?, duration_seconds=?, file_size_bytes=?,
                    error_message=COALESCE(?, error_message)
                WHERE id=? AND status=?
                """,
                (
                    status,
                    ended_at or utc_now(),
                    max(0, int(duration_seconds)),
                    max(0, int(file_size_bytes)),
                    error_message,
                    capture_id,
                    CAPTURE_STATUS_ACTIVE,
                ),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def find_captures(self, *, status=None, source_id=None, search=None, limit=None, offset=None):
        query = """
            SELECT c.*, s.username AS source_username, s.display_name AS source_display_name
            FROM captures c
            LEFT JOIN sources s ON c.source_id = s.id
            WHERE 1=1
        """
        params = []
        if status:
            query += " AND c.status=?"
            params.append(status)
        if source_id is not None:
            query += " AND c.source_id=?"
            params.append(source_id)
        if search:
            pattern = f"%{search}%"
            query += " AND (c.stream_title LIKE ? OR s.username LIKE ? OR s.display_name LIKE ?)"
            params.extend([pattern, pattern, pattern])
        query += " ORDER BY c.started_at DESC, c.id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
            if offset:
                query += " OFFSET ?"
                params.append(int(offset))
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, params)
            return [self._row_to_capture(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def find_active_capture(self, source_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM captures
                WHERE source_id=? AND status=?
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (source_id, CAPTURE_STATUS_ACTIVE),
            )
            return self._row_to_capture(cur.fetchone())
        finally:
            conn.close()

    def mark_orphaned_captures_stopped(self, *, now=None):
        """Finalize captures left ``active`` by a previous unclean exit. Returns the count."""
        ended = now or datetime.now(timezone.utc).replace(microsecond=0)
        orphans = self.find_captures(status=CAPTURE_STATUS_ACTIVE)
        finalized = 0
        for capture in orphans:
            started = parse_timestamp(capture.started_at)
            duration = int((ended - started).total_seconds()) if started else 0
            if self.finalize_capture(
                capture.id,
                status=CAPTURE_STATUS_STOPPED,
                duration_seconds=max(0, duration),
                file_size_bytes=_file_size_or(capture.file_path, capture.file_size_bytes),
                ended_at=ended.isoformat(),
            ):
                finalized += 1
        return finalized

    # --- log trail

    def append_log(self, message, *, capture_id=None, source_name=None, level="info"):
        if level not in LOG_LEVELS:
            level = "info"
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO capture_logs (capture_id, source_name, message, level, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (capture_id, source_name, message, level, utc_now()),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def list_logs(self, *, capture_id=None, source_name=None, level=None, limit=None):
        query = "SELECT * FROM capture_logs WHERE 1=1"
        params = []
        if capture_id is not None:
            query += " AND capture_id=?"
            params.append(capture_id)
        if source_name:
            query += " AND source_name=?"
            params.append(source_name)
        if level:
            query += " AND level=?"
            params.append(level)
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, params)
            return [self._row_to_log(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def clear_old_logs(self, *, days=7):
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).replace(microsecond=0).isoformat()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM capture_logs WHERE created_at < ?", (cutoff,))
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    # --- aggregates

    def capture_counts(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status='active' THEN 1 ELSE 0 END) AS active,
                    SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status='error' THEN 1 ELSE 0 END) AS error,
                    SUM(CASE WHEN status='stopped' THEN 1 ELSE 0 END) AS stopped
                FROM captures
                """
            )
            row = cur.fetchone()
            return {key: int(row[key] or 0) for key in ("total", "active", "completed", "error", "stopped")}
        finally:
            conn.close()

    def total_downloaded_bytes(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT SUM(file_size_bytes) FROM captures WHERE status=?", (CAPTURE_STATUS_COMPLETED,))
            return int(cur.fetchone()[0] or 0)
        finally:
            conn.close()

    def recalculate_stats(self):
        counts = self.capture_counts()
        total_bytes = self.total_downloaded_bytes()
        total_sources = self.count_sources()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE stats
                SET total_downloaded_bytes=?, total_captures=?, total_sources=?,
                    active_captures=?, updated_at=?
                WHERE id=1
                """,
                (total_bytes, counts["total"], total_sources, counts["active"], utc_now()),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_stats()

    def get_stats(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM stats WHERE id=1")
            row = cur.fetchone()
            return dict(row) if row else {}
        finally:
            conn.close()

    def get_system_stats(self, active_count):
        """Stats projection; ``active_count`` comes from the in-memory active table."""
        stats = self.recalculate_stats()
        counts = self.capture_counts()
        return {
            "total_downloaded_bytes": int(stats.get("total_downloaded_bytes") or 0),
            "total_sources": int(stats.get("total_sources") or 0),
            "total_captures": counts["total"],
            "capture_counts": counts,
            "active_captures": int(active_count),
        }
