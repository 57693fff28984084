"""SQLite migrations for sources, captures, capture logs and stats."""

from __future__ import annotations

import sqlite3


def ensure_sources_table(conn: sqlite3.Connection) -> None:
    """Ensure the monitored-source table exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            display_name TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            monitoring_enabled INTEGER NOT NULL DEFAULT 1,
            auto_capture INTEGER NOT NULL DEFAULT 1,
            quality_preference TEXT NOT NULL DEFAULT 'best',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute("PRAGMA table_info(sources)")
    existing_columns = {row[1] for row in cur.fetchall()}
    if "monitoring_enabled" not in existing_columns:
        cur.execute("ALTER TABLE sources ADD COLUMN monitoring_enabled INTEGER NOT NULL DEFAULT 1")
    conn.commit()


def ensure_captures_table(conn: sqlite3.Connection) -> None:
    """Ensure the capture record table and its lookup indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS captures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id INTEGER NOT NULL,
            stream_title TEXT,
            stream_category TEXT,
            file_path TEXT NOT NULL,
            file_size_bytes INTEGER NOT NULL DEFAULT 0,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            quality TEXT,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            error_message TEXT,
            FOREIGN KEY (source_id) REFERENCES sources(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_captures_status ON captures (status)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_captures_source_status ON captures (source_id, status)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_captures_started ON captures (started_at)")
    conn.commit()


def ensure_capture_logs_table(conn: sqlite3.Connection) -> None:
    """Ensure the user-facing capture log trail table exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS capture_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            capture_id INTEGER,
            source_name TEXT,
            message TEXT NOT NULL,
            level TEXT NOT NULL DEFAULT 'info',
            created_at TEXT NOT NULL,
            FOREIGN KEY (capture_id) REFERENCES captures(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_capture_logs_capture ON capture_logs (capture_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_capture_logs_created ON capture_logs (created_at)")
    conn.commit()


def ensure_stats_table(conn: sqlite3.Connection) -> None:
    """Ensure the single-row aggregate stats table exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS stats (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            total_downloaded_bytes INTEGER NOT NULL DEFAULT 0,
            total_captures INTEGER NOT NULL DEFAULT 0,
            total_sources INTEGER NOT NULL DEFAULT 0,
            active_captures INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT
        )
        """
    )
    cur.execute("INSERT OR IGNORE INTO stats (id) VALUES (1)")
    conn.commit()


def ensure_all_tables(conn: sqlite3.Connection) -> None:
    ensure_sources_table(conn)
    ensure_captures_table(conn)
    ensure_capture_logs_table(conn)
    ensure_stats_table(conn)
