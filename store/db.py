from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS feed_groups (
          slug TEXT NOT NULL PRIMARY KEY,
          name TEXT NOT NULL,
          adapter TEXT NOT NULL,
          category TEXT NOT NULL,
          url_en TEXT NULL,
          url_zh_tw TEXT NULL,
          url_zh_cn TEXT NULL,
          active INTEGER NOT NULL DEFAULT 1,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS feed_sources (
          feed_slug TEXT NOT NULL,
          language TEXT NOT NULL,
          url TEXT NOT NULL,

          etag TEXT NULL,
          last_modified TEXT NULL,

          next_fetch_at TEXT NULL,
          last_fetch_at TEXT NULL,
          last_success_at TEXT NULL,
          last_error_at TEXT NULL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          last_status_code INTEGER NULL,
          last_fetch_ms INTEGER NULL,
          last_error TEXT NULL,
          success_count INTEGER NOT NULL DEFAULT 0,
          error_count INTEGER NOT NULL DEFAULT 0,

          PRIMARY KEY (feed_slug, language),
          FOREIGN KEY (feed_slug) REFERENCES feed_groups(slug) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS feed_watermarks (
          feed_id TEXT NOT NULL,
          language TEXT NOT NULL,
          watermark TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          PRIMARY KEY (feed_id, language)
        );

        CREATE TABLE IF NOT EXISTS incidents (
          content_hash TEXT NOT NULL PRIMARY KEY,
          feed_slug TEXT NOT NULL,
          content TEXT NOT NULL,
          category TEXT NOT NULL,
          severity INTEGER NOT NULL,
          relevance_score REAL NOT NULL,
          source_published_at TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS incidents_feed_slug_idx ON incidents(feed_slug);
        CREATE INDEX IF NOT EXISTS incidents_category_idx ON incidents(category);
        CREATE INDEX IF NOT EXISTS incidents_severity_idx ON incidents(severity);
        CREATE INDEX IF NOT EXISTS incidents_published_idx ON incidents(source_published_at);
        """,
    ),
]


def open_database(path: Path) -> Database:
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
