from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Protocol

from ingest.models import parse_iso, to_iso
from store.db import Database


class WatermarkStore(Protocol):
    def get_watermark(self, feed_id: str, language: str) -> datetime | None: ...

    def set_watermark(self, feed_id: str, language: str, timestamp: datetime) -> None: ...


class InMemoryWatermarkStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._marks: dict[tuple[str, str], datetime] = {}

    def get_watermark(self, feed_id: str, language: str) -> datetime | None:
        with self._lock:
            return self._marks.get((feed_id, language))

    def set_watermark(self, feed_id: str, language: str, timestamp: datetime) -> None:
        key = (feed_id, language)
        with self._lock:
            current = self._marks.get(key)
            if current is None or timestamp > current:
                self._marks[key] = timestamp


class SqliteWatermarkStore:
    """Watermarks in the ``feed_watermarks`` table.

    Reads and the read-compare-write of ``set_watermark`` run under the
    database lock, so a key is updated atomically and never moves backwards.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_watermark(self, feed_id: str, language: str) -> datetime | None:
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT watermark FROM feed_watermarks WHERE feed_id = ? AND language = ?;",
                (feed_id, language),
            ).fetchone()
        if row is None:
            return None
        return parse_iso(str(row["watermark"]))

    def set_watermark(self, feed_id: str, language: str, timestamp: datetime) -> None:
        now_iso = to_iso(datetime.now(tz=UTC))
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT watermark FROM feed_watermarks WHERE feed_id = ? AND language = ?;",
                (feed_id, language),
            ).fetchone()
            if row is not None and parse_iso(str(row["watermark"])) >= timestamp:
                return
            self.db.conn.execute(
                """
                INSERT INTO feed_watermarks(feed_id, language, watermark, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(feed_id, language) DO UPDATE
                SET watermark = excluded.watermark,
                    updated_at = excluded.updated_at;
                """,
                (feed_id, language, to_iso(timestamp), now_iso),
            )
            self.db.conn.commit()
