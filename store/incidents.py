from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from ingest.errors import UpsertError
from ingest.models import Incident, to_iso
from store.db import Database


logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    inserted: int = 0
    skipped_duplicates: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)


class IncidentSink(Protocol):
    def upsert(self, incidents: list[Incident]) -> UpsertResult: ...


class InMemoryIncidentSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.rows: dict[str, Incident] = {}

    def upsert(self, incidents: list[Incident]) -> UpsertResult:
        result = UpsertResult()
        with self._lock:
            for incident in incidents:
                if incident.content_hash in self.rows:
                    result.skipped_duplicates += 1
                    continue
                self.rows[incident.content_hash] = incident
                result.inserted += 1
        return result


class SqliteIncidentSink:
    """Insert-or-ignore keyed by ``content_hash``.

    An existing row is never overwritten: equal hashes mean equal content.
    Rows are written one statement at a time so a rejected incident is
    reported in ``failed`` without losing the rest of the batch. A connection
    that cannot be used at all raises ``UpsertError``.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(self, incidents: list[Incident]) -> UpsertResult:
        result = UpsertResult()
        now_iso = to_iso(datetime.now(tz=UTC))
        with self.db.lock:
            for incident in incidents:
                try:
                    cur = self.db.conn.execute(
                        """
                        INSERT INTO incidents(
                          content_hash, feed_slug, content, category, severity,
                          relevance_score, source_published_at, created_at, updated_at
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(content_hash) DO NOTHING;
                        """,
                        (
                            incident.content_hash,
                            incident.feed_slug,
                            json.dumps(incident.content, ensure_ascii=False, sort_keys=True),
                            incident.category,
                            incident.severity,
                            incident.relevance_score,
                            incident.source_published_at,
                            now_iso,
                            now_iso,
                        ),
                    )
                except sqlite3.ProgrammingError as e:
                    raise UpsertError(str(e)) from e
                except sqlite3.Error as e:
                    logger.warning("incident %s rejected: %s", incident.content_hash, e)
                    result.failed.append((incident.content_hash, str(e)))
                    continue
                if cur.rowcount == 1:
                    result.inserted += 1
                else:
                    result.skipped_duplicates += 1
            try:
                self.db.conn.commit()
            except sqlite3.Error as e:
                raise UpsertError(str(e)) from e
        return result


def query_incidents(
    db: Database,
    *,
    feed_slug: str | None = None,
    category: str | None = None,
    min_severity: int | None = None,
    since: str | None = None,
    until: str | None = None,
    limit: int = 100,
) -> list[dict]:
    where: list[str] = []
    params: list[object] = []
    if feed_slug is not None:
        where.append("feed_slug = ?")
        params.append(feed_slug)
    if category is not None:
        where.append("category = ?")
        params.append(category)
    if min_severity is not None:
        where.append("severity >= ?")
        params.append(min_severity)
    if since is not None:
        where.append("source_published_at >= ?")
        params.append(since)
    if until is not None:
        where.append("source_published_at <= ?")
        params.append(until)

    sql = "SELECT * FROM incidents"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY source_published_at DESC, content_hash ASC LIMIT ?;"
    params.append(limit)

    with db.lock:
        rows = db.conn.execute(sql, params).fetchall()
    out: list[dict] = []
    for row in rows:
        record = dict(row)
        record["content"] = json.loads(str(record["content"]))
        out.append(record)
    return out
