from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ingest.models import parse_iso, to_iso
from store.db import Database


MAX_BACKOFF_SECONDS = 60 * 60


@dataclass(frozen=True)
class FetchState:
    etag: str | None
    last_modified: str | None
    next_fetch_at: datetime | None
    consecutive_failures: int


def compute_backoff_seconds(
    poll_interval_seconds: int, consecutive_failures: int
) -> int:
    if consecutive_failures <= 0:
        return poll_interval_seconds
    return min(MAX_BACKOFF_SECONDS, poll_interval_seconds * (2**consecutive_failures))


def get_fetch_state(db: Database, *, feed_slug: str, language: str) -> FetchState | None:
    with db.lock:
        row = db.conn.execute(
            """
            SELECT etag, last_modified, next_fetch_at, consecutive_failures
            FROM feed_sources
            WHERE feed_slug = ? AND language = ?;
            """,
            (feed_slug, language),
        ).fetchone()
    if row is None:
        return None
    return FetchState(
        etag=row["etag"],
        last_modified=row["last_modified"],
        next_fetch_at=parse_iso(str(row["next_fetch_at"]))
        if row["next_fetch_at"]
        else None,
        consecutive_failures=int(row["consecutive_failures"]),
    )


def record_fetch_success(
    db: Database,
    *,
    feed_slug: str,
    language: str,
    status_code: int,
    fetch_ms: int,
    etag: str | None,
    last_modified: str | None,
    now: datetime,
) -> None:
    now_iso = to_iso(now)
    with db.lock:
        db.conn.execute(
            """
            UPDATE feed_sources
            SET last_fetch_at = ?,
                last_success_at = ?,
                last_status_code = ?,
                last_fetch_ms = ?,
                consecutive_failures = 0,
                last_error = NULL,
                last_error_at = NULL,
                success_count = success_count + 1,
                etag = ?,
                last_modified = ?,
                next_fetch_at = NULL
            WHERE feed_slug = ? AND language = ?;
            """,
            (
                now_iso,
                now_iso,
                status_code,
                fetch_ms,
                etag,
                last_modified,
                feed_slug,
                language,
            ),
        )
        db.conn.commit()


def record_fetch_error(
    db: Database,
    *,
    feed_slug: str,
    language: str,
    status_code: int | None,
    error: str,
    poll_interval_seconds: int,
    now: datetime,
) -> int:
    """Count a failed fetch and push the next attempt out; returns the backoff."""
    now_iso = to_iso(now)
    with db.lock:
        row = db.conn.execute(
            "SELECT consecutive_failures FROM feed_sources WHERE feed_slug = ? AND language = ?;",
            (feed_slug, language),
        ).fetchone()
        if row is None:
            return poll_interval_seconds
        failures = int(row["consecutive_failures"]) + 1
        # the first failure does not delay the next pass
        backoff_seconds = (
            0 if failures == 1 else compute_backoff_seconds(poll_interval_seconds, failures - 1)
        )
        next_iso = to_iso(now + timedelta(seconds=backoff_seconds))

        db.conn.execute(
            """
            UPDATE feed_sources
            SET last_fetch_at = ?,
                last_error_at = ?,
                last_status_code = COALESCE(?, last_status_code),
                consecutive_failures = ?,
                last_error = ?,
                error_count = error_count + 1,
                next_fetch_at = ?
            WHERE feed_slug = ? AND language = ?;
            """,
            (
                now_iso,
                now_iso,
                status_code,
                failures,
                error,
                next_iso,
                feed_slug,
                language,
            ),
        )
        db.conn.commit()
    return backoff_seconds


def in_backoff(state: FetchState | None, now: datetime) -> bool:
    return (
        state is not None
        and state.next_fetch_at is not None
        and state.next_fetch_at > now
    )
