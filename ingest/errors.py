from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ingest.orchestrator import RunReport


class IngestError(Exception):
    reason = "ingest_error"


class FetchTimeout(IngestError):
    reason = "fetch_timeout"


class FetchHttpError(IngestError):
    def __init__(self, status_code: int | None, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"http_{status_code}")

    @property
    def reason(self) -> str:  # type: ignore[override]
        if self.status_code is None:
            return "request_error"
        return f"http_{self.status_code}"


class ParseError(IngestError):
    reason = "parse_error"


class EmptyFeedGroup(IngestError):
    reason = "empty_feed_group"


class UpsertError(IngestError):
    reason = "upsert_error"


class SinkOutageError(IngestError):
    reason = "sink_outage"

    def __init__(self, report: RunReport) -> None:
        self.report = report
        super().__init__("every incident upsert failed during this run")
