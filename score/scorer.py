from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from ingest.models import MultilingualBundle, RawFeedItem
from normalize.normalize import normalize_text


DECAY_HOURS = 168.0
URGENT_BOOST = 0.3
DEFAULT_SEVERITY = 2


def _tier(english: list[str], chinese: list[str]) -> re.Pattern[str]:
    words = [r"\b" + re.escape(w).replace(r"\ ", r"\s+") + r"\b" for w in english]
    return re.compile("|".join(words + [re.escape(w) for w in chinese]))


# highest tier first; the first tier with a hit decides the severity
SEVERITY_TIERS: list[tuple[int, re.Pattern[str]]] = [
    (
        5,
        _tier(
            ["urgent", "emergency", "severe", "critical", "immediate", "major disruption"],
            ["緊急", "紧急", "嚴重", "严重", "危急"],
        ),
    ),
    (
        4,
        _tier(
            ["disruption", "disrupted", "suspended", "suspension", "diverted", "delayed", "affected"],
            ["暫停", "暂停", "改道", "受阻", "延誤", "延误", "受影響", "受影响", "中斷", "中断"],
        ),
    ),
    (
        3,
        _tier(
            [
                "temporary",
                "temporarily",
                "relocation",
                "relocated",
                "special traffic",
                "arrangement",
                "arrangements",
                "maintenance",
                "road works",
                "closure",
                "closed",
            ],
            ["臨時", "临时", "遷移", "迁移", "特別交通", "特别交通", "安排", "維修", "维修", "封路", "封閉", "封闭"],
        ),
    ),
]

_URGENT_RE = SEVERITY_TIERS[0][1]


@dataclass(frozen=True)
class Score:
    severity: int
    relevance: float


def severity_for_text(text: str) -> int:
    normalized = normalize_text(text)
    for severity, pattern in SEVERITY_TIERS:
        if pattern.search(normalized):
            return severity
    return DEFAULT_SEVERITY


def is_urgent(text: str) -> bool:
    return _URGENT_RE.search(normalize_text(text)) is not None


def relevance_for(published_at: datetime, text: str, *, now: datetime) -> float:
    hours = (now - published_at).total_seconds() / 3600.0
    score = min(1.0, max(0.0, 1.0 - hours / DECAY_HOURS))
    if is_urgent(text):
        score = min(1.0, score + URGENT_BOOST)
    return round(score, 2)


def score_bundle(bundle: MultilingualBundle, *, now: datetime) -> Score:
    text = bundle.text()
    return Score(
        severity=severity_for_text(text),
        relevance=relevance_for(bundle.primary_published_at, text, now=now),
    )


def score_item(item: RawFeedItem, *, now: datetime) -> Score:
    text = f"{item.title} {item.body}"
    return Score(
        severity=severity_for_text(text),
        relevance=relevance_for(item.published_at, text, now=now),
    )
