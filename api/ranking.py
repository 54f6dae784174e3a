"""Scoring, topic filtering and tiered selection of feed records."""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from dateutil import parser as dateparser

from api.models import FeedRecord, ScoredRecord

DAY_SECONDS = 86400
HARD_WINDOW_CAP_DAYS = 365
UNDATED_PENALTY = 900
MAX_AGE_PENALTY = 1200

# (upper bound in days, bonus)
AGE_BRACKETS: Tuple[Tuple[int, int], ...] = ((7, 1200), (30, 700), (60, 350), (90, 120))

MODE_ALL = "all"
MODE_RECENT_TARGET = "recent_target"
MODE_HARD_WINDOW_TARGET = "hard_window_target"
MODE_RECENT_FALLBACK = "recent_fallback"
MODE_TARGET_FALLBACK = "target_fallback"
MODE_HARD_WINDOW_FALLBACK = "hard_window_fallback"


@dataclass(frozen=True)
class KeywordProfile:
    brand: Pattern
    region: Pattern
    event: Pattern
    topic: Pattern
    preferred_source: Pattern
    brand_weight: int = 3000
    region_weight: int = 500
    event_weight: int = 500
    topic_weight: int = 350
    preferred_weight: int = 900


COSME_EVENT_PROFILE = KeywordProfile(
    brand=re.compile(r"(ドンキ|ドン・キホーテ|MEGAドンキ|majica|donki\.com|ppih\.co\.jp)", re.IGNORECASE),
    region=re.compile(r"(東京|神奈川|千葉|首都圏|都内|横浜|川崎|幕張|千葉市|船橋|柏|目黒)", re.IGNORECASE),
    event=re.compile(r"(ポップアップ|イベント|催事|フェス|フェスティバル|フェア|体験会|展示会)", re.IGNORECASE),
    topic=re.compile(r"(コスメ|化粧品|ビューティー|メイク|美容)", re.IGNORECASE),
    preferred_source=re.compile(r"meguro-nono\.com", re.IGNORECASE),
)


def parse_published(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = dateparser.parse(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        # dateutil accepts offsets like +2400 that only fail once used
        parsed.timestamp()
    except (ValueError, OverflowError):
        return None
    return parsed


def published_timestamp(value: Optional[str]) -> float:
    """Epoch seconds of ``value``; 0 when it cannot be parsed, so undated items sort oldest."""
    parsed = parse_published(value)
    return parsed.timestamp() if parsed else 0.0


def age_days(value: Optional[str], now: datetime) -> float:
    parsed = parse_published(value)
    if parsed is None:
        return math.inf
    return max(0, math.floor((now - parsed).total_seconds() / DAY_SECONDS))


def age_adjustment(days: float) -> int:
    if math.isinf(days):
        return -UNDATED_PENALTY
    for limit, bonus in AGE_BRACKETS:
        if days <= limit:
            return bonus
    return -min(MAX_AGE_PENALTY, math.floor((days - AGE_BRACKETS[-1][0]) * 12))


def _record_text(record: FeedRecord) -> str:
    return f"{record.title} {record.description} {record.link}"


def is_preferred_source(record: FeedRecord, profile: KeywordProfile = COSME_EVENT_PROFILE) -> bool:
    return bool(profile.preferred_source.search(f"{record.source} {record.author} {record.link}"))


def has_brand(record: FeedRecord, profile: KeywordProfile = COSME_EVENT_PROFILE) -> bool:
    return bool(profile.brand.search(_record_text(record)))


def score_record(record: FeedRecord, now: datetime, profile: KeywordProfile = COSME_EVENT_PROFILE) -> int:
    text = _record_text(record)
    score = 0
    if profile.brand.search(text):
        score += profile.brand_weight
    if profile.region.search(text):
        score += profile.region_weight
    if profile.event.search(text):
        score += profile.event_weight
    if profile.topic.search(text):
        score += profile.topic_weight
    if profile.preferred_source.search(record.source) or profile.preferred_source.search(text):
        score += profile.preferred_weight
    return score + age_adjustment(age_days(record.published_at, now))


def is_on_topic(record: FeedRecord, profile: KeywordProfile = COSME_EVENT_PROFILE) -> bool:
    """Whether the record is about an event in the product's topic.

    Needs both a topic and an event keyword plus a region or brand mention.
    Records from the preferred source only need one of topic/event.
    """
    text = f"{record.title} {record.description}"
    has_topic = bool(profile.topic.search(text))
    has_event = bool(profile.event.search(text))
    if is_preferred_source(record, profile):
        return has_event or has_topic
    has_region = bool(profile.region.search(text))
    return has_topic and has_event and (has_region or bool(profile.brand.search(text)))


def dedupe_by_link(records: Iterable[FeedRecord]) -> List[FeedRecord]:
    """Keep the first record seen for each link; drop records without one."""
    seen: Dict[str, FeedRecord] = {}
    for record in records:
        key = (record.link or "").strip()
        if key and key not in seen:
            seen[key] = record
    return list(seen.values())


def rank_records(records: Iterable[FeedRecord], now: datetime, profile: KeywordProfile = COSME_EVENT_PROFILE) -> List[ScoredRecord]:
    scored = [
        ScoredRecord(
            record=record,
            age_days=age_days(record.published_at, now),
            score=score_record(record, now, profile),
            published_ts=published_timestamp(record.published_at),
        )
        for record in records
    ]
    scored.sort(key=lambda s: (-s.score, -s.published_ts))
    return scored


def hard_window_days(recent_days: int) -> int:
    return max(recent_days, min(HARD_WINDOW_CAP_DAYS, recent_days * 2))


def select_tier(
    scored: List[ScoredRecord],
    recent_days: int,
    strict_recent: bool = False,
    show_all: bool = False,
    profile: KeywordProfile = COSME_EVENT_PROFILE,
) -> Tuple[str, List[ScoredRecord]]:
    """Pick the first non-empty candidate set and name the tier it came from.

    With ``strict_recent`` only the in-window, on-topic tier is tried and an
    empty result is returned as-is.
    """
    if show_all:
        return MODE_ALL, list(scored)

    hard_days = hard_window_days(recent_days)
    within_recent = [s for s in scored if s.age_days <= recent_days]
    recent_target = [s for s in within_recent if is_on_topic(s.record, profile)]
    if recent_target or strict_recent:
        return MODE_RECENT_TARGET, recent_target

    within_hard = [s for s in scored if s.age_days <= hard_days]
    hard_target = [s for s in within_hard if is_on_topic(s.record, profile)]
    if hard_target:
        return MODE_HARD_WINDOW_TARGET, hard_target
    if within_recent:
        return MODE_RECENT_FALLBACK, within_recent

    target_only = [s for s in scored if is_on_topic(s.record, profile)]
    if target_only:
        return MODE_TARGET_FALLBACK, target_only
    return MODE_HARD_WINDOW_FALLBACK, within_hard or list(scored)


def preferred_first(scored: List[ScoredRecord], profile: KeywordProfile = COSME_EVENT_PROFILE) -> List[ScoredRecord]:
    """Stable partition: preferred-source records first, relative order kept."""
    preferred = [s for s in scored if is_preferred_source(s.record, profile)]
    others = [s for s in scored if not is_preferred_source(s.record, profile)]
    return preferred + others
