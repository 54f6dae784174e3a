"""Feed aggregation pipelines: fetch, parse, dedupe, rank, select, assemble."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Sequence
from urllib.parse import quote

from api.feed_fetcher import FeedFetcher
from api.feed_parser import parse_source
from api.models import FeedNewsResponse, FeedRecord, FeedSource, ScoredRecord
from api.ranking import (
    COSME_EVENT_PROFILE,
    KeywordProfile,
    dedupe_by_link,
    has_brand,
    preferred_first,
    rank_records,
    select_tier,
)

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 8

REGION_WORDS = ["東京", "神奈川", "千葉", "首都圏"]
COSME_WORDS = ["コスメ", "化粧品", "ビューティー", "メイク"]
EVENT_WORDS = ["ポップアップ", "イベント", "催事", "フェス", "フェスティバル", "フェア", "体験会"]
EVENT_TITLE_TERMS = ["intitle:ポップアップ", "intitle:イベント", "intitle:催事", "intitle:フェア"]

EVENT_PAGE_SOURCES: List[FeedSource] = [
    FeedSource(
        key="meguro_nono_event_info",
        name="meguro-nono.com",
        kind="htmlPage",
        url="https://meguro-nono.com/event_info/?date=&type=&pref%5B%5D=101&pref%5B%5D=81&pref%5B%5D=89",
    ),
]

_KEYWORD_SPLIT_RE = re.compile(r"[\n,、，]")


@dataclass(frozen=True)
class FeedPipeline:
    """Static description of one aggregation endpoint."""

    name: str
    allowed_hosts: FrozenSet[str]
    sources: Sequence[FeedSource] = field(default_factory=tuple)
    profile: KeywordProfile = COSME_EVENT_PROFILE
    prefer_source: bool = False


EVENT_PAGE_PIPELINE = FeedPipeline(
    name="Cosme event",
    allowed_hosts=frozenset({"meguro-nono.com", "www.meguro-nono.com"}),
    sources=tuple(EVENT_PAGE_SOURCES),
    prefer_source=True,
)

NEWS_SEARCH_PIPELINE = FeedPipeline(
    name="Cosme news search",
    allowed_hosts=frozenset({"news.google.com"}),
)


def normalize_keywords(raw: Optional[str]) -> List[str]:
    """Split caller keywords on newlines and commas, keep at most eight, drop duplicates."""
    if not raw:
        return []
    parts = [part.strip() for part in _KEYWORD_SPLIT_RE.split(raw)]
    parts = [part for part in parts if part][:MAX_KEYWORDS]
    return list(dict.fromkeys(parts))


def _or_group(terms: Sequence[str]) -> str:
    return " OR ".join(terms)


def _quoted(words: Sequence[str]) -> List[str]:
    return [f'"{word}"' for word in words]


def build_search_queries(keywords: Sequence[str]) -> List[str]:
    area = _or_group(_quoted(REGION_WORDS))
    cosme = _or_group(_quoted(COSME_WORDS))
    event_title = _or_group(EVENT_TITLE_TERMS)
    event_word = _or_group(_quoted(EVENT_WORDS))
    extra_terms = [kw.replace('"', "").strip() for kw in keywords]
    extra_terms = [kw for kw in extra_terms if kw]
    extra = f"({_or_group(_quoted(extra_terms))})" if extra_terms else ""

    return [
        f"({area}) ({cosme}) ({event_title}) {extra}".strip(),
        f"({area}) ({cosme}) ({event_word}) {extra}".strip(),
        f'("ドン・キホーテ" OR "ドンキ" OR "MEGAドンキ") '
        f'("コスメフェスティバル" OR "コスメフェス" OR "ビューティーイベント" OR "催事") {extra}'.strip(),
    ]


def google_news_url(query: str) -> str:
    return f"https://news.google.com/rss/search?q={quote(query, safe='')}&hl=ja&gl=JP&ceid=JP:ja"


def build_search_sources(queries: Sequence[str]) -> List[FeedSource]:
    return [
        FeedSource(
            key=f"google_news_q{index}",
            name="news.google.com",
            kind="syndication",
            url=google_news_url(query),
            query=query,
        )
        for index, query in enumerate(queries, start=1)
    ]


async def collect_records(
    pipeline: FeedPipeline,
    fetcher: FeedFetcher,
    sources: Sequence[FeedSource],
    now: datetime,
) -> List[FeedRecord]:
    """Fetch and parse every source; a failing source contributes nothing."""
    bodies = await fetcher.fetch_all(sources, pipeline.allowed_hosts)
    merged: List[FeedRecord] = []
    for source, body in zip(sources, bodies):
        try:
            merged.extend(parse_source(body, source, now))
        except Exception as e:
            logger.warning("Feed %s could not be parsed: %s", source.key, e)
    return dedupe_by_link(merged)


def assemble_response(
    selected: List[ScoredRecord],
    mode: str,
    *,
    max_items: int,
    recent_days: int,
    strict_recent: bool,
    show_all: bool,
    profile: KeywordProfile,
    queries: Sequence[str] = (),
) -> FeedNewsResponse:
    picked = selected[:max_items]
    items = [s.record for s in picked]

    source_stats: Dict[str, int] = {}
    for item in items:
        key = item.source or "unknown"
        source_stats[key] = source_stats.get(key, 0) + 1

    finite_ages = [s.age_days for s in picked if s.age_days != float("inf")]

    return FeedNewsResponse(
        count=len(items),
        mode=mode,
        show_all=show_all,
        recent_days=recent_days,
        strict_recent=strict_recent,
        brand_count=sum(1 for item in items if has_brand(item, profile)),
        oldest_days=int(max(finite_ages, default=0)),
        source_stats=source_stats,
        queries=list(queries),
        items=items,
    )


async def run_pipeline(
    pipeline: FeedPipeline,
    fetcher: FeedFetcher,
    *,
    max_items: int,
    recent_days: int,
    strict_recent: bool = False,
    show_all: bool = False,
    sources: Optional[Sequence[FeedSource]] = None,
    queries: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> FeedNewsResponse:
    now = now or datetime.now(timezone.utc)
    sources = list(sources if sources is not None else pipeline.sources)

    records = await collect_records(pipeline, fetcher, sources, now)
    scored = rank_records(records, now, pipeline.profile)
    mode, selected = select_tier(scored, recent_days, strict_recent, show_all, pipeline.profile)
    if pipeline.prefer_source:
        selected = preferred_first(selected, pipeline.profile)

    logger.info(
        "%s: %d sources, %d unique records, mode=%s, selected=%d",
        pipeline.name, len(sources), len(records), mode, len(selected),
    )
    return assemble_response(
        selected,
        mode,
        max_items=max_items,
        recent_days=recent_days,
        strict_recent=strict_recent,
        show_all=show_all,
        profile=pipeline.profile,
        queries=queries,
    )
