"""Regex-based readers for RSS/Atom feeds and the vendor event-listing page.

Feeds in the wild are frequently not well-formed XML, so these parsers work on
tag boundaries rather than a DOM.  Everything upstream of the ranking code only
depends on ``parse_source`` returning ``FeedRecord`` objects, which keeps the
door open for a real XML/HTML parser later.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from api.models import FeedRecord, FeedSource

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 240
PAGE_LOOKBEHIND_CHARS = 2600
PAGE_CONTEXT_CHARS = 1400
PAGE_DESCRIPTION_CHARS = 220
PAGE_TITLE_PLACEHOLDER = "イベント情報"
PAGE_TIMEZONE_SUFFIX = "T00:00:00+09:00"

_ITEM_RE = re.compile(r"<item\b[\s\S]*?</item>", re.IGNORECASE)
_ENTRY_RE = re.compile(r"<entry\b[\s\S]*?</entry>", re.IGNORECASE)
_LINK_TAG_RE = re.compile(r"<link\b[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r"([\w:-]+)\s*=\s*[\"']([^\"']*)[\"']")
_CDATA_OPEN_RE = re.compile(r"^<!\[CDATA\[", re.IGNORECASE)
_CDATA_CLOSE_RE = re.compile(r"\]\]>$")
_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")

_ANCHOR_RE = re.compile(r"<a\b[^>]*href=[\"']([^\"']+)[\"'][^>]*>([\s\S]*?)</a>", re.IGNORECASE)
_HEADING_RE = re.compile(r"<h[1-4][^>]*>([\s\S]*?)</h[1-4]>", re.IGNORECASE)
_DETAIL_LINK_RE = re.compile(r"(詳細|詳しく|detail|more|view)", re.IGNORECASE)
_CLOSED_RE = re.compile(r"(終了|開催終了|closed)", re.IGNORECASE)
_FULL_DATE_RE = re.compile(r"(20\d{2})\s*[/\-.年]\s*(\d{1,2})\s*[/\-.月]\s*(\d{1,2})")
_SHORT_DATE_RE = re.compile(r"(\d{1,2})\s*[/月]\s*(\d{1,2})\s*日?")
_ENTITY_RE = re.compile(r"&(lt|gt|amp|quot|apos|#\d+|#[xX][0-9a-fA-F]+);")

NAMED_ENTITIES = {"lt": "<", "gt": ">", "amp": "&", "quot": "\"", "apos": "'"}


def _replace_entity(match) -> str:
    name = match.group(1)
    if name in NAMED_ENTITIES:
        return NAMED_ENTITIES[name]
    try:
        code = int(name[2:], 16) if name[1] in "xX" else int(name[1:])
        return chr(code)
    except (ValueError, OverflowError):
        return match.group(0)


def decode_entities(text: Optional[str]) -> str:
    """Decode the XML entities and numeric character references once.

    Other named references are left alone, so a bare ``&copy=1`` in a URL
    survives.
    """
    if not text:
        return ""
    return _ENTITY_RE.sub(_replace_entity, text)


def strip_cdata(text: Optional[str]) -> str:
    if not text:
        return ""
    text = text.strip()
    text = _CDATA_OPEN_RE.sub("", text)
    text = _CDATA_CLOSE_RE.sub("", text)
    return text.strip()


def strip_html(text: Optional[str]) -> str:
    """Replace tags with spaces and collapse whitespace."""
    if not text:
        return ""
    text = _TAG_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def get_tag_value(block: str, tags: Iterable[str]) -> str:
    """Return the decoded text of the first tag in ``tags`` present in ``block``."""
    for tag in tags:
        escaped = re.escape(tag)
        match = re.search(
            rf"<{escaped}(?:\s[^>]*)?>([\s\S]*?)</{escaped}>", block, flags=re.IGNORECASE
        )
        if match:
            return decode_entities(strip_cdata(match.group(1)))
    return ""


def _clean_text(text: str, limit: Optional[int] = None) -> str:
    cleaned = strip_html(text)
    if limit is not None and len(cleaned) > limit:
        cleaned = cleaned[:limit].rstrip()
    return cleaned


def parse_rss_items(xml: str) -> List[FeedRecord]:
    records: List[FeedRecord] = []
    for block in _ITEM_RE.findall(xml or ""):
        title = _clean_text(get_tag_value(block, ["title"]))
        link = get_tag_value(block, ["link", "guid"]).strip()
        if not (title and link):
            continue
        records.append(
            FeedRecord(
                title=title,
                link=link,
                published_at=get_tag_value(block, ["pubDate", "updated", "dc:date"]).strip(),
                description=_clean_text(
                    get_tag_value(block, ["description", "content:encoded", "summary"]),
                    DESCRIPTION_LIMIT,
                ),
                author=_clean_text(get_tag_value(block, ["author", "dc:creator", "source"])),
            )
        )
    return records


def _atom_link(block: str) -> str:
    fallback = ""
    for tag in _LINK_TAG_RE.findall(block):
        attrs = {name.lower(): value for name, value in _ATTR_RE.findall(tag)}
        href = decode_entities(attrs.get("href", "")).strip()
        if not href:
            continue
        if attrs.get("rel", "").lower() == "alternate":
            return href
        if not fallback:
            fallback = href
    return fallback


def parse_atom_entries(xml: str) -> List[FeedRecord]:
    records: List[FeedRecord] = []
    for block in _ENTRY_RE.findall(xml or ""):
        title = _clean_text(get_tag_value(block, ["title"]))
        link = _atom_link(block)
        if not (title and link):
            continue
        records.append(
            FeedRecord(
                title=title,
                link=link,
                published_at=get_tag_value(block, ["updated", "published"]).strip(),
                description=_clean_text(get_tag_value(block, ["summary", "content"]), DESCRIPTION_LIMIT),
                author=_clean_text(get_tag_value(block, ["name", "author"])),
            )
        )
    return records


def parse_syndication(xml: str) -> List[FeedRecord]:
    """RSS ``<item>`` blocks first; Atom ``<entry>`` blocks only when there are none."""
    records = parse_rss_items(xml)
    if records:
        return records
    return parse_atom_entries(xml)


def parse_date_text(text: str, today: Optional[date] = None) -> str:
    """Find a date in free text and return it as ``YYYY-MM-DD`` (or ``""``).

    Accepts ``2025/3/14``, ``2025-03-14``, ``2025年3月14日`` and the short
    ``3/14`` or ``3月14日`` forms.  A short date whose month lies more than two
    months behind ``today`` is taken to mean next year.
    """
    today = today or datetime.now(timezone.utc).date()
    source = text or ""

    full = _FULL_DATE_RE.search(source)
    if full:
        year, month, day = (int(g) for g in full.groups())
        if 1 <= month <= 12 and 1 <= day <= 31:
            return f"{year}-{month:02d}-{day:02d}"

    short = _SHORT_DATE_RE.search(source)
    if short:
        month, day = int(short.group(1)), int(short.group(2))
        if 1 <= month <= 12 and 1 <= day <= 31:
            year = today.year
            if month < today.month - 2:
                year += 1
            return f"{year}-{month:02d}-{day:02d}"
    return ""


def _last_heading(html: str) -> str:
    headings = _HEADING_RE.findall(html or "")
    if not headings:
        return ""
    return strip_html(decode_entities(headings[-1]))


def _absolute_http_url(href: str, base_url: str) -> str:
    try:
        absolute = urljoin(base_url, href)
        parsed = urlparse(absolute)
    except ValueError:
        return ""
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""
    return absolute


def parse_event_page(html: str, page_url: str, source_name: str = "", now: Optional[datetime] = None) -> List[FeedRecord]:
    """Scrape event cards from the vendor listing page.

    Each "details" link becomes a record; the heading and text just before
    the link supply title, description and date.  Cards marked as closed are
    skipped.  Records without a recognisable date are stamped with ``now``.
    """
    now = now or datetime.now(timezone.utc)
    raw = html or ""
    records: List[FeedRecord] = []

    for match in _ANCHOR_RE.finditer(raw):
        href = decode_entities(match.group(1)).strip()
        anchor_text = strip_html(decode_entities(match.group(2)))
        if not href or not _DETAIL_LINK_RE.search(anchor_text):
            continue

        link = _absolute_http_url(href, page_url)
        if not link:
            continue

        before = raw[max(0, match.start() - PAGE_LOOKBEHIND_CHARS):match.start()]
        context = strip_html(decode_entities(before[-PAGE_CONTEXT_CHARS:]))
        if _CLOSED_RE.search(context):
            continue

        detected = parse_date_text(context, now.date())
        records.append(
            FeedRecord(
                title=_last_heading(before) or PAGE_TITLE_PLACEHOLDER,
                link=link,
                published_at=f"{detected}{PAGE_TIMEZONE_SUFFIX}" if detected else now.isoformat(),
                description=context[-PAGE_DESCRIPTION_CHARS:],
                author=source_name,
            )
        )
    return records


def parse_source(body: str, source: FeedSource, now: Optional[datetime] = None) -> List[FeedRecord]:
    """Parse one fetched body according to ``source.kind`` and tag the records with their source."""
    if not body:
        return []
    if source.kind == "htmlPage":
        parsed = parse_event_page(body, source.url, source.name, now)
    else:
        parsed = parse_syndication(body)

    return [
        record.model_copy(
            update={
                "author": record.author or source.name,
                "source": source.name,
                "source_key": source.key,
                "query": source.query,
            }
        )
        for record in parsed
    ]
