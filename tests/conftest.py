from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Dict, Iterable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from api.feed_fetcher import FeedFetcher
from api.main import app, get_fetcher

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ALLOWED_ORIGIN = "http://localhost:3000"


def rfc822(days_ago: float, now: datetime = NOW) -> str:
    return format_datetime(now - timedelta(days=days_ago), usegmt=True)


def rss_item(title: str, link: str, pub_date: str = "", description: str = "", author: str = "") -> str:
    parts = [f"<title>{title}</title>", f"<link>{link}</link>"]
    if pub_date:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    if description:
        parts.append(f"<description>{description}</description>")
    if author:
        parts.append(f"<author>{author}</author>")
    return "<item>" + "".join(parts) + "</item>"


def rss_feed(items: Iterable[str]) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Test feed</title>'
        + "".join(items)
        + "</channel></rss>"
    )


def mock_transport(routes: Dict[str, httpx.Response], default: Optional[httpx.Response] = None) -> httpx.MockTransport:
    """Serve canned responses keyed by ``host + path``."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        key = request.url.host + request.url.path
        if key in routes:
            return routes[key]
        if default is not None:
            return default
        return httpx.Response(404, text="not found")

    transport = httpx.MockTransport(handler)
    transport.calls = calls
    return transport


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def use_transport():
    """Route every upstream feed request of the app through a mock transport."""

    def install(transport: httpx.MockTransport) -> None:
        app.dependency_overrides[get_fetcher] = lambda: FeedFetcher(timeout=5.0, transport=transport)

    yield install
    app.dependency_overrides.pop(get_fetcher, None)
