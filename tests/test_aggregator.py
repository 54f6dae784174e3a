import asyncio

import httpx

from api.aggregator import (
    EVENT_PAGE_PIPELINE,
    FeedPipeline,
    build_search_queries,
    build_search_sources,
    google_news_url,
    normalize_keywords,
    run_pipeline,
)
from api.feed_fetcher import FeedFetcher, sanitize_feed_url
from api.models import FeedSource
from api.ranking import is_on_topic
from tests.conftest import NOW, mock_transport, rfc822, rss_feed, rss_item

HOSTS = frozenset({"feeds.example.com"})


def _pipeline(*sources: FeedSource, prefer_source: bool = False) -> FeedPipeline:
    return FeedPipeline(name="Test", allowed_hosts=HOSTS, sources=sources, prefer_source=prefer_source)


def _source(key: str, url: str) -> FeedSource:
    return FeedSource(key=key, name=key, url=url)


def _run(pipeline, transport, **kwargs):
    kwargs.setdefault("max_items", 10)
    kwargs.setdefault("recent_days", 90)
    return asyncio.run(run_pipeline(pipeline, FeedFetcher(transport=transport), now=NOW, **kwargs))


def test_two_sources_with_matching_and_off_topic_items():
    feed_a = rss_feed([
        rss_item("東京でコスメのポップアップイベント", "https://news.example.com/a1", rfc822(3)),
        rss_item("為替相場の動向", "https://news.example.com/a2", rfc822(1)),
    ])
    feed_b = rss_feed([
        rss_item("横浜で化粧品フェア開催", "https://news.example.com/b1", rfc822(2)),
        rss_item("新型スマートフォン発表", "https://news.example.com/b2", rfc822(1)),
    ])
    transport = mock_transport({
        "feeds.example.com/a.xml": httpx.Response(200, text=feed_a),
        "feeds.example.com/b.xml": httpx.Response(200, text=feed_b),
    })
    pipeline = _pipeline(
        _source("a", "https://feeds.example.com/a.xml"),
        _source("b", "https://feeds.example.com/b.xml"),
    )

    result = _run(pipeline, transport, recent_days=90, strict_recent=False, max_items=10)

    assert result.count == 2
    assert result.mode == "recent_target"
    assert all(is_on_topic(item) for item in result.items)
    # same keyword score bracket, so the newer item leads
    assert [item.link for item in result.items] == ["https://news.example.com/b1", "https://news.example.com/a1"]
    assert result.source_stats == {"a": 1, "b": 1}
    assert result.oldest_days == 3


def test_failed_and_disallowed_sources_contribute_nothing():
    good = rss_feed([rss_item("東京でコスメのポップアップイベント", "https://news.example.com/ok", rfc822(1))])
    transport = mock_transport({
        "feeds.example.com/good.xml": httpx.Response(200, text=good),
        "feeds.example.com/broken.xml": httpx.Response(500, text="boom"),
    })
    pipeline = _pipeline(
        _source("broken", "https://feeds.example.com/broken.xml"),
        _source("plain-http", "http://feeds.example.com/good.xml"),
        _source("elsewhere", "https://evil.example.net/good.xml"),
        _source("good", "https://feeds.example.com/good.xml"),
    )

    result = _run(pipeline, transport)

    assert [item.link for item in result.items] == ["https://news.example.com/ok"]
    assert all("evil.example.net" not in url and url.startswith("https://") for url in transport.calls)


def test_network_errors_are_tolerated():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/down.xml":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text=rss_feed([rss_item("東京のコスメイベント", "https://news.example.com/up", rfc822(1))]))

    pipeline = _pipeline(_source("down", "https://feeds.example.com/down.xml"), _source("up", "https://feeds.example.com/up.xml"))
    result = _run(pipeline, httpx.MockTransport(handler))
    assert result.count == 1


def test_duplicate_links_across_sources_keep_first_source():
    item = rss_item("東京でコスメのポップアップイベント", "https://news.example.com/shared", rfc822(1))
    transport = mock_transport({}, default=httpx.Response(200, text=rss_feed([item])))
    pipeline = _pipeline(_source("first", "https://feeds.example.com/1.xml"), _source("second", "https://feeds.example.com/2.xml"))

    result = _run(pipeline, transport)

    assert result.count == 1
    assert result.items[0].source_key == "first"


def test_max_items_and_summary_counters():
    items = [
        rss_item(f"ドンキでコスメフェス {i}", f"https://news.example.com/d{i}", rfc822(i)) for i in range(1, 4)
    ] + [rss_item(f"東京のコスメイベント {i}", f"https://news.example.com/t{i}", rfc822(40)) for i in range(3)]
    transport = mock_transport({}, default=httpx.Response(200, text=rss_feed(items)))

    result = _run(_pipeline(_source("s", "https://feeds.example.com/s.xml")), transport, max_items=4)

    assert result.count == 4
    assert result.brand_count == 3
    assert result.oldest_days == 40
    assert result.source_stats == {"s": 4}


def test_preferred_source_is_listed_first():
    news = rss_feed([rss_item("ドンキでコスメフェス", "https://news.example.com/brand", rfc822(1))])
    page = '<h2>目黒のコスメイベント</h2><p>2026/2/20 開催</p><a href="/event_info/7/">詳細</a>'
    transport = mock_transport({
        "feeds.example.com/news.xml": httpx.Response(200, text=news),
        "meguro-nono.com/event_info/": httpx.Response(200, text=page),
    })
    pipeline = FeedPipeline(
        name="Test",
        allowed_hosts=frozenset({"feeds.example.com", "meguro-nono.com"}),
        sources=(
            FeedSource(key="news", name="news", url="https://feeds.example.com/news.xml"),
            FeedSource(key="page", name="meguro-nono.com", url="https://meguro-nono.com/event_info/", kind="htmlPage"),
        ),
        prefer_source=True,
    )

    result = _run(pipeline, transport)

    assert [item.source_key for item in result.items] == ["page", "news"]
    assert result.items[0].link == "https://meguro-nono.com/event_info/7/"


def test_event_page_pipeline_is_locked_to_vendor_hosts():
    assert EVENT_PAGE_PIPELINE.prefer_source
    for source in EVENT_PAGE_PIPELINE.sources:
        assert sanitize_feed_url(source.url, EVENT_PAGE_PIPELINE.allowed_hosts) == source.url


def test_sanitize_feed_url():
    hosts = frozenset({"news.google.com"})
    assert sanitize_feed_url("https://news.google.com/rss?q=1", hosts) == "https://news.google.com/rss?q=1"
    assert sanitize_feed_url("http://news.google.com/rss", hosts) == ""
    assert sanitize_feed_url("https://news.google.com.evil.io/rss", hosts) == ""
    assert sanitize_feed_url("not a url", hosts) == ""
    assert sanitize_feed_url(None, hosts) == ""


def test_normalize_keywords():
    assert normalize_keywords("") == []
    assert normalize_keywords("資生堂, 資生堂\nKOSE、ロフト，") == ["資生堂", "KOSE", "ロフト"]
    many = ",".join(f"k{i}" for i in range(12))
    assert normalize_keywords(many) == [f"k{i}" for i in range(8)]


def test_search_queries_and_sources():
    queries = build_search_queries(['ロフト "限定"'])
    assert len(queries) == 3
    assert all(q.endswith('("ロフト 限定")') for q in queries)
    assert "intitle:ポップアップ" in queries[0]
    assert '"催事"' in queries[1]
    assert queries[2].startswith('("ドン・キホーテ"')

    plain = build_search_queries([])
    assert plain[0].endswith("intitle:フェア)")

    sources = build_search_sources(plain)
    assert [s.key for s in sources] == ["google_news_q1", "google_news_q2", "google_news_q3"]
    assert sources[0].url == google_news_url(plain[0])
    assert sources[0].url.startswith("https://news.google.com/rss/search?q=")
    assert sources[0].url.endswith("&hl=ja&gl=JP&ceid=JP:ja")
    assert sources[1].query == plain[1]
