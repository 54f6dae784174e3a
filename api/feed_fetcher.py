import asyncio
import logging
from typing import AbstractSet, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from api.models import FeedSource

logger = logging.getLogger(__name__)

USER_AGENT = "AntiageFeedProxy/1.0 (+https://portfolio-flame-iota-d7n8dbh5mp.vercel.app)"
FEED_ACCEPT = "application/rss+xml, application/xml, text/xml;q=0.9, */*;q=0.8"


def sanitize_feed_url(raw_url: Optional[str], allowed_hosts: AbstractSet[str]) -> str:
    """Return the URL when it is https and its host is allow-listed, else ``""``."""
    try:
        parsed = urlparse(str(raw_url or "").strip())
    except ValueError:
        return ""
    if parsed.scheme != "https":
        return ""
    if (parsed.hostname or "") not in allowed_hosts:
        return ""
    return parsed.geturl()


class FeedFetcher:
    """Concurrent GETs against allow-listed feed hosts.

    ``transport`` is handed to ``httpx.AsyncClient`` untouched, which lets
    tests plug in ``httpx.MockTransport``.
    """

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, "Accept": FEED_ACCEPT},
            transport=self.transport,
        )

    async def fetch(self, url: str) -> httpx.Response:
        async with self._client() as client:
            return await client.get(url)

    async def fetch_all(self, sources: Sequence[FeedSource], allowed_hosts: AbstractSet[str]) -> List[str]:
        """Fetch every source in parallel; one body per source, ``""`` where skipped or failed."""
        async with self._client() as client:
            return list(
                await asyncio.gather(*(self._fetch_body(client, source, allowed_hosts) for source in sources))
            )

    async def _fetch_body(self, client: httpx.AsyncClient, source: FeedSource, allowed_hosts: AbstractSet[str]) -> str:
        url = sanitize_feed_url(source.url, allowed_hosts)
        if not url:
            logger.warning("Skipping feed %s: URL not allowed", source.key)
            return ""
        try:
            resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Feed %s fetch failed: %s", source.key, e)
            return ""
        if not resp.is_success:
            logger.warning("Feed %s responded with status %s", source.key, resp.status_code)
            return ""
        return resp.text
