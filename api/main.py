import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.aggregator import (
    EVENT_PAGE_PIPELINE,
    NEWS_SEARCH_PIPELINE,
    build_search_queries,
    build_search_sources,
    normalize_keywords,
    run_pipeline,
)
from api.chat import (
    DEFAULT_ANALYSIS,
    MAX_BODY_BYTES,
    MAX_CONTENT_CHARS,
    ChatClient,
    ChatInputError,
    UpstreamChatError,
    build_chat_plan,
    extract_upstream_content,
    finalize_analysis,
    parse_retry_after_seconds,
)
from api.feed_fetcher import FeedFetcher, sanitize_feed_url
from api.feed_parser import parse_syndication
from api.identity import IdentityError, IdentityVerifier
from api.models import ChatResponse, FeedNewsResponse, RssProxyResponse
from api.rate_limit import SlidingWindowRateLimiter
from api.security import apply_security_headers, clamp_int, is_origin_allowed, normalize_boolean, parse_limit
from api.settings import Settings, get_settings

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

ALL_ITEMS_CAP = 1000
ERROR_MESSAGE_CHARS = 200
RSS_PROXY_HOSTS = frozenset({"news.google.com", "prtimes.jp"})


# ASGI app for Vercel Python function: export `app`
app = FastAPI(title="Antiage Feed & AI Proxy API", version="1.0.0")


# ----- Origin policy and security headers -----
@app.middleware("http")
async def origin_guard(request: Request, call_next):
    allowed = get_settings().allowed_origins
    origin = request.headers.get("origin", "")

    if origin and not is_origin_allowed(origin, allowed):
        response: Response = JSONResponse(status_code=403, content={"error": "Origin not allowed"})
    elif request.method == "OPTIONS":
        # Preflight is only answered for allow-listed origins
        response = Response(status_code=204 if origin else 403)
    else:
        response = await call_next(request)
    return apply_security_headers(response, origin, allowed)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


# ----- Dependencies -----
_chat_limiter: Optional[SlidingWindowRateLimiter] = None


def get_fetcher(settings: Settings = Depends(get_settings)) -> FeedFetcher:
    return FeedFetcher(timeout=settings.fetch_timeout)


def get_chat_client(settings: Settings = Depends(get_settings)) -> Optional[ChatClient]:
    if not settings.groq_api_key:
        return None
    return ChatClient(api_key=settings.groq_api_key, base_url=settings.groq_base_url)


def get_identity_verifier(settings: Settings = Depends(get_settings)) -> Optional[IdentityVerifier]:
    if not settings.identity_api_key:
        return None
    return IdentityVerifier(api_key=settings.identity_api_key)


def get_chat_limiter(settings: Settings = Depends(get_settings)) -> SlidingWindowRateLimiter:
    global _chat_limiter
    if _chat_limiter is None:
        _chat_limiter = SlidingWindowRateLimiter(max_points=settings.chat_max_points_per_min)
    return _chat_limiter


def _failure_detail(prefix: str, error: Exception) -> str:
    message = str(error) or error.__class__.__name__
    return f"{prefix}: {message[:ERROR_MESSAGE_CHARS]}"


@app.get("/")
def root():
    """Health check endpoint"""
    return {"status": "ok", "message": "Antiage feed API is running"}


# ----- Feed aggregation -----
@app.get("/cosme-event-news", response_model=FeedNewsResponse)
async def cosme_event_news(
    max_raw: Optional[str] = Query(default=None, alias="max"),
    days: Optional[str] = Query(default=None),
    strict_recent: Optional[str] = Query(default=None),
    show_all_raw: Optional[str] = Query(default=None, alias="all"),
    fetcher: FeedFetcher = Depends(get_fetcher),
) -> FeedNewsResponse:
    """Events scraped from the vendor listing page, ranked and tiered."""
    try:
        return await run_pipeline(
            EVENT_PAGE_PIPELINE,
            fetcher,
            max_items=parse_limit(max_raw, 1, 150, 80, ALL_ITEMS_CAP),
            recent_days=clamp_int(days, 7, 365, 90),
            strict_recent=normalize_boolean(strict_recent),
            show_all=normalize_boolean(show_all_raw),
        )
    except Exception as e:
        logger.exception("Cosme event pipeline failed")
        raise HTTPException(status_code=502, detail=_failure_detail("Cosme event fetch failed", e))


@app.get("/cosme-event-search", response_model=FeedNewsResponse)
async def cosme_event_search(
    max_raw: Optional[str] = Query(default=None, alias="max"),
    days: Optional[str] = Query(default=None),
    strict_recent: Optional[str] = Query(default=None),
    show_all_raw: Optional[str] = Query(default=None, alias="all"),
    keywords: Optional[str] = Query(default=None),
    fetcher: FeedFetcher = Depends(get_fetcher),
) -> FeedNewsResponse:
    """News search results for cosmetics events, extended with caller keywords."""
    queries = build_search_queries(normalize_keywords(keywords))
    try:
        return await run_pipeline(
            NEWS_SEARCH_PIPELINE,
            fetcher,
            max_items=parse_limit(max_raw, 1, 100, 40, ALL_ITEMS_CAP),
            recent_days=clamp_int(days, 7, 365, 90),
            strict_recent=normalize_boolean(strict_recent),
            show_all=normalize_boolean(show_all_raw),
            sources=build_search_sources(queries),
            queries=queries,
        )
    except Exception as e:
        logger.exception("News search pipeline failed")
        raise HTTPException(status_code=502, detail=_failure_detail("RSS fetch failed", e))


@app.get("/rss", response_model=RssProxyResponse)
async def rss_proxy(
    rss_url: Optional[str] = Query(default=None),
    max_items: Optional[str] = Query(default=None),
    fetcher: FeedFetcher = Depends(get_fetcher),
) -> RssProxyResponse:
    url = sanitize_feed_url(rss_url, RSS_PROXY_HOSTS)
    if not url:
        raise HTTPException(status_code=400, detail="Invalid rss_url")
    limit = clamp_int(max_items, 1, 120, 40)

    try:
        upstream = await fetcher.fetch(url)
    except httpx.HTTPError as e:
        logger.warning("RSS proxy fetch failed for %s: %s", url, e)
        raise HTTPException(status_code=502, detail=_failure_detail("RSS fetch failed", e))
    if not upstream.is_success:
        raise HTTPException(status_code=502, detail=f"Upstream RSS error: {upstream.status_code}")
    return RssProxyResponse(items=parse_syndication(upstream.text)[:limit])


# ----- Chat completion proxy -----
@app.post("/groq-antiage")
async def groq_antiage(
    request: Request,
    settings: Settings = Depends(get_settings),
    chat_client: Optional[ChatClient] = Depends(get_chat_client),
    verifier: Optional[IdentityVerifier] = Depends(get_identity_verifier),
    limiter: SlidingWindowRateLimiter = Depends(get_chat_limiter),
):
    if "application/json" not in request.headers.get("content-type", "").lower():
        raise HTTPException(status_code=415, detail="Unsupported Content-Type")
    if clamp_int(request.headers.get("content-length"), 0, 2**53, 0) > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")
    if request.headers.get("sec-fetch-site", "") == "cross-site":
        raise HTTPException(status_code=403, detail="Cross-site request blocked")
    if chat_client is None:
        raise HTTPException(status_code=500, detail="Server is not configured")
    if verifier is None:
        raise HTTPException(status_code=500, detail="Identity verification is not configured")

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer ") or not auth_header[len("Bearer "):].strip():
        raise HTTPException(status_code=401, detail="Missing Authorization Bearer token")
    try:
        identity = await verifier.verify(auth_header[len("Bearer "):].strip())
    except IdentityError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid Firebase ID token")
    if identity.provider == "anonymous":
        raise HTTPException(status_code=403, detail="Anonymous users are not allowed")
    if not is_origin_allowed(request.headers.get("origin"), settings.allowed_origins):
        raise HTTPException(status_code=403, detail="Origin not allowed")

    try:
        raw_body: Any = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    analysis = isinstance(raw_body, dict) and raw_body.get("analysis") is True
    try:
        plan = build_chat_plan(raw_body, analysis)
    except ChatInputError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    decision = limiter.consume(identity.uid or forwarded or "unknown", plan.points)
    if not decision.allowed:
        retry = decision.retry_after_seconds
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Please try again in {retry}s.",
            headers={"Retry-After": str(retry)},
        )

    try:
        data: Dict[str, Any] = await run_in_threadpool(chat_client.complete, plan.body)
    except UpstreamChatError as e:
        logger.warning("Chat upstream error (%s): %s", e.status_code, e.message)
        if analysis:
            return DEFAULT_ANALYSIS
        if e.status_code == 429:
            retry = parse_retry_after_seconds(e.message, e.retry_after)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit reached. Please try again in {retry}s.",
                headers={"Retry-After": str(retry)},
            )
        raise HTTPException(status_code=502, detail="AI service error. Please retry shortly.")

    content = extract_upstream_content(data)
    if analysis:
        return finalize_analysis(content)
    if not content:
        raise HTTPException(status_code=502, detail="Empty AI response")
    return ChatResponse(content=content[:MAX_CONTENT_CHARS])


# Export for Vercel - app is automatically detected
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
