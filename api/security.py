import math
from typing import Collection, Dict, Optional

from starlette.responses import Response

SECURITY_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


def is_origin_allowed(origin: Optional[str], allowed_origins: Collection[str]) -> bool:
    return bool(origin) and origin in allowed_origins


def apply_security_headers(response: Response, origin: Optional[str], allowed_origins: Collection[str]) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    if is_origin_allowed(origin, allowed_origins):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
    return response


def clamp_int(raw: Optional[str], lo: int, hi: int, fallback: int) -> int:
    """Parse ``raw`` as a number, floor it and clamp it to ``[lo, hi]``; junk gives ``fallback``."""
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(value):
        return fallback
    return max(lo, min(hi, math.floor(value)))


def normalize_boolean(raw: Optional[str], fallback: bool = False) -> bool:
    value = str(raw or "").strip().lower()
    if not value:
        return fallback
    return value in TRUTHY_VALUES


def parse_limit(raw: Optional[str], lo: int, hi: int, default: int, hard_cap: int) -> int:
    """Page size from a query value; ``"all"`` means ``hard_cap``."""
    value = str(raw or "").strip().lower()
    if value == "all":
        return hard_cap
    if not value:
        return default
    return clamp_int(value, lo, hi, default)
