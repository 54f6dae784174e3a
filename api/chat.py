"""Chat-completion proxy helpers: request sanitizing, envelope extraction, upstream client."""

import json
import logging
import math
import re
from typing import Any, Dict, List, NamedTuple, Optional

import openai
from openai import OpenAI

from api.models import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai/gpt-oss-120b"
ALLOWED_MODELS = frozenset({"openai/gpt-oss-120b", "llama-3.3-70b-versatile", "llama-3.1-8b-instant"})
ALLOWED_ROLES = frozenset({"system", "user", "assistant"})
MAX_MESSAGES = 24
MAX_MESSAGE_CHARS = 4000
MAX_TOTAL_CHARS = 20000
MAX_BODY_BYTES = 200000
MAX_CONTENT_CHARS = 30000
MAX_COMMENT_CHARS = 240
DEFAULT_RETRY_AFTER_SECONDS = 12

DEFAULT_ANALYSIS: Dict[str, Any] = {
    "patterns": {
        "全か無か思考": 0,
        "過度の一般化": 0,
        "心のフィルター": 0,
        "マイナス化思考": 0,
        "結論の飛躍": 0,
        "拡大解釈・過小評価": 0,
        "感情的決めつけ": 0,
        "べき思考": 0,
        "レッテル貼り": 0,
        "個人化": 0,
    },
    "comment": "分析に失敗しました。もう一度お試しください。",
}

_RETRY_TEXT_RE = re.compile(r"try again in\s*([0-9.]+)s", re.IGNORECASE)


class ChatInputError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class UpstreamChatError(Exception):
    def __init__(self, status_code: Optional[int], message: str, retry_after: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


class ChatPlan(NamedTuple):
    body: Dict[str, Any]
    points: int


def _clamp(value: Any, lo: float, hi: float, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return min(hi, max(lo, number))


def sanitize_messages(messages: Any) -> List[ChatMessage]:
    if not isinstance(messages, list):
        raise ChatInputError(400, "Invalid messages")

    sanitized: List[ChatMessage] = []
    total_chars = 0
    for item in messages[-MAX_MESSAGES:]:
        if not isinstance(item, dict):
            continue
        role = item.get("role") if item.get("role") in ALLOWED_ROLES else "user"
        raw = item.get("content")
        content = raw.strip()[:MAX_MESSAGE_CHARS] if isinstance(raw, str) else ""
        if not content:
            continue
        total_chars += len(content)
        sanitized.append(ChatMessage(role=role, content=content))

    if not sanitized:
        raise ChatInputError(400, "Empty messages")
    if total_chars > MAX_TOTAL_CHARS:
        raise ChatInputError(413, "Input too large")
    return sanitized


def build_chat_plan(raw_body: Any, analysis: bool) -> ChatPlan:
    """Turn an untrusted request body into the upstream payload and its rate-limit cost."""
    body = raw_body if isinstance(raw_body, dict) else {}
    messages = sanitize_messages(body.get("messages"))
    total_chars = sum(len(m.content) for m in messages)

    requested = body.get("model").strip() if isinstance(body.get("model"), str) else DEFAULT_MODEL
    model = requested if requested in ALLOWED_MODELS else DEFAULT_MODEL
    temperature = _clamp(body.get("temperature"), 0, 1.2, 0.2 if analysis else 0.6)
    max_tokens_hard = 480 if analysis else 4096
    max_tokens = math.floor(_clamp(body.get("max_tokens"), 64, max_tokens_hard, 360 if analysis else 2200))

    payload: Dict[str, Any] = {
        "model": model,
        "messages": [m.model_dump() for m in messages],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    response_format = body.get("response_format")
    if isinstance(response_format, dict) and response_format.get("type") == "json_object":
        payload["response_format"] = {"type": "json_object"}

    points = 1 + math.ceil(total_chars / 2000) + math.ceil(max_tokens / 300)
    return ChatPlan(body=payload, points=points)


def extract_content_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        parts = []
        for part in value:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text") if isinstance(part.get("text"), str) else part.get("content")
                parts.append(text if isinstance(text, str) else "")
        return "\n".join(parts).strip()
    if isinstance(value, dict):
        for key in ("text", "content"):
            if isinstance(value.get(key), str):
                return value[key].strip()
    return ""


def _dig(data: Any, *path: Any) -> Any:
    for step in path:
        if isinstance(step, int):
            if not isinstance(data, list) or len(data) <= step:
                return None
        elif not isinstance(data, dict):
            return None
        data = data[step] if isinstance(step, int) else data.get(step)
    return data


# Envelope shapes seen across providers, most specific first.
CONTENT_PATHS = (
    ("choices", 0, "message", "content"),
    ("choices", 0, "message", "reasoning"),
    ("choices", 0, "message", "reasoning_content"),
    ("choices", 0, "text"),
    ("message", "content"),
    ("message",),
    ("output_text",),
    ("text",),
)


def extract_upstream_content(data: Any) -> str:
    for path in CONTENT_PATHS:
        text = extract_content_text(_dig(data, *path))
        if text:
            return text
    return ""


def extract_json(raw: str) -> Optional[Any]:
    """Pull a JSON object out of model output (``<json>`` tags or outermost braces)."""
    if not isinstance(raw, str):
        return None
    candidate = raw
    tag_start, tag_end = raw.find("<json>"), raw.find("</json>")
    if tag_start != -1 and tag_end > tag_start:
        candidate = raw[tag_start + len("<json>"):tag_end]
    else:
        start, end = raw.find("{"), raw.rfind("}")
        if start != -1 and end > start:
            candidate = raw[start:end + 1]
    try:
        return json.loads(candidate)
    except ValueError:
        return None


def finalize_analysis(content: str) -> Dict[str, Any]:
    parsed = extract_json(content)
    if isinstance(parsed, dict) and isinstance(parsed.get("patterns"), dict) and parsed.get("comment"):
        return {"patterns": parsed["patterns"], "comment": str(parsed["comment"])[:MAX_COMMENT_CHARS]}
    return DEFAULT_ANALYSIS


def parse_retry_after_seconds(message: str, header_value: Optional[str]) -> int:
    if header_value:
        try:
            seconds = float(header_value)
        except ValueError:
            seconds = 0
        if seconds > 0:
            return math.ceil(seconds)
    match = _RETRY_TEXT_RE.search(message or "")
    if match:
        try:
            return math.ceil(float(match.group(1)))
        except ValueError:
            pass
    return DEFAULT_RETRY_AFTER_SECONDS


class ChatClient:
    """Thin wrapper over the OpenAI SDK pointed at an OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, base_url: str, timeout: float = 60.0):
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            completion = self._client.chat.completions.create(**payload)
        except openai.APIStatusError as e:
            raise UpstreamChatError(e.status_code, e.message, e.response.headers.get("retry-after")) from e
        except openai.APIError as e:
            raise UpstreamChatError(None, e.message) from e
        return completion.model_dump()
