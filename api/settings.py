import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


DEFAULT_ALLOWED_ORIGINS: List[str] = [
    "https://portfolio-flame-iota-d7n8dbh5mp.vercel.app",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _split_csv(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def _float_env(name: str, fallback: float) -> float:
    try:
        return float(os.getenv(name, ""))
    except ValueError:
        return fallback


LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


def _log_level_env(name: str, fallback: str = "INFO") -> str:
    level = os.getenv(name, "").strip().upper()
    return level if level in LOG_LEVELS else fallback


def _int_env(name: str, fallback: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return fallback


class Settings(BaseModel):
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    log_level: str = "INFO"
    fetch_timeout: float = 15.0
    groq_api_key: Optional[str] = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    identity_api_key: Optional[str] = None
    chat_max_points_per_min: int = 90

    @classmethod
    def from_env(cls) -> "Settings":
        origins = list(DEFAULT_ALLOWED_ORIGINS)
        for extra in _split_csv(os.getenv("ANTIAGE_ALLOWED_ORIGINS")):
            if extra not in origins:
                origins.append(extra)
        return cls(
            allowed_origins=origins,
            log_level=_log_level_env("LOG_LEVEL"),
            fetch_timeout=_float_env("FEED_FETCH_TIMEOUT", 15.0),
            groq_api_key=os.getenv("GROQ_API_KEY") or None,
            groq_base_url=os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1"),
            identity_api_key=os.getenv("FIREBASE_WEB_API_KEY") or None,
            chat_max_points_per_min=_int_env("CHAT_MAX_POINTS_PER_MIN", 90),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
