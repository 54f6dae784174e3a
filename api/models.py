from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class FeedSource(BaseModel):
    """One upstream the aggregator reads: an RSS/Atom feed or a vendor HTML page."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    url: str
    kind: Literal["syndication", "htmlPage"] = "syndication"
    query: str = ""


class FeedRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    link: str
    published_at: str = Field(default="", alias="publishedAt")
    description: str = ""
    author: str = ""
    source: str = ""
    source_key: str = Field(default="", alias="sourceKey")
    query: str = ""


class ScoredRecord(BaseModel):
    record: FeedRecord
    age_days: float
    score: int
    published_ts: float = 0.0


class FeedNewsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    count: int
    mode: str
    show_all: bool = Field(default=False, alias="showAll")
    recent_days: int = Field(alias="recentDays")
    strict_recent: bool = Field(alias="strictRecent")
    brand_count: int = Field(default=0, alias="brandCount")
    oldest_days: int = Field(default=0, alias="oldestDays")
    source_stats: Dict[str, int] = Field(default_factory=dict, alias="sourceStats")
    queries: List[str] = Field(default_factory=list)
    items: List[FeedRecord]


class RssProxyResponse(BaseModel):
    status: str = "ok"
    items: List[FeedRecord]


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatResponse(BaseModel):
    content: str


class Identity(BaseModel):
    uid: str
    provider: Optional[str] = None
