from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CacheCounters(BaseModel):
    """Counters kept per cache; reset only by ``clear()``."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0


class CacheStats(BaseModel):
    total_items: int
    total_hits: int
    total_misses: int
    hit_rate: float
    memory_usage: int
    sets: int = 0
    evictions: int = 0
    oldest_item: int | None = None
    newest_item: int | None = None


class AccessCount(BaseModel):
    key: str
    access_count: int


class CacheEntryRecord(BaseModel):
    """One exported entry. Timestamps are epoch milliseconds."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    data: Any = None
    expiry: int
    access_count: int = 1
    last_accessed: int
    created: int


class CacheSnapshot(BaseModel):
    entries: list[CacheEntryRecord] = Field(default_factory=list)
    counters: CacheCounters = Field(default_factory=CacheCounters)
    export_time: datetime | None = None
