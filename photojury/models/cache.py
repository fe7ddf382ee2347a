"""
Data models for the analysis cache.

Defines cache entries, write metadata and statistics models.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

CACHE_SCHEMA_VERSION = "1.0"


class CacheEntryMetadata(BaseModel):
    """Provenance recorded alongside a cached result"""

    model_config = ConfigDict(protected_namespaces=())

    item_id: str = ""
    item_fingerprint: str = ""
    parameter_fingerprint: str = ""
    model: str = ""


class CacheEntry(BaseModel):
    """One memoized inference result, stored as <cache_key>.json"""

    model_config = ConfigDict(protected_namespaces=())

    schema_version: str = CACHE_SCHEMA_VERSION
    cache_key: str
    item_id: str = ""
    item_fingerprint: str = ""
    parameter_fingerprint: str = ""
    model: str = ""
    result: Dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    hit_count: int = Field(default=0, ge=0)


class CacheStats(BaseModel):
    """Cache statistics"""

    model_config = ConfigDict(protected_namespaces=())

    entry_count: int = 0
    total_size_bytes: int = 0

    # Session counters (this CacheService instance only)
    hits: int = 0
    misses: int = 0

    # Sum of the hit counters persisted in every entry
    stored_hits: int = 0

    parameter_fingerprints: List[str] = Field(default_factory=list)
    growth_warning: bool = False

    last_updated: datetime = Field(default_factory=datetime.now)

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate"""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    @property
    def lifetime_hit_rate(self) -> float:
        """Hit rate across all runs; each entry was written after one miss"""
        lookups = self.stored_hits + self.entry_count
        if lookups == 0:
            return 0.0
        return self.stored_hits / lookups

    @property
    def total_size_mb(self) -> float:
        return self.total_size_bytes / (1024 * 1024)
