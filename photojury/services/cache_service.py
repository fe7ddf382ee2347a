"""
Per-project analysis cache service.

Memoizes inference results keyed by (item fingerprint, parameter
fingerprint, model id). Each entry is one JSON file named by its key
under <project>/.analysis-cache/, written with the same temp-then-rename
discipline as checkpoints.

There is no eviction: entries persist until clear() is called. Repeated
configuration changes therefore grow the cache without bound; stats()
reports the distinct parameter fingerprints present and raises a
growth warning so callers can prompt for manual clearing.
"""

import contextlib
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import ValidationError

from photojury.models.cache import CacheEntry, CacheEntryMetadata, CacheStats
from photojury.models.config import CacheConfig
from photojury.observability.metrics import CACHE_ENTRIES, CACHE_OPERATIONS
from photojury.utils.hash import compute_cache_key

logger = structlog.get_logger()


class CacheService:
    """
    File-per-key disk cache for item evaluation results.

    Single writer per project directory is assumed.
    """

    def __init__(self, config: Optional[CacheConfig], project_dir: Union[str, Path]):
        """
        Initialize cache service.

        Args:
            config: Cache configuration
            project_dir: Project root; entries live in a subdirectory
        """
        self.config = config or CacheConfig()
        self.cache_dir = Path(project_dir) / self.config.dir_name
        self.enabled = self.config.enabled

        self._hits = 0
        self._misses = 0

        if not self.enabled:
            logger.info("cache_disabled")
            return

        logger.info("cache_service_initialized", cache_dir=str(self.cache_dir))

    @staticmethod
    def compute_key(
        item_fingerprint: str, parameter_fingerprint: str, model_id: str
    ) -> str:
        """
        Generate cache key for an (item, parameters, model) triple.

        Returns:
            SHA256 hash as hex string
        """
        return compute_cache_key(item_fingerprint, parameter_fingerprint, model_id)

    def _entry_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        entry_path = self._entry_path(key)
        if not entry_path.exists():
            return None

        try:
            with open(entry_path, "r", encoding="utf-8") as f:
                return CacheEntry.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("cache_entry_unreadable", cache_key=key[:8], error=str(e))
            return None

    def _write_entry(self, entry: CacheEntry) -> None:
        """Atomic write: temp file, then replace. Raises OSError."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        entry_path = self._entry_path(entry.cache_key)
        temp_path = entry_path.with_name(entry_path.name + ".tmp")

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(entry.model_dump_json(indent=2))
            os.replace(temp_path, entry_path)
        except OSError:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Get cached result for a key.

        A hit bumps the entry's persisted hit counter. Failing to persist
        the counter does not turn the hit into a miss.

        Args:
            key: Cache key from compute_key()

        Returns:
            Cached result dict or None on miss
        """
        if not self.enabled:
            return None

        entry = self._read_entry(key)

        if entry is None:
            self._misses += 1
            CACHE_OPERATIONS.labels(operation="miss").inc()
            logger.debug("cache_miss", cache_key=key[:8])
            return None

        self._hits += 1
        CACHE_OPERATIONS.labels(operation="hit").inc()
        logger.debug("cache_hit", cache_key=key[:8], item_id=entry.item_id)

        try:
            self._write_entry(entry.model_copy(update={"hit_count": entry.hit_count + 1}))
        except OSError as e:
            logger.warning("cache_hit_count_update_failed", cache_key=key[:8], error=str(e))

        return entry.result

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Read a full entry without counting it as a hit"""
        if not self.enabled:
            return None
        return self._read_entry(key)

    def put(
        self,
        key: str,
        result: Dict[str, Any],
        metadata: Optional[CacheEntryMetadata] = None,
    ) -> bool:
        """
        Cache a result.

        Write failures (disk full, permissions) are logged and reported
        as False; the caller continues without memoizing.

        Args:
            key: Cache key from compute_key()
            result: JSON-serializable result
            metadata: Provenance for the entry

        Returns:
            True if stored
        """
        if not self.enabled:
            return False

        metadata = metadata or CacheEntryMetadata()
        entry = CacheEntry(
            cache_key=key,
            item_id=metadata.item_id,
            item_fingerprint=metadata.item_fingerprint,
            parameter_fingerprint=metadata.parameter_fingerprint,
            model=metadata.model,
            result=result,
        )

        try:
            self._write_entry(entry)
        except OSError as e:
            logger.error(
                "cache_write_failed",
                cache_key=key[:8],
                item_id=metadata.item_id,
                error=str(e),
            )
            CACHE_OPERATIONS.labels(operation="set_failed").inc()
            return False

        CACHE_OPERATIONS.labels(operation="set").inc()
        logger.debug("cache_stored", cache_key=key[:8], item_id=metadata.item_id)
        return True

    def stats(self) -> CacheStats:
        """
        Get cache statistics.

        Returns:
            CacheStats with entry count, size, session and lifetime hit
            rates and growth indicators
        """
        stats = CacheStats(hits=self._hits, misses=self._misses)

        if not self.enabled or not self.cache_dir.exists():
            return stats

        entry_count = 0
        total_size = 0
        parameter_fingerprints = set()
        stored_hits = 0

        for entry_path in self.cache_dir.glob("*.json"):
            try:
                total_size += entry_path.stat().st_size
            except OSError:
                # Removed between glob and stat
                continue
            entry_count += 1

            entry = self._read_entry(entry_path.stem)
            if entry is None:
                continue
            stored_hits += entry.hit_count
            if entry.parameter_fingerprint:
                parameter_fingerprints.add(entry.parameter_fingerprint)

        stats.entry_count = entry_count
        stats.total_size_bytes = total_size
        stats.stored_hits = stored_hits
        stats.parameter_fingerprints = sorted(parameter_fingerprints)
        stats.growth_warning = (
            entry_count > self.config.warn_entry_count
            or len(parameter_fingerprints) > 1
        )

        CACHE_ENTRIES.set(entry_count)

        if stats.growth_warning:
            logger.warning(
                "cache_growth_warning",
                entries=entry_count,
                size_mb=round(stats.total_size_mb, 2),
                parameter_fingerprints=len(parameter_fingerprints),
            )

        return stats

    def clear(self) -> int:
        """
        Remove every cache entry.

        Returns:
            Number of entries removed
        """
        if not self.enabled or not self.cache_dir.exists():
            return 0

        removed = 0
        for entry_path in self.cache_dir.glob("*.json*"):
            entry_path.unlink(missing_ok=True)
            if entry_path.suffix == ".json":
                removed += 1

        CACHE_ENTRIES.set(0)
        logger.info("cache_cleared", removed=removed, cache_dir=str(self.cache_dir))
        return removed
