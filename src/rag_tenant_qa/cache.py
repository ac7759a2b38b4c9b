"""
Response caching for answered questions.

Keys are tenant-scoped and built from a hash of the normalized question, so
near-duplicate questions share an entry. Cache failures never fail a
request; they only skip the optimization.
"""

import hashlib
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Callable, Tuple

from rag_tenant_qa.config import CacheConfig

logger = logging.getLogger(__name__)

# Bump when the cached response layout changes
CACHE_VERSION = "1.0.0"
HASH_LENGTH = 32

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_question(question: str) -> str:
    """Case-fold, drop punctuation and collapse whitespace."""
    text = _PUNCTUATION.sub(" ", question.casefold())
    return _WHITESPACE.sub(" ", text).strip()


def escape_tenant_id(tenant_id: str) -> str:
    """Percent-encode the key delimiter so one tenant's prefix never covers another's."""
    return tenant_id.replace("%", "%25").replace(":", "%3A")


def generate_cache_key(tenant_id: str, question: str, prefix: str = "rag:qa:") -> str:
    """Key of the form {prefix}{tenant}:{first 32 hex chars of sha256(normalized question)}."""
    digest = hashlib.sha256(normalize_question(question).encode("utf-8")).hexdigest()
    return f"{tenant_key_prefix(tenant_id, prefix)}{digest[:HASH_LENGTH]}"


def tenant_key_prefix(tenant_id: str, prefix: str = "rag:qa:") -> str:
    return f"{prefix}{escape_tenant_id(tenant_id)}:"


class CacheBackend(ABC):
    """Minimal key/value store with expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Stored value, or None when missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value for ttl_seconds."""

    @abstractmethod
    async def delete(self, keys: List[str]) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        """Live keys starting with prefix."""


class InMemoryCacheBackend(CacheBackend):
    """
    Process-local backend.

    Expired entries are dropped when read and swept from the whole map at
    most once per sweep_interval seconds on write. Beyond max_entries the
    oldest writes are evicted first.
    """

    def __init__(self,
                 clock: Callable[[], float] = time.monotonic,
                 max_entries: int = 10000,
                 sweep_interval: float = 60.0):
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        self._next_sweep = now + self.sweep_interval

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        # Re-insert so dict order tracks write order
        self._data.pop(key, None)
        self._data[key] = (now + ttl_seconds, value)
        while len(self._data) > self.max_entries:
            del self._data[next(iter(self._data))]

    async def delete(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, prefix: str) -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None]

    def __len__(self) -> int:
        return len(self._data)


class RAGCache:
    """
    Cache of full question answering responses.

    Payloads are plain dictionaries; the orchestrator converts responses to
    and from them. Entries written by an older CACHE_VERSION are discarded.
    """

    def __init__(self,
                 backend: Optional[CacheBackend] = None,
                 config: Optional[CacheConfig] = None):
        # An empty backend is falsy (__len__), so test for None explicitly
        self.backend = backend if backend is not None else InMemoryCacheBackend()
        self.config = config or CacheConfig()
        self.stats = {"hits": 0, "misses": 0, "errors": 0, "writes": 0}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def key_for(self, tenant_id: str, question: str) -> str:
        return generate_cache_key(tenant_id, question, self.config.key_prefix)

    async def get(self, tenant_id: str, question: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None

        key = self.key_for(tenant_id, question)
        try:
            raw = await self.backend.get(key)
            if raw is None:
                self.stats["misses"] += 1
                logger.debug(f"Cache miss for tenant {tenant_id}")
                return None

            entry = json.loads(raw)
            if entry.get("cache_version") != CACHE_VERSION:
                logger.debug(
                    f"Cache version mismatch ({entry.get('cache_version')} != {CACHE_VERSION}), treating as miss"
                )
                await self.backend.delete([key])
                self.stats["misses"] += 1
                return None
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Cache read failed for tenant {tenant_id}: {e}")
            return None

        self.stats["hits"] += 1
        logger.info(f"Cache hit for tenant {tenant_id}")
        return entry["response"]

    async def set(self, tenant_id: str, question: str, response: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        entry = {
            "response": response,
            "cache_version": CACHE_VERSION,
            "cached_at": datetime.now(timezone.utc).isoformat(),
            "original_query": question,
        }
        try:
            await self.backend.set(
                self.key_for(tenant_id, question),
                json.dumps(entry),
                self.config.ttl_seconds,
            )
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Cache write failed for tenant {tenant_id}: {e}")
            return False

        self.stats["writes"] += 1
        return True

    async def invalidate(self, tenant_id: str, question: str) -> bool:
        try:
            return await self.backend.delete([self.key_for(tenant_id, question)]) > 0
        except Exception as e:
            logger.error(f"Cache invalidation failed for tenant {tenant_id}: {e}")
            return False

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Remove every entry of one tenant, e.g. after its documents change."""
        try:
            keys = await self.backend.keys(tenant_key_prefix(tenant_id, self.config.key_prefix))
            removed = await self.backend.delete(keys) if keys else 0
        except Exception as e:
            logger.error(f"Tenant cache invalidation failed for {tenant_id}: {e}")
            return 0

        logger.info(f"Invalidated {removed} cache entries for tenant {tenant_id}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {**self.stats, "hit_rate": self.stats["hits"] / max(1, lookups), "enabled": self.enabled}
