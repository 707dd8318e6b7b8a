"""
Resolution Cache

Resolves stream identifiers to playable URLs through the resolver script.
Concurrent requests for the same identifier share one resolver run, and
successful results are served from memory until their TTL expires.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Protocol, Sequence

from app.exceptions import CatalogServiceError, ResolutionError
from app.services.fetch_coordinator import FetchCoordinator
from app.services.fetch_types import ResolutionCacheEntry


logger = logging.getLogger(__name__)


class Resolver(Protocol):
    def resolve_args(self, stream_id: str) -> tuple[str, ...]: ...

    async def execute(self, args: Sequence[str] = ()) -> str: ...


class ResolutionCache:
    """
    Per-identifier deduplicating cache in front of a resolver.

    The entry map is never mutated in place: every write publishes a new dict.
    clear_cache() bumps a generation counter so resolutions that were already
    running when the cache was cleared complete without being stored.
    """

    def __init__(
        self,
        resolver: Resolver,
        ttl_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._entries: dict[str, ResolutionCacheEntry] = {}
        self._coordinator: FetchCoordinator[str] = FetchCoordinator()
        self._generation = 0

    async def resolve(self, stream_id: str) -> str:
        """
        Return a playable URL for stream_id

        Raises:
            ResolutionError: If the resolver run failed; nothing is cached
        """
        entry = self._lookup(stream_id)
        if entry is not None:
            logger.debug("Resolver cache hit for %s", stream_id)
            return entry.url

        return await self._coordinator.execute(stream_id, lambda: self._resolve_uncached(stream_id))

    def _lookup(self, stream_id: str) -> ResolutionCacheEntry | None:
        entry = self._entries.get(stream_id)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug("Resolver cache entry expired for %s", stream_id)
            self._entries = {key: value for key, value in self._entries.items() if key != stream_id}
            return None
        return entry

    async def _resolve_uncached(self, stream_id: str) -> str:
        generation = self._generation
        logger.info("Resolving stream %s", stream_id)

        try:
            url = await self._resolver.execute(self._resolver.resolve_args(stream_id))
        except CatalogServiceError as exc:
            logger.warning("Resolution failed for %s: %s", stream_id, exc)
            raise ResolutionError(stream_id, str(exc)) from exc

        if generation == self._generation:
            entry = ResolutionCacheEntry(url=url, resolved_at=self._clock(), ttl_ms=self._ttl_ms)
            self._entries = {**self._entries, stream_id: entry}
        else:
            logger.debug("Cache cleared during resolution of %s, result not stored", stream_id)
        return url

    def clear_cache(self) -> int:
        """Drop every cached URL. Returns the number of entries removed."""
        removed = len(self._entries)
        self._entries = {}
        self._generation += 1
        logger.info("Resolver cache cleared (%s entries)", removed)
        return removed

    def is_resolving(self, stream_id: str) -> bool:
        return self._coordinator.is_fetching(stream_id)

    def status(self) -> dict:
        return {
            "cache_items": len(self._entries),
            "in_flight": len(self._coordinator),
            "ttl_ms": self._ttl_ms,
        }
