"""
Playlist Cache

Holds the current parsed catalog (channels, genres, program guide references)
and refreshes it from the configured source: a playlist URL or the output of
the generator script. A failed refresh never replaces good data.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from app.exceptions import AlreadyRunningError, CatalogServiceError, RebuildError
from app.services.fetch_coordinator import FetchCoordinator
from app.services.fetch_types import (
    ChannelRecord,
    PlaylistCacheEntry,
    PlaylistSnapshot,
    RebuildOptions,
)
from app.services.m3u_parser_service import parse_m3u
from app.services.scheduler_service import ScheduleRegistry
from app.utils.file_operations import fetch_text
from app.utils.logging_helpers import (
    log_playlist_summary,
    log_rebuild_attempt,
    log_section_end,
    log_section_start,
    sanitize_url_for_logging,
)


logger = logging.getLogger(__name__)

GENERATOR_SOURCE_KEY = "generator-output"
PLAYLIST_REFRESH_JOB_ID = "playlist_refresh"

PlaylistLoader = Callable[[str], Awaitable[str]]
PlaylistParser = Callable[[str], tuple[list[ChannelRecord], list[str], list[str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaylistCache:
    """
    Single current catalog snapshot with retrying rebuilds.

    Rebuild rules:
      - same source as the current entry and not forced: no-op
      - same source already rebuilding: join that rebuild
      - another source already rebuilding: AlreadyRunningError

    configured_source, the source the background refresh re-ingests, follows
    the entry being served. A failed rebuild only changes it while nothing is
    cached yet, so the refresh keeps retrying the first source.
    """

    def __init__(
        self,
        loader: PlaylistLoader,
        registry: ScheduleRegistry,
        *,
        max_age_ms: int,
        retry_attempts: int = 3,
        retry_delay_ms: int = 5000,
        parser: PlaylistParser = parse_m3u,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._loader = loader
        self._registry = registry
        self._max_age_ms = max_age_ms
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay_ms / 1000
        self._parser = parser
        self._clock = clock
        self._entry: PlaylistCacheEntry | None = None
        self._coordinator: FetchCoordinator[PlaylistCacheEntry] = FetchCoordinator()
        self.configured_source: str | None = None
        self.last_error: str | None = None

    def get(self) -> PlaylistSnapshot:
        """Current entry and staleness flag. Never blocks, never raises."""
        entry = self._entry
        if entry is None:
            return PlaylistSnapshot(entry=None, stale=False)
        return PlaylistSnapshot(entry=entry, stale=entry.is_stale(self._clock()))

    def find_channel(self, channel_id: str) -> ChannelRecord | None:
        entry = self._entry
        if entry is None:
            return None
        for channel in entry.channels:
            if channel.id == channel_id:
                return channel
        return None

    @property
    def is_rebuilding(self) -> bool:
        return self._coordinator.is_fetching()

    async def rebuild(
        self,
        source_key: str,
        options: RebuildOptions | None = None,
    ) -> PlaylistCacheEntry:
        """
        Rebuild the catalog from source_key

        Args:
            source_key: Playlist URL or GENERATOR_SOURCE_KEY
            options: Rebuild options (force, EPG override)

        Returns:
            The entry now being served

        Raises:
            AlreadyRunningError: If a rebuild for another source is in progress
            RebuildError: If every attempt failed; the previous entry is kept
        """
        options = options or RebuildOptions()
        safe_source = sanitize_url_for_logging(source_key)

        current = self._entry
        if current is not None and current.source_key == source_key and not options.force:
            logger.info("Playlist already built from %s, skipping rebuild", safe_source)
            self.configured_source = source_key
            return current

        if self._coordinator.is_fetching(source_key):
            logger.info("Rebuild for %s already in progress, waiting for it", safe_source)
        elif self._coordinator.is_fetching():
            raise AlreadyRunningError("Playlist rebuild already in progress for another source")

        return await self._coordinator.execute(
            source_key,
            lambda: self._rebuild_with_retry(source_key, options),
        )

    async def _rebuild_with_retry(self, source_key: str, options: RebuildOptions) -> PlaylistCacheEntry:
        log_section_start(logger, "playlist rebuild")
        last_error = "no attempt made"

        for attempt in range(1, self._retry_attempts + 1):
            log_rebuild_attempt(logger, attempt, self._retry_attempts, source_key)
            try:
                entry = await self._build_entry(source_key, options)
            except (httpx.HTTPError, httpx.InvalidURL, ValueError, OSError, CatalogServiceError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    f"Rebuild attempt {attempt}/{self._retry_attempts} failed: {last_error}"
                )
                if attempt < self._retry_attempts:
                    await asyncio.sleep(self._retry_delay)
                continue

            self._entry = entry
            self.configured_source = source_key
            self.last_error = None
            log_playlist_summary(logger, len(entry.channels), len(entry.genres), len(entry.epg_references))
            log_section_end(logger, "playlist rebuild")
            return entry

        self.last_error = last_error
        previous = self._entry
        if previous is not None:
            logger.error(
                "Playlist rebuild failed, serving cached data as of %s",
                previous.built_at.isoformat(),
            )
        else:
            self.configured_source = source_key
            logger.error("Playlist rebuild failed and no cached playlist is available")
        raise RebuildError(source_key, self._retry_attempts, last_error)

    async def _build_entry(self, source_key: str, options: RebuildOptions) -> PlaylistCacheEntry:
        document = await self._loader(source_key)
        channels, genres, epg_references = await asyncio.to_thread(self._parser, document)

        if options.epg_url:
            epg_references = [url.strip() for url in options.epg_url.split(",") if url.strip()]

        return PlaylistCacheEntry(
            source_key=source_key,
            channels=tuple(channels),
            genres=tuple(genres),
            epg_references=tuple(epg_references),
            built_at=self._clock(),
            max_age_ms=self._max_age_ms,
        )

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def start_background_refresh(self, interval_ms: int) -> None:
        self._registry.schedule(PLAYLIST_REFRESH_JOB_ID, self._refresh_job, interval_ms)

    def stop_background_refresh(self) -> bool:
        return self._registry.cancel(PLAYLIST_REFRESH_JOB_ID)

    async def _refresh_job(self) -> None:
        """Background job that re-ingests the configured source"""
        source = self.configured_source
        if not source:
            logger.debug("No playlist source configured, skipping refresh")
            return

        logger.info("Scheduled playlist refresh triggered")
        try:
            await self.rebuild(source, RebuildOptions(force=True))
        except AlreadyRunningError:
            logger.info("Playlist rebuild already in progress, skipping scheduled refresh")
        except RebuildError as e:
            logger.error(f"Scheduled playlist refresh failed: {e}")
        except Exception as e:
            logger.error(f"Exception in scheduled playlist refresh: {e}", exc_info=True)

    async def on_generator_output(self, content: str) -> None:
        """Re-ingest the generated playlist when it is the configured source"""
        if self.configured_source != GENERATOR_SOURCE_KEY:
            return
        logger.info("New generated playlist available, rebuilding catalog")
        await self.rebuild(GENERATOR_SOURCE_KEY, RebuildOptions(force=True))

    def status(self) -> dict:
        snapshot = self.get()
        entry = snapshot.entry
        return {
            "source": sanitize_url_for_logging(self.configured_source) or None,
            "built_at": entry.built_at.isoformat() if entry else None,
            "channels": len(snapshot.channels),
            "genres": len(snapshot.genres),
            "epg_sources": len(snapshot.epg_references),
            "stale": snapshot.stale,
            "rebuilding": self.is_rebuilding,
            "last_error": self.last_error,
            "refresh_interval_ms": self._registry.get_interval_ms(PLAYLIST_REFRESH_JOB_ID),
        }


def create_playlist_loader(
    generated_content: Callable[[], str | None],
    *,
    timeout: float = 60.0,
    user_agent: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PlaylistLoader:
    """
    Build the ingestion function used by PlaylistCache

    Args:
        generated_content: Returns the generator script's latest playlist
        timeout: HTTP timeout for playlist URLs
        user_agent: User-Agent sent to playlist hosts
        transport: Optional httpx transport (used by tests)
    """
    headers = {"User-Agent": user_agent} if user_agent else None

    async def load(source_key: str) -> str:
        if source_key == GENERATOR_SOURCE_KEY:
            content = generated_content()
            if not content:
                raise ValueError("No generated playlist available - run the generator script first")
            return content
        return await fetch_text(source_key, timeout=timeout, headers=headers, transport=transport)

    return load
