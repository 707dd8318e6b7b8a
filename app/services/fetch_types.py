"""
Shared dataclasses used across the playlist and resolution caches.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class ChannelRecord:
    """One channel parsed from a playlist document."""
    id: str
    name: str
    genre: str
    stream_url: str
    tvg_id: str | None = None
    logo: str | None = None


@dataclass(frozen=True, slots=True)
class PlaylistCacheEntry:
    """A complete, immutable catalog snapshot. Replaced wholesale on rebuild."""
    source_key: str
    channels: tuple[ChannelRecord, ...]
    genres: tuple[str, ...]
    epg_references: tuple[str, ...]
    built_at: datetime
    max_age_ms: int

    def is_stale(self, now: datetime) -> bool:
        return self.built_at + timedelta(milliseconds=self.max_age_ms) < now


@dataclass(frozen=True, slots=True)
class PlaylistSnapshot:
    """Result of PlaylistCache.get(): the best available entry and its staleness."""
    entry: PlaylistCacheEntry | None
    stale: bool

    @property
    def channels(self) -> tuple[ChannelRecord, ...]:
        return self.entry.channels if self.entry else ()

    @property
    def genres(self) -> tuple[str, ...]:
        return self.entry.genres if self.entry else ()

    @property
    def epg_references(self) -> tuple[str, ...]:
        return self.entry.epg_references if self.entry else ()


@dataclass(frozen=True, slots=True)
class RebuildOptions:
    """Per-call playlist rebuild options."""
    force: bool = False
    epg_url: str | None = None


@dataclass(frozen=True, slots=True)
class ResolutionCacheEntry:
    """A resolved stream URL and its lifetime (monotonic clock, seconds)."""
    url: str
    resolved_at: float
    ttl_ms: int

    def is_expired(self, now: float) -> bool:
        return now - self.resolved_at >= self.ttl_ms / 1000


@dataclass(slots=True)
class ExecutionResult:
    """Captured output of one script process run."""
    stdout: str
    stderr: str
    exit_code: int
    duration_seconds: float
    args: tuple[str, ...] = field(default_factory=tuple)


__all__ = [
    "ChannelRecord",
    "PlaylistCacheEntry",
    "PlaylistSnapshot",
    "RebuildOptions",
    "ResolutionCacheEntry",
    "ExecutionResult",
]
