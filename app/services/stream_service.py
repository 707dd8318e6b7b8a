"""
Stream Service

Turns a catalog channel id into a playable URL, going through the resolver
cache when a resolver script is installed.
"""
import logging

from app.exceptions import ResolutionError
from app.services.playlist_cache import PlaylistCache
from app.services.resolution_cache import ResolutionCache
from app.services.script_service import StreamResolverScript


logger = logging.getLogger(__name__)


class StreamService:
    """Channel id -> playable URL."""

    def __init__(
        self,
        playlist_cache: PlaylistCache,
        resolution_cache: ResolutionCache,
        resolver: StreamResolverScript,
    ) -> None:
        self._playlist_cache = playlist_cache
        self._resolution_cache = resolution_cache
        self._resolver = resolver

    async def get_stream_url(self, channel_id: str, use_resolver: bool = True) -> str | None:
        """
        Find a playable URL for a channel

        Args:
            channel_id: Catalog channel id
            use_resolver: Route the stream through the resolver script if one is installed

        Returns:
            The URL, or None when no playable stream is available
        """
        channel = self._playlist_cache.find_channel(channel_id)
        if channel is None:
            logger.info("Stream requested for unknown channel %s", channel_id)
            return None

        if not use_resolver or not self._resolver.has_artifact():
            return channel.stream_url

        try:
            return await self._resolution_cache.resolve(channel.stream_url)
        except ResolutionError as exc:
            logger.warning("No playable stream for channel %s: %s", channel_id, exc)
            return None
