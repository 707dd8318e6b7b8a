"""
Dependency Injection Configuration

Builds the service graph once per application and exposes it to routes.
The ScheduleRegistry is owned here: created with the services, stopped by
shutdown().
"""
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx
from fastapi import Request

from app.config import CustomSettings
from app.services.playlist_cache import PlaylistCache, create_playlist_loader
from app.services.resolution_cache import ResolutionCache
from app.services.scheduler_service import ScheduleRegistry
from app.services.script_service import PlaylistGeneratorScript, StreamResolverScript
from app.services.stream_service import StreamService


logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Every long-lived service of the running application."""
    settings: CustomSettings
    registry: ScheduleRegistry
    generator: PlaylistGeneratorScript
    resolver: StreamResolverScript
    playlist_cache: PlaylistCache
    resolution_cache: ResolutionCache
    stream_service: StreamService

    def shutdown(self) -> None:
        """Release every timer. Running executions are not interrupted."""
        self.registry.shutdown()
        logger.debug("Core services shut down")


def create_services(
    settings: CustomSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CoreServices:
    """
    Wire the service graph

    Args:
        settings: Application settings
        transport: Optional httpx transport shared by every outgoing request (tests)

    Returns:
        The assembled CoreServices
    """
    registry = ScheduleRegistry(misfire_grace_sec=settings.scheduler_misfire_grace_sec)
    script_dir = Path(settings.data_dir)
    script_options = dict(
        python_executable=settings.python_executable,
        timeout_sec=settings.script_timeout_sec,
        validate_timeout_sec=settings.validate_timeout_sec,
        download_timeout_sec=settings.download_timeout_sec,
        user_agent=settings.user_agent,
        transport=transport,
    )

    generator = PlaylistGeneratorScript(registry, script_dir, **script_options)
    resolver = StreamResolverScript(registry, script_dir, **script_options)

    playlist_cache = PlaylistCache(
        create_playlist_loader(
            generator.get_m3u_content,
            timeout=settings.download_timeout_sec,
            user_agent=settings.user_agent,
            transport=transport,
        ),
        registry,
        max_age_ms=settings.cache_max_age_ms,
        retry_attempts=settings.cache_retry_attempts,
        retry_delay_ms=settings.cache_retry_delay_ms,
    )
    generator.add_output_listener(playlist_cache.on_generator_output)

    resolution_cache = ResolutionCache(resolver, ttl_ms=settings.resolver_cache_ttl_ms)
    stream_service = StreamService(playlist_cache, resolution_cache, resolver)

    logger.info("Core services created (data dir: %s)", script_dir)
    return CoreServices(
        settings=settings,
        registry=registry,
        generator=generator,
        resolver=resolver,
        playlist_cache=playlist_cache,
        resolution_cache=resolution_cache,
        stream_service=stream_service,
    )


def get_services(request: Request) -> CoreServices:
    """FastAPI dependency returning the application's services"""
    return request.app.state.services
