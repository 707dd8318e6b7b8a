"""
Services package for the Live TV Catalog Service

This package contains the script lifecycle, caching and scheduling components.
"""
from app.services.playlist_cache import GENERATOR_SOURCE_KEY, PlaylistCache
from app.services.resolution_cache import ResolutionCache
from app.services.scheduler_service import ScheduleRegistry
from app.services.script_service import (
    PlaylistGeneratorScript,
    ScriptPhase,
    StreamResolverScript,
)
from app.services.m3u_parser_service import parse_m3u

__all__ = [
    'GENERATOR_SOURCE_KEY',
    'PlaylistCache',
    'ResolutionCache',
    'ScheduleRegistry',
    'PlaylistGeneratorScript',
    'ScriptPhase',
    'StreamResolverScript',
    'parse_m3u',
]
