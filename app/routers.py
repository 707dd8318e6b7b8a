from typing import Annotated
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, PlainTextResponse

from app.dependencies import CoreServices, get_services
from app.exceptions import (
    AcquisitionError,
    AlreadyRunningError,
    ExecutionError,
    RebuildError,
    ScriptNotFoundError,
)
from app.schemas import (
    ActionResponse,
    CatalogResponse,
    ChannelResponse,
    GeneratorAction,
    GeneratorActionRequest,
    RebuildRequest,
    ResolverAction,
    ResolverActionRequest,
    StreamResponse,
)
from app.services.fetch_types import RebuildOptions
from app.services.script_service import ManagedScript


logger = logging.getLogger(__name__)

main_router = APIRouter()

Services = Annotated[CoreServices, Depends(get_services)]


@main_router.get("/")
async def root(services: Services) -> dict:
    """Root endpoint with service information"""
    return {
        "service": "Live TV Catalog Service",
        "version": "0.1.0",
        "playlist": services.playlist_cache.status(),
        "endpoints": {
            "catalog": "/catalog - Current channel catalog",
            "stream": "/stream/{channel_id} - Playable URL for a channel",
            "generated_m3u": "/generated-m3u - Playlist produced by the generator script",
            "rebuild": "/api/rebuild-cache - Rebuild the playlist cache (POST)",
            "python_script": "/api/python-script - Generator script actions (POST)",
            "resolver": "/api/resolver - Resolver script actions (POST)",
            "resolver_template": "/api/resolver/download-template - Download the installed resolver script",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check(services: Services) -> dict:
    """Health check endpoint"""
    snapshot = services.playlist_cache.get()
    return {
        "status": "ok",
        "scheduler_running": services.registry.running,
        "playlist_loaded": snapshot.entry is not None,
        "playlist_stale": snapshot.stale,
    }


@main_router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(
    services: Services,
    genre: Annotated[str | None, Query(description="Only channels of this genre")] = None,
    search: Annotated[str | None, Query(description="Case-insensitive name filter")] = None,
) -> CatalogResponse:
    """Current catalog; stale data is served rather than an error"""
    snapshot = services.playlist_cache.get()
    channels = snapshot.channels
    if genre:
        channels = [channel for channel in channels if channel.genre == genre]
    if search:
        needle = search.lower()
        channels = [channel for channel in channels if needle in channel.name.lower()]

    built_at = snapshot.entry.built_at.isoformat() if snapshot.entry else None
    message = None
    if snapshot.entry is None:
        message = "Catalog not loaded yet"
    elif snapshot.stale:
        message = f"Serving cached data as of {built_at}"

    return CatalogResponse(
        built_at=built_at,
        stale=snapshot.stale,
        message=message,
        genres=list(snapshot.genres),
        epg_references=list(snapshot.epg_references),
        total_channels=len(channels),
        channels=[
            ChannelResponse(
                id=channel.id,
                name=channel.name,
                genre=channel.genre,
                logo=channel.logo,
                tvg_id=channel.tvg_id,
            )
            for channel in channels
        ],
    )


@main_router.get("/stream/{channel_id}", response_model=StreamResponse)
async def get_stream(
    channel_id: str,
    services: Services,
    resolver: Annotated[bool, Query(description="Use the resolver script if installed")] = True,
) -> StreamResponse:
    """Playable stream URL for a channel"""
    url = await services.stream_service.get_stream_url(channel_id, use_resolver=resolver)
    if url is None:
        raise HTTPException(status_code=404, detail="No playable stream available")
    return StreamResponse(channel_id=channel_id, url=url)


@main_router.get("/generated-m3u", response_class=PlainTextResponse)
async def generated_m3u(services: Services) -> str:
    """Playlist produced by the last successful generator run"""
    content = services.generator.get_m3u_content()
    if not content:
        raise HTTPException(status_code=404, detail="M3U file not found. Run the Python script first.")
    return content


@main_router.post("/api/rebuild-cache", response_model=ActionResponse)
async def rebuild_cache(payload: RebuildRequest, services: Services) -> ActionResponse:
    """Rebuild the playlist cache from a URL or the generator output"""
    logger.info("Cache rebuild request received")
    try:
        entry = await services.playlist_cache.rebuild(
            payload.m3u,
            RebuildOptions(force=payload.force, epg_url=payload.epg),
        )
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RebuildError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return ActionResponse(
        success=True,
        message=f"Cache rebuilt: {len(entry.channels)} channels, {len(entry.genres)} genres",
    )


async def _run_common_action(script: ManagedScript, action: str, payload) -> ActionResponse | None:
    """Actions shared by both scripts; returns None for role-specific actions"""
    if action == "download":
        await script.acquire(payload.url)
        return ActionResponse(success=True, message=f"{script.name.capitalize()} script downloaded successfully")

    if action == "schedule":
        if not script.schedule_recurring(payload.interval):
            raise HTTPException(status_code=400, detail=script.last_error)
        return ActionResponse(success=True, message=f"Automatic update scheduled every {payload.interval}")

    if action == "stopSchedule":
        stopped = script.cancel_schedule()
        return ActionResponse(
            success=True,
            message="Automatic update stopped" if stopped else "No scheduled update to stop",
        )

    return None


@main_router.post("/api/python-script")
async def python_script(
    payload: GeneratorActionRequest,
    request: Request,
    services: Services,
) -> dict:
    """Generator script operations"""
    generator = services.generator
    try:
        if payload.action == GeneratorAction.STATUS:
            return generator.status()

        if payload.action == GeneratorAction.EXECUTE:
            await generator.execute()
            return ActionResponse(
                success=True,
                message="Script executed successfully",
                m3u_url=str(request.url_for("generated_m3u")),
            ).model_dump()

        if payload.action == GeneratorAction.VALIDATE:
            valid = await generator.validate()
            return ActionResponse(
                success=valid,
                message="Generator script is valid" if valid else generator.last_error,
            ).model_dump()

        response = await _run_common_action(generator, payload.action.value, payload)
        return response.model_dump()

    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ScriptNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (AcquisitionError, ExecutionError) as e:
        raise HTTPException(status_code=500, detail=str(e))


@main_router.post("/api/resolver")
async def resolver_script(payload: ResolverActionRequest, services: Services) -> dict:
    """Resolver script operations"""
    resolver = services.resolver
    try:
        if payload.action == ResolverAction.STATUS:
            return {**resolver.status(), **services.resolution_cache.status()}

        if payload.action == ResolverAction.CREATE_TEMPLATE:
            path = await resolver.create_template()
            return ActionResponse(
                success=True,
                message="Resolver script template created successfully",
                script_path=str(path),
            ).model_dump()

        if payload.action == ResolverAction.CHECK_HEALTH:
            healthy = await resolver.validate()
            return ActionResponse(
                success=healthy,
                message="Resolver script is valid" if healthy else resolver.last_error,
            ).model_dump()

        if payload.action == ResolverAction.CLEAR_CACHE:
            resolver.clear_produced_cache()
            services.resolution_cache.clear_cache()
            return ActionResponse(success=True, message="Resolver cache cleared").model_dump()

        response = await _run_common_action(resolver, payload.action.value, payload)
        return response.model_dump()

    except ScriptNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AcquisitionError as e:
        raise HTTPException(status_code=500, detail=str(e))


@main_router.get("/api/resolver/download-template", response_class=FileResponse)
async def download_resolver_script(services: Services) -> FileResponse:
    """Installed resolver script as a downloadable attachment"""
    resolver = services.resolver
    if not resolver.has_artifact():
        raise HTTPException(
            status_code=404,
            detail='Template not found. Create it first with the "Create Template" function.',
        )
    return FileResponse(
        resolver.artifact_path,
        media_type="text/plain",
        filename=resolver.artifact_name,
    )
