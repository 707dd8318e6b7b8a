from enum import Enum

import httpx
from pydantic import BaseModel, Field, field_validator, model_validator

from app.utils.interval import IntervalFormatError, parse_interval_ms


class GeneratorAction(str, Enum):
    DOWNLOAD = "download"
    EXECUTE = "execute"
    VALIDATE = "validate"
    STATUS = "status"
    SCHEDULE = "schedule"
    STOP_SCHEDULE = "stopSchedule"


class ResolverAction(str, Enum):
    DOWNLOAD = "download"
    CREATE_TEMPLATE = "create-template"
    CHECK_HEALTH = "check-health"
    STATUS = "status"
    CLEAR_CACHE = "clear-cache"
    SCHEDULE = "schedule"
    STOP_SCHEDULE = "stopSchedule"


def _validate_http_url(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.strip()
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError(f"URL must be HTTP/HTTPS: {value}")
    try:
        httpx.URL(value)
    except httpx.InvalidURL as e:
        raise ValueError(f"Invalid URL: {e}")
    return value


def _validate_interval(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        parse_interval_ms(value)
    except IntervalFormatError as e:
        raise ValueError(str(e))
    return value.strip()


class ScriptActionRequest(BaseModel):
    """Administrative action on a managed script"""
    url: str | None = Field(None, description="Script URL (download action)")
    interval: str | None = Field(None, description="Update interval as H:MM (schedule action), e.g. '12:00'")

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return _validate_http_url(v)

    @field_validator('interval')
    @classmethod
    def validate_interval(cls, v: str | None) -> str | None:
        return _validate_interval(v)

    @model_validator(mode='after')
    def validate_required_fields(self):
        """download needs a url, schedule needs an interval"""
        action = getattr(self, "action").value
        if action == "download" and not self.url:
            raise ValueError("url is required for the download action")
        if action == "schedule" and not self.interval:
            raise ValueError("interval is required for the schedule action")
        return self


class GeneratorActionRequest(ScriptActionRequest):
    action: GeneratorAction = Field(..., description="Operation to perform on the generator script")


class ResolverActionRequest(ScriptActionRequest):
    action: ResolverAction = Field(..., description="Operation to perform on the resolver script")


class RebuildRequest(BaseModel):
    """Playlist rebuild request"""
    m3u: str = Field(..., min_length=1, description="Playlist URL or 'generator-output'")
    force: bool = Field(False, description="Rebuild even if the source is unchanged")
    epg: str | None = Field(None, description="Comma-separated program guide URLs overriding the playlist's")

    @field_validator('m3u')
    @classmethod
    def validate_source(cls, v: str) -> str:
        v = v.strip()
        if v == "generator-output":
            return v
        return _validate_http_url(v)


class ActionResponse(BaseModel):
    """Result of an administrative action"""
    success: bool
    message: str
    m3u_url: str | None = None
    script_path: str | None = None


class ChannelResponse(BaseModel):
    """Catalog channel"""
    id: str
    name: str
    genre: str
    logo: str | None = None
    tvg_id: str | None = None


class CatalogResponse(BaseModel):
    """Catalog data, possibly served from a stale cache"""
    built_at: str | None
    stale: bool
    message: str | None = Field(None, description="Set when cached data is served")
    genres: list[str]
    epg_references: list[str]
    total_channels: int
    channels: list[ChannelResponse]


class StreamResponse(BaseModel):
    """Playable stream for a channel"""
    channel_id: str
    url: str
