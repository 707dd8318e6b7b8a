from pathlib import Path
import logging
import sys

import httpx
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.utils.interval import parse_interval_ms


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    data_dir: str = "./data"
    temp_dir: str = "./temp"
    python_executable: str = sys.executable
    user_agent: str = DEFAULT_USER_AGENT

    script_timeout_sec: float = 300.0  # Hard limit for one script run
    validate_timeout_sec: float = 30.0
    download_timeout_sec: float = 60.0

    cache_update_interval_ms: int = 2 * 60 * 60 * 1000  # Background playlist refresh
    cache_max_age_ms: int = 12 * 60 * 60 * 1000  # Playlist considered stale after this
    cache_retry_attempts: int = 3
    cache_retry_delay_ms: int = 5000
    resolver_cache_ttl_ms: int = 5 * 60 * 1000
    scheduler_misfire_grace_sec: int = 300

    # Optional bootstrap configuration applied at startup
    playlist_url: str | None = None
    generator_script_url: str | None = None
    generator_update_interval: str | None = None
    resolver_script_url: str | None = None
    resolver_update_interval: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("playlist_url", "generator_script_url", "resolver_script_url", mode="before")
    @classmethod
    def empty_url_to_none(cls, value):
        """Treat blank URLs as not configured."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("playlist_url", "generator_script_url", "resolver_script_url")
    @classmethod
    def validate_http_url(cls, value: str | None, info) -> str | None:
        """Validate configured URLs are HTTP/HTTPS."""
        if value is None:
            return value
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError(f"{info.field_name} must be HTTP/HTTPS: {value}")
        try:
            httpx.URL(value.strip())
        except httpx.InvalidURL as exc:
            raise ValueError(f"{info.field_name} is not a valid URL: {exc}")
        return value.strip()

    @field_validator("generator_update_interval", "resolver_update_interval", mode="before")
    @classmethod
    def validate_interval(cls, value, info):
        """Validate H:MM update intervals."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        try:
            parse_interval_ms(value)
        except ValueError as exc:
            raise ValueError(f"{info.field_name}: {exc}") from exc
        return value.strip()

    @field_validator("data_dir", "temp_dir")
    @classmethod
    def validate_directory(cls, value: str, info) -> str:
        """Validate directory is accessible."""
        path = Path(value)
        try:
            path.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access {info.field_name} '{value}': {exc}") from exc

    @field_validator("script_timeout_sec", "validate_timeout_sec", "download_timeout_sec")
    @classmethod
    def validate_timeouts(cls, value: float, info) -> float:
        """Ensure timeouts are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "cache_update_interval_ms",
        "cache_max_age_ms",
        "cache_retry_attempts",
        "resolver_cache_ttl_ms",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer cache settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("cache_retry_delay_ms", "scheduler_misfire_grace_sec")
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure delays are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @model_validator(mode="after")
    def validate_schedule_configuration(self):
        """Validate cross-field configuration."""
        if self.generator_update_interval and not self.generator_script_url:
            logger.warning(
                "generator_update_interval set without generator_script_url - schedule ignored"
            )
        if self.resolver_update_interval and not self.resolver_script_url:
            logger.warning(
                "resolver_update_interval set without resolver_script_url - schedule ignored"
            )
        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Data Dir: %s", self.data_dir)
        logger.info("  Temp Dir: %s", self.temp_dir)
        logger.info("  Python: %s", self.python_executable)
        logger.info("  Script Timeout: %ss", self.script_timeout_sec)
        logger.info("  Playlist Refresh Interval: %s ms", self.cache_update_interval_ms)
        logger.info("  Playlist Max Age: %s ms", self.cache_max_age_ms)
        logger.info(
            "  Rebuild Retries: %s attempts, %s ms delay",
            self.cache_retry_attempts,
            self.cache_retry_delay_ms,
        )
        logger.info("  Resolver Cache TTL: %s ms", self.resolver_cache_ttl_ms)
        logger.info("  Playlist URL: %s", "configured" if self.playlist_url else "not set")
        logger.info(
            "  Generator Script: %s",
            "configured" if self.generator_script_url else "not set",
        )
        logger.info(
            "  Resolver Script: %s",
            "configured" if self.resolver_script_url else "not set",
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
