"""
Structured logging helpers for consistent log formatting.

Provides utilities for structured, clean logging without excessive decorative separators.
"""
import logging
from datetime import datetime, timezone


def sanitize_url_for_logging(url: str | None) -> str:
    """Remove credentials from URL for safe logging."""
    if not url or "://" not in url:
        return url or ""
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url


def log_section_start(logger: logging.Logger, section_name: str) -> None:
    """
    Log the start of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being started
    """
    logger.info(f"Starting: {section_name}")


def log_section_end(logger: logging.Logger, section_name: str) -> None:
    """
    Log the end of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being ended
    """
    logger.info(f"Completed: {section_name}")


def log_rebuild_attempt(
    logger: logging.Logger,
    attempt: int,
    total: int,
    source_key: str
) -> None:
    """
    Log playlist rebuild attempt header.

    Args:
        logger: Logger instance
        attempt: Current attempt (1-based)
        total: Total number of attempts
        source_key: Source being ingested
    """
    logger.info(
        f"Rebuild attempt {attempt}/{total}: {sanitize_url_for_logging(source_key)}"
    )


def log_playlist_summary(
    logger: logging.Logger,
    channels_count: int,
    genres_count: int,
    epg_count: int
) -> None:
    """Log parsed playlist summary."""
    logger.info(
        f"Playlist summary - Channels: {channels_count}, Genres: {genres_count}, "
        f"EPG sources: {epg_count}"
    )


def log_execution_end(
    logger: logging.Logger,
    script_name: str,
    duration_seconds: float,
    output_size: int
) -> None:
    """Log script execution completion with timing."""
    logger.info(
        f"{script_name} script finished at {datetime.now(timezone.utc).isoformat()} "
        f"({duration_seconds:.2f}s, {output_size} bytes of output)"
    )
