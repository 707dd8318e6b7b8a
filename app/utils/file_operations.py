"""
File operation utilities

This module handles artifact downloads, atomic file replacement and
temporary file cleanup.
"""
import logging
import os
import tempfile
from pathlib import Path

import aiofiles
import httpx

from app.utils.logging_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


async def fetch_bytes(
    url: str,
    timeout: float = 60.0,
    headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bytes:
    """
    Fetch a URL and return the response body

    Args:
        url: URL to download from
        timeout: HTTP timeout in seconds
        headers: Optional extra request headers
        transport: Optional httpx transport (used by tests)

    Returns:
        Raw response body

    Raises:
        httpx.HTTPError: On network failure or non-success status
    """
    logger.debug(f"Fetching {sanitize_url_for_logging(url)}...")

    async with httpx.AsyncClient(
        timeout=timeout,
        headers=headers,
        transport=transport,
        follow_redirects=True,
    ) as client:
        response = await client.get(url)
        response.raise_for_status()

    logger.debug(f"Fetched {len(response.content)} bytes from {sanitize_url_for_logging(url)}")
    return response.content


async def fetch_text(
    url: str,
    timeout: float = 60.0,
    headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Fetch a URL and decode the body as UTF-8 text"""
    content = await fetch_bytes(url, timeout=timeout, headers=headers, transport=transport)
    return content.decode("utf-8", errors="replace")


async def write_file_atomic(target: Path, content: bytes) -> Path:
    """
    Write content next to target, then atomically replace target

    Readers of target either see the previous file or the complete new one.

    Args:
        target: Final file path
        content: Bytes to write

    Returns:
        The target path

    Raises:
        OSError: If the file cannot be written or replaced
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)

    replaced = False
    try:
        async with aiofiles.open(tmp_path, 'wb') as f:
            await f.write(content)
        os.replace(tmp_path, target)
        replaced = True
    finally:
        if not replaced:
            cleanup_temp_file(tmp_path)

    logger.debug(f"Wrote {len(content)} bytes to {target}")
    return target


def cleanup_temp_file(file_path: Path) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False


def cleanup_temp_dir(temp_dir: Path) -> int:
    """
    Remove every regular file in the temp directory, creating it if missing

    Args:
        temp_dir: Directory to clean

    Returns:
        Number of files deleted
    """
    if not temp_dir.exists():
        logger.info(f"Temp folder not found, creating {temp_dir}")
        temp_dir.mkdir(parents=True, exist_ok=True)
        return 0

    deleted = 0
    for entry in temp_dir.iterdir():
        if entry.is_file() and cleanup_temp_file(entry):
            deleted += 1

    logger.info(f"Deleted {deleted} temporary files from {temp_dir}")
    return deleted
