import logging
import re

from app.services.fetch_types import ChannelRecord

logger = logging.getLogger(__name__)

DEFAULT_GENRE = "Other Channels"

_ATTRIBUTE_PATTERN = re.compile(r'([A-Za-z][\w-]*)="([^"]*)"')
_EPG_HEADER_KEYS = ("url-tvg", "x-tvg-url", "tvg-url")


def parse_m3u(content: str) -> tuple[list[ChannelRecord], list[str], list[str]]:
    """
    Parse an M3U playlist document

    Args:
        content: Playlist text

    Returns:
        Tuple of (channels, genres, epg_references)
        - channels: ChannelRecord per #EXTINF entry that has a stream URL
        - genres: distinct group titles in first-appearance order
        - epg_references: program guide URLs announced in the #EXTM3U header

    Raises:
        ValueError: If the document contains no channels
    """
    channels: list[ChannelRecord] = []
    genres: list[str] = []
    epg_references: list[str] = []
    seen_ids: dict[str, int] = {}
    pending: dict | None = None

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith("#EXTM3U"):
            _collect_epg_references(line, epg_references)
        elif line.startswith("#EXTINF"):
            pending = _parse_extinf(line)
            if pending is None:
                logger.debug(f"Skipping malformed #EXTINF on line {line_number}")
        elif line.startswith("#"):
            continue
        elif pending is not None:
            channel = _build_channel(pending, line, seen_ids)
            channels.append(channel)
            if channel.genre not in genres:
                genres.append(channel.genre)
            pending = None

    if not channels:
        logger.warning("No channels found in playlist")
        raise ValueError("No channels found in playlist")

    logger.info(
        f"Playlist parsing complete: {len(channels)} channels, {len(genres)} genres, "
        f"{len(epg_references)} EPG sources"
    )
    return channels, genres, epg_references


def _collect_epg_references(header: str, epg_references: list[str]) -> None:
    """Extract comma-separated guide URLs from the #EXTM3U header"""
    attributes = dict(_ATTRIBUTE_PATTERN.findall(header))
    for key in _EPG_HEADER_KEYS:
        for url in attributes.get(key, "").split(","):
            url = url.strip()
            if url and url not in epg_references:
                epg_references.append(url)


def _parse_extinf(line: str) -> dict | None:
    """Split an #EXTINF line into its attributes and display name"""
    # Attribute values may contain commas, so the name is located after removing them
    bare = _ATTRIBUTE_PATTERN.sub("", line)
    if "," not in bare:
        return None

    name = bare.split(",", 1)[1]
    attributes = dict(_ATTRIBUTE_PATTERN.findall(line))
    attributes["name"] = name.strip() or attributes.get("tvg-name", "").strip()
    return attributes


def _build_channel(attributes: dict, stream_url: str, seen_ids: dict[str, int]) -> ChannelRecord:
    name = attributes.get("name") or stream_url
    tvg_id = attributes.get("tvg-id", "").strip() or None
    base_id = tvg_id or name

    # Channels sharing an id get a numeric suffix
    count = seen_ids.get(base_id, 0) + 1
    seen_ids[base_id] = count
    channel_id = base_id if count == 1 else f"{base_id}_{count}"

    return ChannelRecord(
        id=channel_id,
        name=name,
        genre=attributes.get("group-title", "").strip() or DEFAULT_GENRE,
        stream_url=stream_url,
        tvg_id=tvg_id,
        logo=attributes.get("tvg-logo", "").strip() or None,
    )
