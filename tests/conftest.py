"""
Shared fixtures for the catalog service tests.

Network access goes through httpx.MockTransport; scripts are real Python
files executed with the current interpreter.
"""
import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest

from app.services.scheduler_service import ScheduleRegistry
from app.services.script_service import PlaylistGeneratorScript, StreamResolverScript


SAMPLE_M3U = """#EXTM3U url-tvg="http://epg.example.com/guide.xml,http://epg.example.com/extra.xml"
#EXTINF:-1 tvg-id="chan-1" tvg-logo="http://img.example.com/1.png" group-title="News",News One
http://streams.example.com/chan-1
#EXTINF:-1 tvg-id="chan-2" group-title="Sports",Sports Two
http://streams.example.com/chan-2
#EXTINF:-1 tvg-id="chan-3" group-title="News",News Three
http://streams.example.com/chan-3
"""

GENERATOR_SCRIPT = f"PLAYLIST = {SAMPLE_M3U!r}\nprint(PLAYLIST)\n"

SLOW_GENERATOR_SCRIPT = f"import time\ntime.sleep(1.0)\nPLAYLIST = {SAMPLE_M3U!r}\nprint(PLAYLIST)\n"

RESOLVER_SCRIPT = """import sys

if sys.argv[1] == "--check":
    print("2.1.0")
elif sys.argv[1] == "--resolve":
    print("https://cdn.example.com/live/" + sys.argv[2].rsplit("/", 1)[-1] + ".m3u8")
else:
    sys.exit(2)
"""


def make_transport(routes: dict[str, tuple[int, bytes | str]]) -> httpx.MockTransport:
    """MockTransport answering each URL with (status, body); unknown URLs return 404"""

    def handler(request: httpx.Request) -> httpx.Response:
        status, body = routes.get(str(request.url), (404, b"not found"))
        if isinstance(body, str):
            body = body.encode("utf-8")
        return httpx.Response(status, content=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def registry():
    """Schedule registry released after each test"""
    registry = ScheduleRegistry()
    yield registry
    registry.shutdown()


@pytest.fixture
def script_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scripts"
    path.mkdir()
    return path


@pytest.fixture
def make_generator(registry, script_dir) -> Callable[..., PlaylistGeneratorScript]:
    def factory(routes: dict | None = None, **kwargs) -> PlaylistGeneratorScript:
        kwargs.setdefault("timeout_sec", 10.0)
        return PlaylistGeneratorScript(
            registry,
            script_dir,
            python_executable=sys.executable,
            transport=make_transport(routes or {}),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_resolver(registry, script_dir) -> Callable[..., StreamResolverScript]:
    def factory(routes: dict | None = None, **kwargs) -> StreamResolverScript:
        kwargs.setdefault("timeout_sec", 10.0)
        return StreamResolverScript(
            registry,
            script_dir,
            python_executable=sys.executable,
            transport=make_transport(routes or {}),
            **kwargs,
        )

    return factory
