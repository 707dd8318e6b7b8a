"""Tests for the managed script lifecycle (download, validate, execute, schedule)."""
import asyncio
import sys

import httpx
import pytest

from app.exceptions import (
    AcquisitionError,
    AlreadyRunningError,
    ExecutionError,
    ScriptNotFoundError,
)
from app.services.script_service import ManagedScript, PlaylistGeneratorScript, ScriptPhase

from conftest import (
    GENERATOR_SCRIPT,
    RESOLVER_SCRIPT,
    SAMPLE_M3U,
    SLOW_GENERATOR_SCRIPT,
)

GEN_URL = "http://host.example.com/gen.py"
RESOLVER_URL = "http://host.example.com/resolver.py"


async def _wait_for_phase(script, phase, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while script.phase != phase:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"phase never became {phase}")
        await asyncio.sleep(0.01)


class TestAcquire:
    """Downloading and installing script artifacts."""

    @pytest.mark.asyncio
    async def test_acquire_installs_artifact(self, make_generator):
        generator = make_generator({GEN_URL: (200, GENERATOR_SCRIPT)})
        assert generator.phase == ScriptPhase.IDLE

        path = await generator.acquire(GEN_URL)

        assert generator.phase == ScriptPhase.READY
        assert path.read_text() == GENERATOR_SCRIPT
        assert generator.source_url == GEN_URL
        assert generator.status()["script_exists"] is True

    @pytest.mark.asyncio
    async def test_http_error_keeps_idle(self, make_generator):
        generator = make_generator({GEN_URL: (404, "missing")})

        with pytest.raises(AcquisitionError):
            await generator.acquire(GEN_URL)

        assert generator.phase == ScriptPhase.IDLE
        assert generator.artifact_path is None
        assert "HTTP 404" in generator.last_error

    @pytest.mark.asyncio
    async def test_empty_payload_rejected(self, make_generator):
        generator = make_generator({GEN_URL: (200, "   \n")})

        with pytest.raises(AcquisitionError, match="empty payload"):
            await generator.acquire(GEN_URL)
        assert not generator.has_artifact()

    @pytest.mark.asyncio
    async def test_failed_download_keeps_previous_artifact(self, make_generator):
        generator = make_generator({
            GEN_URL: (200, GENERATOR_SCRIPT),
            "http://host.example.com/broken.py": (500, "server error"),
        })
        await generator.acquire(GEN_URL)

        with pytest.raises(AcquisitionError):
            await generator.acquire("http://host.example.com/broken.py")

        assert generator.phase == ScriptPhase.READY
        assert generator.artifact_path.read_text() == GENERATOR_SCRIPT
        assert generator.source_url == GEN_URL

    @pytest.mark.asyncio
    async def test_connection_error(self, registry, script_dir):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        generator = PlaylistGeneratorScript(
            registry,
            script_dir,
            python_executable=sys.executable,
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(AcquisitionError, match="ConnectError"):
            await generator.acquire(GEN_URL)
        assert generator.phase == ScriptPhase.IDLE

    @pytest.mark.asyncio
    async def test_unparseable_url_reported(self, make_generator):
        generator = make_generator({GEN_URL: (200, GENERATOR_SCRIPT)})
        await generator.acquire(GEN_URL)

        with pytest.raises(AcquisitionError, match="InvalidURL"):
            await generator.acquire("http://[::1/x.py")

        assert generator.phase == ScriptPhase.READY
        assert "InvalidURL" in generator.last_error
        assert generator.source_url == GEN_URL

    @pytest.mark.asyncio
    async def test_cancelled_download_restores_phase(self, registry, script_dir):
        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200, text=GENERATOR_SCRIPT)

        generator = PlaylistGeneratorScript(
            registry,
            script_dir,
            python_executable=sys.executable,
            transport=httpx.MockTransport(handler),
        )
        task = asyncio.create_task(generator.acquire(GEN_URL))
        await _wait_for_phase(generator, ScriptPhase.DOWNLOADING)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert generator.phase == ScriptPhase.IDLE
        assert not generator.has_artifact()

    def test_base_class_is_abstract(self, registry, script_dir):
        with pytest.raises(TypeError):
            ManagedScript(registry, script_dir, python_executable=sys.executable)

    def test_existing_artifact_reused(self, make_generator, script_dir):
        (script_dir / "generator_script.py").write_text(GENERATOR_SCRIPT)

        generator = make_generator()

        assert generator.phase == ScriptPhase.READY
        assert generator.has_artifact()


class TestExecute:
    """Running scripts as separate processes."""

    @pytest.mark.asyncio
    async def test_generator_output_is_stored(self, make_generator):
        generator = make_generator({GEN_URL: (200, GENERATOR_SCRIPT)})
        await generator.acquire(GEN_URL)

        output = await generator.execute()

        assert output.strip() == SAMPLE_M3U.strip()
        assert generator.phase == ScriptPhase.READY
        assert generator.last_execution_at is not None
        assert generator.get_m3u_content() == output
        assert generator.output_path.read_text() == output
        assert generator.status()["m3u_exists"] is True

    @pytest.mark.asyncio
    async def test_execute_without_artifact(self, make_generator):
        generator = make_generator()

        with pytest.raises(ExecutionError, match="not downloaded"):
            await generator.execute()
        assert generator.last_error

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails(self, make_generator):
        generator = make_generator({GEN_URL: (200, "import sys\nsys.stderr.write('boom')\nsys.exit(3)\n")})
        await generator.acquire(GEN_URL)

        with pytest.raises(ExecutionError, match="code 3"):
            await generator.execute()

        assert generator.phase == ScriptPhase.FAILED
        assert "boom" in generator.status()["last_error"]
        assert generator.get_m3u_content() is None

    @pytest.mark.asyncio
    async def test_empty_output_fails(self, make_generator):
        generator = make_generator({GEN_URL: (200, "pass\n")})
        await generator.acquire(GEN_URL)

        with pytest.raises(ExecutionError, match="no playlist output"):
            await generator.execute()
        assert generator.phase == ScriptPhase.FAILED

    @pytest.mark.asyncio
    async def test_timeout_is_execution_failure(self, make_generator):
        generator = make_generator(
            {GEN_URL: (200, "import time\ntime.sleep(10)\n")},
            timeout_sec=0.5,
        )
        await generator.acquire(GEN_URL)

        with pytest.raises(ExecutionError, match="timed out"):
            await generator.execute()

        assert generator.phase == ScriptPhase.FAILED
        assert not generator.is_running

    @pytest.mark.asyncio
    async def test_overlapping_execution_rejected(self, make_generator):
        generator = make_generator({GEN_URL: (200, SLOW_GENERATOR_SCRIPT)})
        await generator.acquire(GEN_URL)

        first = asyncio.create_task(generator.execute())
        await _wait_for_phase(generator, ScriptPhase.EXECUTING)

        with pytest.raises(AlreadyRunningError):
            await generator.execute()

        output = await first
        assert output.strip() == SAMPLE_M3U.strip()
        assert generator.phase == ScriptPhase.READY
        assert generator.last_error is None

    @pytest.mark.asyncio
    async def test_failed_execution_keeps_artifact_and_output(self, make_generator):
        generator = make_generator({
            GEN_URL: (200, GENERATOR_SCRIPT),
            "http://host.example.com/bad.py": (200, "raise SystemExit(1)\n"),
        })
        await generator.acquire(GEN_URL)
        previous = await generator.execute()

        await generator.acquire("http://host.example.com/bad.py")
        with pytest.raises(ExecutionError):
            await generator.execute()

        assert generator.has_artifact()
        assert generator.get_m3u_content() == previous

    @pytest.mark.asyncio
    async def test_output_listener_notified(self, make_generator):
        generator = make_generator({GEN_URL: (200, GENERATOR_SCRIPT)})
        received = []

        async def listener(content):
            received.append(content)

        async def broken_listener(content):
            raise RuntimeError("listener failure")

        generator.add_output_listener(broken_listener)
        generator.add_output_listener(listener)
        await generator.acquire(GEN_URL)

        output = await generator.execute()

        assert received == [output]

    @pytest.mark.asyncio
    async def test_resolver_returns_first_line(self, make_resolver):
        resolver = make_resolver({RESOLVER_URL: (200, RESOLVER_SCRIPT)})
        await resolver.acquire(RESOLVER_URL)

        url = await resolver.execute(resolver.resolve_args("http://streams.example.com/chan-1"))

        assert url == "https://cdn.example.com/live/chan-1.m3u8"

    @pytest.mark.asyncio
    async def test_resolver_runs_different_streams_concurrently(self, make_resolver):
        script = "import sys, time\ntime.sleep(0.5)\nprint('https://cdn.example.com/' + sys.argv[2])\n"
        resolver = make_resolver({RESOLVER_URL: (200, script)})
        await resolver.acquire(RESOLVER_URL)

        first, second = await asyncio.gather(
            resolver.execute(resolver.resolve_args("a")),
            resolver.execute(resolver.resolve_args("b")),
        )

        assert (first, second) == ("https://cdn.example.com/a", "https://cdn.example.com/b")


class TestValidate:
    """Health checks of installed scripts."""

    @pytest.mark.asyncio
    async def test_generator_syntax_check(self, make_generator):
        generator = make_generator({
            GEN_URL: (200, GENERATOR_SCRIPT),
            "http://host.example.com/invalid.py": (200, "def broken(:\n"),
        })
        await generator.acquire(GEN_URL)
        assert await generator.validate() is True
        assert not generator.output_path.exists()

        await generator.acquire("http://host.example.com/invalid.py")
        assert await generator.validate() is False
        assert "not valid Python" in generator.last_error

    @pytest.mark.asyncio
    async def test_validate_missing_artifact_raises(self, make_generator, make_resolver):
        with pytest.raises(ScriptNotFoundError):
            await make_generator().validate()
        with pytest.raises(ScriptNotFoundError):
            await make_resolver().validate()

    @pytest.mark.asyncio
    async def test_resolver_health_check_records_version(self, make_resolver):
        resolver = make_resolver({RESOLVER_URL: (200, RESOLVER_SCRIPT)})
        await resolver.acquire(RESOLVER_URL)

        assert await resolver.validate() is True
        assert resolver.status()["resolver_version"] == "2.1.0"

        resolver.clear_produced_cache()
        assert resolver.resolver_version is None

    @pytest.mark.asyncio
    async def test_resolver_health_check_failure(self, make_resolver):
        resolver = make_resolver({RESOLVER_URL: (200, "import sys\nsys.exit(1)\n")})
        await resolver.acquire(RESOLVER_URL)

        assert await resolver.validate() is False
        assert "health check failed" in resolver.last_error

    @pytest.mark.asyncio
    async def test_template_is_a_working_resolver(self, make_resolver):
        resolver = make_resolver()

        path = await resolver.create_template()

        assert path.exists()
        assert resolver.phase == ScriptPhase.READY
        assert await resolver.validate() is True
        assert resolver.resolver_version == "1.0.0"
        url = await resolver.execute(resolver.resolve_args("http://streams.example.com/x"))
        assert url == "http://streams.example.com/x"


class TestSchedule:
    """Recurring updates through the schedule registry."""

    @pytest.mark.parametrize("interval", ["", "abc", "0:00", "1:75", "12"])
    def test_invalid_interval_rejected(self, make_generator, registry, interval):
        generator = make_generator()

        assert generator.schedule_recurring(interval) is False

        assert generator.last_error
        assert not registry.is_scheduled("generator_update")
        assert generator.status()["scheduled_updates"] is False

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, make_generator, registry):
        generator = make_generator()
        try:
            assert generator.schedule_recurring("12:00") is True

            status = generator.status()
            assert status["scheduled_updates"] is True
            assert status["update_interval"] == "12:00"
            assert status["update_interval_ms"] == 43_200_000
            assert status["next_run"] is not None

            assert generator.cancel_schedule() is True
            assert generator.cancel_schedule() is False
            assert generator.status()["scheduled_updates"] is False
        finally:
            registry.shutdown()

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self, make_generator, registry):
        generator = make_generator()
        try:
            generator.schedule_recurring("12:00")
            generator.schedule_recurring("0:30")

            assert registry.get_interval_ms("generator_update") == 1_800_000
            assert len(registry.scheduler.get_jobs()) == 1
        finally:
            registry.shutdown()

    @pytest.mark.asyncio
    async def test_tick_skipped_while_executing(self, make_generator):
        generator = make_generator({GEN_URL: (200, SLOW_GENERATOR_SCRIPT)})
        await generator.acquire(GEN_URL)

        running = asyncio.create_task(generator.execute())
        await _wait_for_phase(generator, ScriptPhase.EXECUTING)

        await generator._scheduled_tick()

        assert generator.phase == ScriptPhase.EXECUTING
        await running
        assert generator.last_error is None

    @pytest.mark.asyncio
    async def test_tick_records_failure_without_raising(self, make_generator):
        generator = make_generator()

        await generator._scheduled_tick()

        assert "not downloaded" in generator.last_error

    @pytest.mark.asyncio
    async def test_resolver_tick_refreshes_script(self, make_resolver):
        resolver = make_resolver({RESOLVER_URL: (200, RESOLVER_SCRIPT)})
        await resolver.acquire(RESOLVER_URL)
        resolver.artifact_path.write_text("import sys\nsys.exit(1)\n")

        await resolver._scheduled_tick()

        assert resolver.artifact_path.read_text() == RESOLVER_SCRIPT
        assert resolver.resolver_version == "2.1.0"
