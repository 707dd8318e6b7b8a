"""
Managed Script Service

Owns the lifecycle of the user-supplied scripts: download, on-disk storage,
validation, timed execution in a separate process, and scheduled updates.

Two roles share the same lifecycle:
  - PlaylistGeneratorScript: stdout is a full M3U playlist document
  - StreamResolverScript: stdout is a single playable URL for a stream id
"""
from __future__ import annotations

import ast
import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Sequence

import httpx

from app.exceptions import (
    AcquisitionError,
    AlreadyRunningError,
    CatalogServiceError,
    ExecutionError,
    ScriptNotFoundError,
)
from app.services.fetch_types import ExecutionResult
from app.services.scheduler_service import ScheduleRegistry
from app.utils.file_operations import fetch_bytes, write_file_atomic
from app.utils.interval import IntervalFormatError, parse_interval_ms
from app.utils.logging_helpers import log_execution_end, sanitize_url_for_logging


logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class ScriptPhase(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    READY = "ready"
    EXECUTING = "executing"
    FAILED = "failed"


class ManagedScript(ABC):
    """
    Lifecycle of one externally supplied script artifact.

    The artifact file is only ever replaced by acquire(), through a temp file
    and an atomic rename, so a running process never sees a half-written
    script. Executions with identical arguments never overlap: a second call
    fails with AlreadyRunningError instead of queueing.
    """

    name = "script"
    artifact_name = "script.py"

    def __init__(
        self,
        registry: ScheduleRegistry,
        script_dir: Path | str,
        *,
        python_executable: str,
        timeout_sec: float = 300.0,
        validate_timeout_sec: float = 30.0,
        download_timeout_sec: float = 60.0,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._registry = registry
        self._job_id = f"{self.name}_update"
        self._target_path = Path(script_dir) / self.artifact_name
        self._python = python_executable
        self._timeout = timeout_sec
        self._validate_timeout = validate_timeout_sec
        self._download_timeout = download_timeout_sec
        self._headers = {"User-Agent": user_agent} if user_agent else None
        self._transport = transport
        self._acquire_lock = asyncio.Lock()
        self._running: set[tuple[str, ...]] = set()

        self.source_url: str | None = None
        self.last_execution_at: datetime | None = None
        self.last_error: str | None = None
        self.update_interval: str | None = None

        # An artifact left by a previous run is reused
        if self._target_path.is_file():
            self.artifact_path: Path | None = self._target_path
            self.phase = ScriptPhase.READY
        else:
            self.artifact_path = None
            self.phase = ScriptPhase.IDLE

    @property
    def is_running(self) -> bool:
        return bool(self._running)

    def has_artifact(self) -> bool:
        return self.artifact_path is not None and self.artifact_path.is_file()

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def acquire(self, source_url: str) -> Path:
        """
        Download the script and install it as the current artifact

        Args:
            source_url: HTTP(S) location of the script

        Returns:
            Path of the installed artifact

        Raises:
            AcquisitionError: On network failure, non-success status, empty
                payload or storage failure. The previous artifact stays usable.
        """
        async with self._acquire_lock:
            previous_phase = self.phase
            if not self.is_running:
                self.phase = ScriptPhase.DOWNLOADING

            safe_url = sanitize_url_for_logging(source_url)
            logger.info("Downloading %s script from %s", self.name, safe_url)

            installed = False
            try:
                try:
                    content = await fetch_bytes(
                        source_url,
                        timeout=self._download_timeout,
                        headers=self._headers,
                        transport=self._transport,
                    )
                except httpx.HTTPStatusError as exc:
                    self._acquire_failed(source_url, f"HTTP {exc.response.status_code}")
                except (httpx.HTTPError, httpx.InvalidURL) as exc:
                    self._acquire_failed(source_url, f"{type(exc).__name__}: {exc}")

                if not content.strip():
                    self._acquire_failed(source_url, "empty payload")

                try:
                    await write_file_atomic(self._target_path, content)
                except OSError as exc:
                    self._acquire_failed(source_url, f"storage error: {exc}")
                installed = True
            finally:
                if not installed and not self.is_running:
                    self.phase = previous_phase

            self.artifact_path = self._target_path
            self.source_url = source_url
            self.last_error = None
            if not self.is_running:
                self.phase = ScriptPhase.READY
            self._on_acquired()

            logger.info(
                "%s script downloaded (%s bytes) to %s",
                self.name.capitalize(),
                len(content),
                self._target_path,
            )
            return self._target_path

    def _acquire_failed(self, source_url: str, reason: str) -> None:
        error = AcquisitionError(sanitize_url_for_logging(source_url), reason)
        self.last_error = str(error)
        logger.error(self.last_error)
        raise error

    def _on_acquired(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, args: Sequence[str] = ()) -> str:
        """
        Run the artifact in a separate process and return its processed output

        Args:
            args: Command line arguments passed to the script

        Returns:
            Role-specific output (playlist document or resolved URL)

        Raises:
            AlreadyRunningError: If an execution with the same arguments is in progress
            ExecutionError: If the script is missing, fails, times out or prints nothing
        """
        key = tuple(str(arg) for arg in args)
        if key in self._running:
            logger.warning("%s script already running, rejecting overlapping execution", self.name)
            raise AlreadyRunningError(f"{self.name} script is already running")

        if not self.has_artifact():
            self.last_error = f"{self.name} script not downloaded"
            raise ExecutionError(self.last_error)

        self._running.add(key)
        self.phase = ScriptPhase.EXECUTING
        failed = True
        try:
            result = await self._run_process(key, self._timeout)
            output = await self._handle_output(result)
            failed = False
        except ExecutionError as exc:
            self.last_error = str(exc)
            logger.error(self.last_error)
            raise
        finally:
            self._running.discard(key)
            if not self._running:
                self.phase = ScriptPhase.FAILED if failed else ScriptPhase.READY

        self.last_execution_at = datetime.now(timezone.utc)
        self.last_error = None
        log_execution_end(logger, self.name, result.duration_seconds, len(result.stdout))
        await self._after_success(output)
        return output

    async def _run_process(self, args: tuple[str, ...], timeout: float) -> ExecutionResult:
        if not self.has_artifact():
            raise ScriptNotFoundError(self.name)

        cmd = [self._python, str(self.artifact_path), *args]
        started = time.monotonic()
        logger.debug("Running %s script: %s", self.name, " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.artifact_path.parent),
            )
        except OSError as exc:
            raise ExecutionError(f"Could not start {self.name} script: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ExecutionError(f"{self.name} script timed out after {timeout}s")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        result = ExecutionResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
            duration_seconds=time.monotonic() - started,
            args=args,
        )
        if result.exit_code != 0:
            tail = result.stderr.strip()[-_STDERR_TAIL_CHARS:]
            raise ExecutionError(
                f"{self.name} script exited with code {result.exit_code}"
                + (f": {tail}" if tail else "")
            )
        return result

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    @abstractmethod
    async def _handle_output(self, result: ExecutionResult) -> str:
        """Turn a successful run into the role-specific output"""

    async def _after_success(self, output: str) -> None:
        pass

    @abstractmethod
    async def validate(self) -> bool:
        """Check the installed artifact; sets last_error and returns False when unusable"""

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_recurring(self, interval_spec: str) -> bool:
        """
        Install a recurring update every interval_spec ("H:MM")

        Returns:
            True if scheduled, False if the interval is invalid (last_error is set)
        """
        try:
            interval_ms = parse_interval_ms(interval_spec)
        except IntervalFormatError as exc:
            self.last_error = str(exc)
            logger.error("Cannot schedule %s script: %s", self.name, exc)
            return False

        self._registry.schedule(self._job_id, self._scheduled_tick, interval_ms)
        self.update_interval = interval_spec.strip()
        logger.info("%s script update scheduled every %s", self.name.capitalize(), self.update_interval)
        return True

    def cancel_schedule(self) -> bool:
        """Cancel the recurring update. Returns whether a timer was removed."""
        cancelled = self._registry.cancel(self._job_id)
        self.update_interval = None
        return cancelled

    def _tick_should_skip(self) -> bool:
        return self.is_running or self._acquire_lock.locked()

    async def _scheduled_tick(self) -> None:
        """Background job body; never raises"""
        if self._tick_should_skip():
            logger.info("%s script busy, skipping scheduled update", self.name.capitalize())
            return

        logger.info("Scheduled %s script update triggered", self.name)
        try:
            await self._scheduled_update()
        except AlreadyRunningError:
            logger.info("%s script busy, skipping scheduled update", self.name.capitalize())
        except CatalogServiceError as e:
            logger.error(f"Scheduled {self.name} update failed: {e}")
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Exception in scheduled {self.name} update: {e}", exc_info=True)

    async def _scheduled_update(self) -> None:
        await self.execute()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """Flat, JSON-serializable snapshot of this script"""
        interval_ms = self._registry.get_interval_ms(self._job_id)
        next_run = self._registry.get_next_run_time(self._job_id)
        return {
            "name": self.name,
            "phase": self.phase.value,
            "is_running": self.is_running,
            "script_exists": self.has_artifact(),
            "script_url": sanitize_url_for_logging(self.source_url) or None,
            "last_execution": self.last_execution_at.isoformat() if self.last_execution_at else None,
            "last_error": self.last_error,
            "scheduled_updates": interval_ms is not None,
            "update_interval": self.update_interval if interval_ms is not None else None,
            "update_interval_ms": interval_ms,
            "next_run": next_run.isoformat() if next_run else None,
        }


OutputListener = Callable[[str], Awaitable[None]]


class PlaylistGeneratorScript(ManagedScript):
    """Script whose standard output is a complete M3U playlist."""

    name = "generator"
    artifact_name = "generator_script.py"
    output_name = "generated.m3u"

    def __init__(self, registry: ScheduleRegistry, script_dir: Path | str, **kwargs) -> None:
        super().__init__(registry, script_dir, **kwargs)
        self.output_path = Path(script_dir) / self.output_name
        self._m3u_content: str | None = None
        self._listeners: list[OutputListener] = []

    def add_output_listener(self, listener: OutputListener) -> None:
        """Register a coroutine called with every newly generated playlist"""
        self._listeners.append(listener)

    async def _handle_output(self, result: ExecutionResult) -> str:
        content = result.stdout
        if not content.strip():
            raise ExecutionError("generator script produced no playlist output")

        try:
            await write_file_atomic(self.output_path, content.encode("utf-8"))
        except OSError as exc:
            raise ExecutionError(f"Could not store generated playlist: {exc}") from exc

        self._m3u_content = content
        logger.info("Generated playlist stored at %s", self.output_path)
        return content

    async def _after_success(self, output: str) -> None:
        for listener in self._listeners:
            try:
                await listener(output)
            except CatalogServiceError as e:
                logger.warning(f"Playlist listener failed after generation: {e}")
            except Exception as e:
                logger.error(f"Exception in playlist listener: {e}", exc_info=True)

    def get_m3u_content(self) -> str | None:
        """Latest generated playlist, reloaded from disk after a restart"""
        if self._m3u_content is None and self.output_path.is_file():
            self._m3u_content = self.output_path.read_text(encoding="utf-8", errors="replace")
        return self._m3u_content

    async def validate(self) -> bool:
        """
        Check the artifact is syntactically valid Python without running it

        Raises:
            ScriptNotFoundError: If no artifact is installed
        """
        if not self.has_artifact():
            raise ScriptNotFoundError(self.name)

        source = self.artifact_path.read_bytes()
        try:
            await asyncio.to_thread(ast.parse, source, str(self.artifact_path))
        except (SyntaxError, ValueError) as exc:
            self.last_error = f"generator script is not valid Python: {exc}"
            logger.warning(self.last_error)
            return False

        logger.info("Generator script syntax check passed")
        return True

    def status(self) -> dict:
        payload = super().status()
        payload["m3u_exists"] = self.get_m3u_content() is not None
        return payload


RESOLVER_TEMPLATE = '''"""
Stream resolver template

Usage:
    python resolver_script.py --check
    python resolver_script.py --resolve <stream id or url>

--check prints the resolver version; --resolve prints the playable URL.
"""
import sys

RESOLVER_VERSION = "1.0.0"


def resolve(stream):
    # Replace with the logic that turns a stream reference into a playable URL
    return stream


def main(argv):
    if len(argv) >= 2 and argv[1] == "--check":
        print(RESOLVER_VERSION)
        return 0
    if len(argv) >= 3 and argv[1] == "--resolve":
        url = resolve(argv[2])
        if not url:
            return 1
        print(url)
        return 0
    print("usage: resolver_script.py --check | --resolve <stream>", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv))
'''


class StreamResolverScript(ManagedScript):
    """Script that turns one stream identifier into a playable URL."""

    name = "resolver"
    artifact_name = "resolver_script.py"

    def __init__(self, registry: ScheduleRegistry, script_dir: Path | str, **kwargs) -> None:
        super().__init__(registry, script_dir, **kwargs)
        self.resolver_version: str | None = None

    @staticmethod
    def resolve_args(stream_id: str) -> tuple[str, ...]:
        return ("--resolve", stream_id)

    async def _handle_output(self, result: ExecutionResult) -> str:
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        raise ExecutionError("resolver script returned no URL")

    def _on_acquired(self) -> None:
        self.clear_produced_cache()

    def clear_produced_cache(self) -> None:
        """Forget values reported by the current artifact (e.g. its version)"""
        self.resolver_version = None
        logger.info("Resolver script bookkeeping cleared")

    async def validate(self) -> bool:
        """
        Run the script's self-test (--check)

        Returns:
            True if the self-test exits cleanly

        Raises:
            ScriptNotFoundError: If no artifact is installed
        """
        if not self.has_artifact():
            raise ScriptNotFoundError(self.name)

        try:
            result = await self._run_process(("--check",), self._validate_timeout)
        except ExecutionError as exc:
            self.last_error = f"resolver health check failed: {exc}"
            logger.warning(self.last_error)
            return False

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        self.resolver_version = lines[0] if lines else None
        logger.info("Resolver health check passed (version: %s)", self.resolver_version or "unknown")
        return True

    async def create_template(self) -> Path:
        """Install a starter resolver script as the current artifact"""
        async with self._acquire_lock:
            try:
                await write_file_atomic(self._target_path, RESOLVER_TEMPLATE.encode("utf-8"))
            except OSError as exc:
                self.last_error = f"Could not write resolver template: {exc}"
                logger.error(self.last_error)
                raise AcquisitionError("resolver template", str(exc)) from exc

            self.artifact_path = self._target_path
            self.last_error = None
            if not self.is_running:
                self.phase = ScriptPhase.READY
            self.clear_produced_cache()

        logger.info("Resolver template created at %s", self._target_path)
        return self._target_path

    def _tick_should_skip(self) -> bool:
        return self._acquire_lock.locked()

    async def _scheduled_update(self) -> None:
        if not self.source_url:
            logger.warning("Resolver script has no source URL, nothing to update")
            return
        await self.acquire(self.source_url)
        await self.validate()

    def status(self) -> dict:
        payload = super().status()
        payload["resolver_version"] = self.resolver_version
        return payload
