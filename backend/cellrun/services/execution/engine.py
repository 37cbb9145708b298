"""Execution engine — subprocess-based Python execution with timeout and cancel.

Runs instrumented cell code in a fresh interpreter process:

- one scoped workspace per run (script + emitted charts)
- ``<interpreter> -u script.py`` with a curated environment
- a watchdog racing natural exit against the timeout
- two independent stream drains accumulating stdout / stderr as it arrives
- chart artifacts from sentinel lines, with a directory scan as fallback
- deferred workspace deletion so callers can read artifact bytes first

Every failure is returned as a typed :class:`ExecutionResult`; nothing
raises past :meth:`ExecutionEngine.execute`.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
import time
import uuid
from typing import List, Optional

from cellrun.core.config import settings
from cellrun.services.execution.environment import EnvironmentState
from cellrun.services.execution.errors import EnvironmentNotReadyError
from cellrun.services.execution.instrumentor import marker_paths, wrap
from cellrun.services.execution.models import ErrorKind, ExecutionResult
from cellrun.services.execution.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)

SCRIPT_NAME = "script.py"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".svg")

_CHUNK_SIZE = 64 * 1024
_DRAIN_GRACE_SECONDS = 2.0
_TRUNCATION_NOTICE = "\n... [output truncated]"


class _StreamBuffer:
    """Accumulates decoded text from one pipe, capped at *limit* characters."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self._parts: List[str] = []
        self._size = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes, final: bool = False) -> None:
        text = self._decoder.decode(data, final=final)
        if not text:
            return
        room = self.limit - self._size
        if room <= 0:
            self.truncated = True
            return
        if len(text) > room:
            text = text[:room]
            self.truncated = True
        self._parts.append(text)
        self._size += len(text)

    def text(self) -> str:
        value = "".join(self._parts)
        return value + _TRUNCATION_NOTICE if self.truncated else value


async def _drain(stream: Optional[asyncio.StreamReader], buffer: _StreamBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            buffer.feed(b"", final=True)
            return
        buffer.feed(chunk)


def _natural_key(path: str) -> list:
    return [int(tok) if tok.isdigit() else tok for tok in re.split(r"(\d+)", os.path.basename(path))]


def collect_artifacts(workspace: str, stdout: str) -> List[str]:
    """Sentinel-referenced images first, then any other images in *workspace*."""
    artifacts = [p for p in marker_paths(stdout) if os.path.isfile(p)]
    try:
        names = os.listdir(workspace)
    except OSError:
        return artifacts
    scanned = [
        os.path.join(workspace, name)
        for name in names
        if name.lower().endswith(IMAGE_EXTENSIONS)
    ]
    for path in sorted(scanned, key=_natural_key):
        if path not in artifacts and os.path.isfile(path):
            artifacts.append(path)
    return artifacts


def _kill(process: asyncio.subprocess.Process) -> None:
    """Forcibly terminate *process* and, on POSIX, its whole process group."""
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class ExecutionEngine:
    """Runs one cell at a time; create several instances for concurrent runs."""

    def __init__(
        self,
        env: EnvironmentState,
        workspaces: Optional[WorkspaceRegistry] = None,
        *,
        default_timeout: Optional[float] = None,
        max_output_size: Optional[int] = None,
        chart_dpi: Optional[int] = None,
    ):
        self.env = env
        self.workspaces = workspaces or WorkspaceRegistry()
        self.default_timeout = default_timeout or settings.EXECUTION_TIMEOUT
        self.max_output_size = max_output_size or settings.MAX_OUTPUT_SIZE
        self.chart_dpi = chart_dpi or settings.CHART_DPI
        self._lock = asyncio.Lock()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._running = False
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Kill the in-flight process, if any, and clear the running flag.

        A cancel that lands while the process is still being spawned is
        remembered and applied as soon as the process exists.
        """
        if not self._running:
            return
        self._cancel_requested = True
        process = self._process
        if process is not None and process.returncode is None:
            logger.info("Cancelling execution (pid=%s)", process.pid)
            _kill(process)
        else:
            logger.info("Cancelling execution before spawn")
        self._running = False

    async def execute(self, code: str, timeout: Optional[float] = None) -> ExecutionResult:
        """Run *code* and return the captured result.

        Executions on one instance are serialized.
        """
        async with self._lock:
            return await self._execute(code, timeout)

    @staticmethod
    def _cancelled_before_spawn(start: float, workspace: Optional[str]) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            elapsed_seconds=round(time.monotonic() - start, 3),
            cancelled=True,
            error_kind=ErrorKind.CANCELLED,
            error="Execution cancelled",
            workspace=workspace,
        )

    async def _execute(self, code: str, timeout: Optional[float]) -> ExecutionResult:
        job_id = uuid.uuid4().hex[:8]
        start = time.monotonic()

        try:
            interpreter = self.env.require_ready()
        except EnvironmentNotReadyError as exc:
            logger.warning("[%s] Rejected: %s", job_id, exc)
            return ExecutionResult.failure(
                ErrorKind.ENVIRONMENT_NOT_READY,
                f"{exc}. Run interpreter detection first.",
            )

        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            return ExecutionResult.failure(ErrorKind.INVALID_REQUEST, f"Invalid timeout: {timeout}")

        self._running = True
        self._cancel_requested = False
        workspace: Optional[str] = None
        process: Optional[asyncio.subprocess.Process] = None
        logger.info("[%s] Executing code (%d chars, timeout=%ss)", job_id, len(code), timeout)

        try:
            workspace = self.workspaces.create()
            script_path = os.path.join(workspace, SCRIPT_NAME)
            with open(script_path, "w", encoding="utf-8") as f:
                f.write(wrap(code, workspace, dpi=self.chart_dpi))

            if self._cancel_requested:
                return self._cancelled_before_spawn(start, workspace)

            try:
                process = await asyncio.create_subprocess_exec(
                    interpreter, "-u", script_path,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=workspace,
                    env=self.env.environment(),
                    start_new_session=(os.name == "posix"),
                )
            except OSError as exc:
                logger.error("[%s] Spawn failed: %s", job_id, exc)
                return ExecutionResult.failure(
                    ErrorKind.SPAWN_FAILURE,
                    f"Failed to start Python: {exc}",
                    elapsed_seconds=round(time.monotonic() - start, 3),
                    workspace=workspace,
                )
            self._process = process
            # cancel() ran while the spawn was awaited
            if self._cancel_requested:
                logger.info("[%s] Cancelled during spawn - killing process", job_id)
                _kill(process)

            stdout_buf = _StreamBuffer(self.max_output_size)
            stderr_buf = _StreamBuffer(self.max_output_size)
            drains = [
                asyncio.create_task(_drain(process.stdout, stdout_buf)),
                asyncio.create_task(_drain(process.stderr, stderr_buf)),
            ]

            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("[%s] Timeout after %ss - killing process", job_id, timeout)
                _kill(process)
                await process.wait()

            # Grandchildren may keep the pipes open; don't wait on them forever.
            _, still_draining = await asyncio.wait(drains, timeout=_DRAIN_GRACE_SECONDS)
            for task in still_draining:
                task.cancel()

            stdout = stdout_buf.text()
            stderr = stderr_buf.text()
            artifacts = collect_artifacts(workspace, stdout)
            elapsed = round(time.monotonic() - start, 3)
            exit_code = process.returncode

            result = ExecutionResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                artifacts=artifacts,
                elapsed_seconds=elapsed,
                exit_code=exit_code,
                workspace=workspace,
            )
            if timed_out:
                result.timed_out = True
                result.error_kind = ErrorKind.TIMEOUT
                result.error = f"Timed out after {timeout}s"
                result.stderr = (stderr + f"\nExecution timed out after {timeout}s").lstrip("\n")
            elif self._cancel_requested:
                result.cancelled = True
                result.error_kind = ErrorKind.CANCELLED
                result.error = "Execution cancelled"
            elif exit_code != 0:
                result.error_kind = ErrorKind.NON_ZERO_EXIT
                result.error = f"Process exited with code {exit_code}"
            else:
                result.success = True

            logger.info(
                "[%s] Execution complete: exit=%s, timeout=%s, cancelled=%s, elapsed=%ss, charts=%d",
                job_id, exit_code, result.timed_out, result.cancelled, elapsed, len(artifacts),
            )
            return result

        except asyncio.CancelledError:
            if process is not None:
                _kill(process)
            raise
        except OSError as exc:
            logger.error("[%s] Execution failed: %s", job_id, exc)
            return ExecutionResult.failure(
                ErrorKind.SPAWN_FAILURE,
                str(exc),
                elapsed_seconds=round(time.monotonic() - start, 3),
                workspace=workspace,
            )
        finally:
            self._running = False
            self._process = None
            if workspace is not None:
                self.workspaces.release(workspace)
