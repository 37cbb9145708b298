"""Python environment — interpreter discovery and installed-package cache.

``InterpreterLocator.detect()`` probes an ordered list of candidate
interpreters and returns an :class:`EnvironmentState`. The state object is
owned by the host (or a :class:`~cellrun.services.execution.executor.CellExecutor`)
and injected into the engine, the SQL bridge and the installer, so tests can
substitute a fake one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from cellrun.core.config import settings
from cellrun.services.execution.errors import EnvironmentNotReadyError

logger = logging.getLogger(__name__)

StatusListener = Callable[[str], None]

# Host variables some platforms need for process creation
_PASSTHROUGH_ENV_KEYS = ("SYSTEMROOT", "TEMP", "TMP", "HOME")


def canonical_name(name: str) -> str:
    """Normalize a distribution name the way pip compares them (PEP 503)."""
    return re.sub(r"[-_.]+", "-", name.strip()).lower()


def parse_freeze(output: str) -> set[str]:
    """Parse ``pip list --format=freeze`` output into canonical package names."""
    names: set[str] = set()
    for line in output.splitlines():
        line = line.strip()
        if "==" not in line or line.startswith("#"):
            continue
        name = line.split("==", 1)[0].strip()
        if name:
            names.add(canonical_name(name))
    return names


@dataclass
class EnvironmentState:
    """Interpreter readiness plus the cached installed-package set."""
    interpreter_path: Optional[str] = None
    ready: bool = False
    has_pip: bool = False
    version: str = ""
    installed_packages: set[str] = field(default_factory=set)
    status_message: str = ""
    curated_path: str = field(default_factory=lambda: settings.CURATED_PATH)
    _listeners: List[StatusListener] = field(default_factory=list, repr=False)

    @classmethod
    def ready_at(cls, interpreter_path: str, *, has_pip: bool = False) -> "EnvironmentState":
        """A ready state bound to a known interpreter (no probing)."""
        return cls(
            interpreter_path=interpreter_path,
            ready=True,
            has_pip=has_pip,
            status_message=f"Python ready: {interpreter_path}",
        )

    # ── Status channel ───────────────────────────────────────

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_status(self, message: str) -> None:
        """Update the human-readable status and notify listeners."""
        self.status_message = message
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                logger.debug("status listener error: %s", exc)

    # ── Readiness ────────────────────────────────────────────

    def require_ready(self) -> str:
        """Return the interpreter path or raise :class:`EnvironmentNotReadyError`."""
        if not self.ready or not self.interpreter_path:
            raise EnvironmentNotReadyError(self.status_message)
        return self.interpreter_path

    def is_installed(self, package: str) -> bool:
        return canonical_name(package) in self.installed_packages

    def mark_installed(self, package: str) -> None:
        self.installed_packages.add(canonical_name(package))

    def environment(self) -> Dict[str, str]:
        """Curated process environment for every spawned interpreter."""
        env = {
            "PYTHONIOENCODING": "utf-8",
            "PYTHONUNBUFFERED": "1",
            "PATH": self.curated_path,
        }
        for key in _PASSTHROUGH_ENV_KEYS:
            if key in os.environ:
                env[key] = os.environ[key]
        return env


async def run_process(
    args: List[str],
    *,
    timeout: float,
    env: Optional[Dict[str, str]] = None,
) -> Tuple[int, str, str]:
    """Run *args* to completion and return ``(returncode, stdout, stderr)``.

    The process is killed on timeout and :class:`asyncio.TimeoutError` is
    re-raised. ``OSError`` from the spawn propagates to the caller.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class InterpreterLocator:
    """Finds a usable Python 3 interpreter and its pip."""

    def __init__(
        self,
        search_paths: Optional[Iterable[str]] = None,
        *,
        probe_timeout: Optional[float] = None,
    ):
        self.search_paths = list(search_paths) if search_paths is not None else self.default_search_paths()
        self.probe_timeout = probe_timeout or settings.PROBE_TIMEOUT

    @staticmethod
    def default_search_paths() -> List[str]:
        """Configured paths, then the running interpreter and ``python3`` on PATH."""
        paths = list(settings.PYTHON_SEARCH_PATHS)
        for extra in (sys.executable, shutil.which("python3")):
            if extra and extra not in paths:
                paths.append(extra)
        return paths

    async def detect(self, state: Optional[EnvironmentState] = None) -> EnvironmentState:
        """Probe candidates in order; the first working one wins.

        Updates and returns *state* (a fresh one when omitted). Failure at
        every candidate leaves the state not ready with an explanatory
        status message.
        """
        state = state if state is not None else EnvironmentState()
        state.set_status("Detecting Python...")

        for path in self.search_paths:
            if not os.path.isfile(path):
                continue
            try:
                code, out, err = await run_process(
                    [path, "--version"], timeout=self.probe_timeout, env=state.environment()
                )
            except (OSError, asyncio.TimeoutError) as exc:
                logger.debug("Interpreter probe failed for %s: %s", path, exc)
                continue
            if code != 0:
                continue

            # Python 2 printed its version to stderr
            version = (out.strip() or err.strip())
            state.interpreter_path = path
            state.version = version
            state.ready = True
            state.set_status(f"Python ready: {version}")
            logger.info("Python found at: %s (%s)", path, version)

            state.has_pip = await self._probe_pip(state)
            if state.has_pip:
                await self.refresh_packages(state)
            return state

        state.ready = False
        state.interpreter_path = None
        state.set_status("Python3 not found. Install via Homebrew or python.org")
        logger.warning("No usable Python interpreter in %d candidate path(s)", len(self.search_paths))
        return state

    async def _probe_pip(self, state: EnvironmentState) -> bool:
        try:
            code, _, _ = await run_process(
                [state.interpreter_path, "-m", "pip", "--version"],
                timeout=self.probe_timeout,
                env=state.environment(),
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("pip probe failed: %s", exc)
            return False
        if code == 0:
            logger.info("pip available")
        return code == 0

    async def refresh_packages(self, state: EnvironmentState) -> set[str]:
        """Reload the installed-package cache from ``pip list --format=freeze``."""
        if not state.ready:
            return state.installed_packages
        try:
            code, out, err = await run_process(
                [state.interpreter_path, "-m", "pip", "list", "--format=freeze"],
                timeout=self.probe_timeout * 4,
                env=state.environment(),
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to list packages: %s", exc)
            return state.installed_packages
        if code == 0:
            state.installed_packages = parse_freeze(out)
            logger.info("Loaded %d packages", len(state.installed_packages))
        else:
            logger.warning("pip list failed: %s", err.strip())
        return state.installed_packages
