"""Package installer — pip installs on demand for the detected interpreter.

Runs ``<interpreter> -m pip install <name>`` directly (no chart
instrumentation) and keeps the environment's installed-package cache in
sync. Progress is published through the environment's status channel.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Dict, Iterable, Optional

from cellrun.core.config import settings
from cellrun.services.execution.environment import EnvironmentState, run_process
from cellrun.services.execution.errors import EnvironmentNotReadyError
from cellrun.services.execution.models import ErrorKind, ExecutionResult

logger = logging.getLogger(__name__)

# Requirement specifiers such as "pandas", "scikit-learn>=1.3", "requests[socks]"
_VALID_REQUIREMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(\[[A-Za-z0-9,._-]+\])?([<>=!~]=?[A-Za-z0-9.*+!_-]+)?$")
_NAME_PART = re.compile(r"^[A-Za-z0-9._-]+")


def requirement_name(requirement: str) -> str:
    """The distribution name part of a requirement specifier."""
    match = _NAME_PART.match(requirement.strip())
    return match.group(0) if match else requirement.strip()


class PackageInstaller:
    """Installs packages into the interpreter held by *env*."""

    def __init__(self, env: EnvironmentState, *, timeout: Optional[float] = None):
        self.env = env
        self.timeout = timeout or settings.PIP_INSTALL_TIMEOUT

    async def install(self, package_name: str) -> ExecutionResult:
        """Install *package_name*. Never raises; failures come back as results."""
        start = time.monotonic()
        try:
            interpreter = self.env.require_ready()
        except EnvironmentNotReadyError as exc:
            return ExecutionResult.failure(ErrorKind.ENVIRONMENT_NOT_READY, str(exc))

        package_name = package_name.strip()
        if not _VALID_REQUIREMENT.match(package_name):
            return ExecutionResult.failure(
                ErrorKind.INVALID_REQUEST, f"Invalid package name: {package_name!r}"
            )

        self.env.set_status(f"Searching for {package_name}...")
        logger.info("Installing package: %s", package_name)
        self.env.set_status(f"Installing {package_name}...")

        try:
            code, stdout, stderr = await run_process(
                [interpreter, "-m", "pip", "install", package_name],
                timeout=self.timeout,
                env=self.env.environment(),
            )
        except asyncio.TimeoutError:
            self.env.set_status(f"Install failed: {package_name}")
            logger.warning("pip install %s timed out after %ss", package_name, self.timeout)
            return ExecutionResult(
                success=False,
                stderr=f"pip install timed out after {self.timeout}s",
                elapsed_seconds=round(time.monotonic() - start, 3),
                timed_out=True,
                error_kind=ErrorKind.TIMEOUT,
                error=f"Timed out after {self.timeout}s",
            )
        except OSError as exc:
            self.env.set_status(f"Install error: {exc}")
            logger.warning("Error installing %s: %s", package_name, exc)
            return ExecutionResult.failure(
                ErrorKind.SPAWN_FAILURE,
                str(exc),
                elapsed_seconds=round(time.monotonic() - start, 3),
            )

        elapsed = round(time.monotonic() - start, 3)
        if code == 0:
            self.env.mark_installed(requirement_name(package_name))
            self.env.set_status(f"{package_name} installed!")
            logger.info("Installed %s", package_name)
            return ExecutionResult(success=True, stdout=stdout, stderr=stderr, exit_code=0, elapsed_seconds=elapsed)

        self.env.set_status(f"Install failed: {package_name}")
        logger.warning("pip install %s failed: %s", package_name, stderr.strip())
        return ExecutionResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=code,
            elapsed_seconds=elapsed,
            error_kind=ErrorKind.NON_ZERO_EXIT,
            error=f"pip exited with code {code}",
        )

    async def install_missing(self, packages: Iterable[str]) -> Dict[str, ExecutionResult]:
        """Install the packages absent from the cache, one at a time."""
        results: Dict[str, ExecutionResult] = {}
        missing = [p for p in packages if not self.env.is_installed(requirement_name(p))]
        if not missing:
            logger.info("All requested packages already installed")
            return results
        logger.info("Installing %d missing packages: %s", len(missing), missing)
        for pkg in missing:
            results[pkg] = await self.install(pkg)
        return results
