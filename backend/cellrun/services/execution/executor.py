"""Executor — orchestrates environment detection, cell dispatch and installs.

Ties together interpreter detection → script execution / SQL bridge →
package installs behind one object the host application owns::

    executor = CellExecutor()
    await executor.initialize()
    executor.connections.add("local", "sqlite", "/tmp/data.db")
    result = await executor.run(ExecutionRequest(code="SELECT 1", dialect=CellDialect.SQL))
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from cellrun.services.execution.engine import ExecutionEngine
from cellrun.services.execution.environment import EnvironmentState, InterpreterLocator
from cellrun.services.execution.installer import PackageInstaller
from cellrun.services.execution.models import (
    CellDialect,
    ExecutionRequest,
    ExecutionResult,
    SqlResult,
)
from cellrun.services.execution.sql_bridge import ConnectionRegistry, SqlBridge
from cellrun.services.execution.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)

CellResult = Union[ExecutionResult, SqlResult]


class CellExecutor:
    """Owns one environment, workspace registry and connection registry."""

    def __init__(
        self,
        env: Optional[EnvironmentState] = None,
        *,
        locator: Optional[InterpreterLocator] = None,
        workspaces: Optional[WorkspaceRegistry] = None,
        connections: Optional[ConnectionRegistry] = None,
    ):
        self.env = env if env is not None else EnvironmentState()
        self.locator = locator or InterpreterLocator()
        self.workspaces = workspaces or WorkspaceRegistry()
        self.connections = connections if connections is not None else ConnectionRegistry()
        self.sql = SqlBridge(self.env, self.connections, workspaces=self.workspaces)
        self.installer = PackageInstaller(self.env)
        self._engines: set[ExecutionEngine] = set()
        self._detected = self.env.ready

    async def initialize(self, *, refresh: bool = False) -> EnvironmentState:
        """Detect the interpreter once; later calls reuse the cached state."""
        if self._detected and not refresh:
            return self.env
        await self.locator.detect(self.env)
        self._detected = True
        return self.env

    async def run(self, request: ExecutionRequest) -> CellResult:
        """Dispatch *request* by dialect."""
        if request.dialect is CellDialect.SQL:
            return await self.run_sql(request.code, request.connection_name)
        return await self.run_python(request.code, request.timeout)

    async def run_python(self, code: str, timeout: Optional[float] = None) -> ExecutionResult:
        """Run a script cell on a fresh engine so cells can run concurrently."""
        engine = ExecutionEngine(self.env, self.workspaces)
        self._engines.add(engine)
        try:
            return await engine.execute(code, timeout=timeout)
        finally:
            self._engines.discard(engine)

    async def run_sql(self, query: str, connection_name: Optional[str] = None) -> SqlResult:
        return await self.sql.execute(query, connection_name)

    async def install(self, package_name: str) -> ExecutionResult:
        return await self.installer.install(package_name)

    def cancel_all(self) -> int:
        """Cancel every running script cell. Returns how many were running."""
        running = [e for e in self._engines if e.is_running]
        for engine in running:
            engine.cancel()
        return len(running)

    async def shutdown(self) -> None:
        """Cancel running cells and delete every pending workspace now."""
        cancelled = self.cancel_all()
        flushed = await self.workspaces.flush()
        logger.info("Executor shut down (cancelled=%d, workspaces flushed=%d)", cancelled, flushed)
