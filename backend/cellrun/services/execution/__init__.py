"""Code execution module — runs notebook script and query cells.

Provides interpreter discovery, chart-capture instrumentation, a
subprocess-based execution engine with timeout and cancel support, a SQL
bridge for SQLite/PostgreSQL/MySQL connections and an on-demand package
installer.
"""

from cellrun.services.execution.environment import EnvironmentState, InterpreterLocator
from cellrun.services.execution.engine import ExecutionEngine
from cellrun.services.execution.errors import (
    CellRunError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    EnvironmentNotReadyError,
    UnsupportedDialectError,
)
from cellrun.services.execution.executor import CellExecutor
from cellrun.services.execution.installer import PackageInstaller
from cellrun.services.execution.models import (
    CellDialect,
    ConnectionDescriptor,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    SqlDialect,
    SqlResult,
)
from cellrun.services.execution.sql_bridge import ConnectionRegistry, SqlBridge
from cellrun.services.execution.workspace import WorkspaceRegistry

__all__ = [
    "CellDialect",
    "CellExecutor",
    "CellRunError",
    "ConnectionDescriptor",
    "ConnectionNotFoundError",
    "ConnectionRegistry",
    "DuplicateConnectionError",
    "EnvironmentNotReadyError",
    "EnvironmentState",
    "ErrorKind",
    "ExecutionEngine",
    "ExecutionRequest",
    "ExecutionResult",
    "InterpreterLocator",
    "PackageInstaller",
    "SqlBridge",
    "SqlDialect",
    "SqlResult",
    "UnsupportedDialectError",
    "WorkspaceRegistry",
]
