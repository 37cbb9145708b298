"""Request and result types shared by the engine, the SQL bridge and the installer."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cellrun.services.execution.errors import UnsupportedDialectError
from cellrun.services.execution.instrumentor import strip_markers


# ── Enums ─────────────────────────────────────────────────────


class CellDialect(str, enum.Enum):
    PYTHON = "python"
    SQL = "sql"


class SqlDialect(str, enum.Enum):
    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MYSQL = "mysql"

    @classmethod
    def parse(cls, value: "str | SqlDialect") -> "SqlDialect":
        """Resolve a dialect tag, accepting a few common aliases."""
        if isinstance(value, SqlDialect):
            return value
        tag = str(value).strip().lower()
        tag = _DIALECT_ALIASES.get(tag, tag)
        try:
            return cls(tag)
        except ValueError:
            raise UnsupportedDialectError(str(value)) from None


_DIALECT_ALIASES: Dict[str, str] = {
    "sqlite3": "sqlite",
    "postgresql": "postgres",
    "psql": "postgres",
    "mariadb": "mysql",
}


class ErrorKind(str, enum.Enum):
    ENVIRONMENT_NOT_READY = "environment_not_ready"
    SPAWN_FAILURE = "spawn_failure"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    CANCELLED = "cancelled"
    INVALID_REQUEST = "invalid_request"


# ── Execution ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionRequest:
    """One cell to run. ``timeout`` falls back to the configured default."""
    code: str
    dialect: CellDialect = CellDialect.PYTHON
    timeout: Optional[float] = None
    connection_name: Optional[str] = None


@dataclass
class ExecutionResult:
    """Result of a single run.

    A failed result may still carry partial ``stdout`` and ``artifacts``
    captured before the failure.
    """
    success: bool
    stdout: str = ""
    stderr: str = ""
    artifacts: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    exit_code: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    workspace: Optional[str] = None

    @property
    def clean_output(self) -> str:
        """stdout with every chart sentinel line removed."""
        return strip_markers(self.stdout)

    @property
    def has_output(self) -> bool:
        return bool(self.clean_output or self.artifacts or self.stderr)

    @property
    def formatted_time(self) -> str:
        return f"{self.elapsed_seconds:.2f}s"

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **kwargs: Any) -> "ExecutionResult":
        """Build a failed result whose stderr carries *message*."""
        kwargs.setdefault("stderr", message)
        return cls(success=False, error_kind=kind, error=message, **kwargs)


# ── SQL ───────────────────────────────────────────────────────


class ConnectionDescriptor(BaseModel):
    """A registered data source.

    ``connection_string`` is a bare file path for SQLite and
    ``key=value;key=value`` pairs for client/server databases.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    dialect: SqlDialect
    connection_string: str

    @field_validator("dialect", mode="before")
    @classmethod
    def _parse_dialect(cls, v):
        return SqlDialect.parse(v)


class SqlEnvelope(BaseModel):
    """The single JSON object a generated driver script prints."""

    columns: Optional[List[str]] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    rowcount: Optional[int] = None
    message: Optional[str] = None


@dataclass
class SqlResult:
    """Exactly one of tabular data, ``message`` or ``error`` is populated."""
    columns: Optional[List[str]] = None
    rows: Optional[List[Dict[str, Any]]] = None
    row_count: int = 0
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def has_table(self) -> bool:
        return self.columns is not None and self.rows is not None

    @classmethod
    def from_envelope(cls, envelope: SqlEnvelope) -> "SqlResult":
        if envelope.columns is not None:
            rows = envelope.rows
            row_count = envelope.rowcount if envelope.rowcount is not None else len(rows)
            return cls(columns=list(envelope.columns), rows=rows, row_count=row_count)
        return cls(message=envelope.message or "OK")
