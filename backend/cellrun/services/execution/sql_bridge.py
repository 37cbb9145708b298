"""SQL bridge — runs queries through generated Python driver code.

Each query is rendered into a small driver script for the connection's
dialect, executed by a *fresh* :class:`ExecutionEngine` with a short
timeout, and the single JSON envelope it prints is decoded into a
:class:`SqlResult`::

    {"columns": [...], "rows": [{...}, ...], "rowcount": N}
    {"message": "Query OK, N rows affected"}

Known limitation: the query is interpolated into a triple-quoted Python
string with only ``"`` escaped. This is not injection-safe; queries are not
parameterized.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from cellrun.core.config import settings
from cellrun.services.execution.engine import ExecutionEngine
from cellrun.services.execution.environment import EnvironmentState
from cellrun.services.execution.errors import (
    ConnectionNotFoundError,
    DuplicateConnectionError,
    EnvironmentNotReadyError,
)
from cellrun.services.execution.models import (
    ConnectionDescriptor,
    SqlDialect,
    SqlEnvelope,
    SqlResult,
)
from cellrun.services.execution.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], ExecutionEngine]


# ── Connection registry ───────────────────────────────────────


class ConnectionRegistry:
    """Name-keyed connection descriptors, in registration order."""

    def __init__(self):
        self._connections: Dict[str, ConnectionDescriptor] = {}

    def register(self, descriptor: ConnectionDescriptor, *, replace: bool = False) -> ConnectionDescriptor:
        """Add *descriptor*. Existing names are rejected unless *replace* is set."""
        if descriptor.name in self._connections and not replace:
            raise DuplicateConnectionError(descriptor.name)
        self._connections[descriptor.name] = descriptor
        logger.info("%s connection added: %s", descriptor.dialect.value, descriptor.name)
        return descriptor

    def add(self, name: str, dialect: str, connection_string: str, *, replace: bool = False) -> ConnectionDescriptor:
        return self.register(
            ConnectionDescriptor(
                name=name,
                dialect=SqlDialect.parse(dialect),
                connection_string=connection_string,
            ),
            replace=replace,
        )

    def unregister(self, name: str) -> bool:
        return self._connections.pop(name, None) is not None

    def get(self, name: str) -> ConnectionDescriptor:
        try:
            return self._connections[name]
        except KeyError:
            raise ConnectionNotFoundError(name) from None

    def resolve(self, name: Optional[str] = None) -> ConnectionDescriptor:
        """The named connection, or the first registered one when *name* is None."""
        if name is not None:
            return self.get(name)
        if not self._connections:
            raise ConnectionNotFoundError("<default>")
        return next(iter(self._connections.values()))

    @property
    def names(self) -> List[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, name: object) -> bool:
        return name in self._connections


# ── Driver code generation ────────────────────────────────────

_ENVELOPE_TAIL = '''\
if cursor.description:
    columns = [d[0] for d in cursor.description]
    rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
    print(json.dumps({"columns": columns, "rows": rows, "rowcount": len(rows)}, default=str))
else:
    print(json.dumps({"message": "Query OK, %d rows affected" % max(cursor.rowcount, 0)}))

conn.commit()
conn.close()
'''


def escape_query(query: str) -> str:
    """Escape double quotes for embedding in a triple-quoted string. Not injection-safe."""
    return query.replace('"', '\\"')


def parse_connection_string(connection_string: str) -> Dict[str, object]:
    """Parse ``key=value;key=value`` into keyword arguments.

    Entries without ``=`` are skipped; ``;`` and ``=`` cannot be escaped.
    A purely numeric ``port`` becomes an int.
    """
    kwargs: Dict[str, object] = {}
    for part in connection_string.split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        kwargs[key] = int(value) if key == "port" and value.isdigit() else value
    return kwargs


def _render_kwargs(kwargs: Dict[str, object]) -> str:
    return ", ".join(f"{key}={value!r}" for key, value in kwargs.items() if key.isidentifier())


def build_driver_code(query: str, descriptor: ConnectionDescriptor) -> str:
    """Render the driver script for *query* against *descriptor*."""
    sql = escape_query(query)

    if descriptor.dialect is SqlDialect.SQLITE:
        head = (
            "import sqlite3\n"
            "import json\n\n"
            f"conn = sqlite3.connect({descriptor.connection_string!r})\n"
            "cursor = conn.cursor()\n"
            f'cursor.execute("""{sql}""")\n\n'
        )
    elif descriptor.dialect is SqlDialect.POSTGRES:
        kwargs = parse_connection_string(descriptor.connection_string)
        if "database" in kwargs and "dbname" not in kwargs:
            kwargs["dbname"] = kwargs.pop("database")
        head = (
            "import psycopg2\n"
            "import json\n\n"
            f"conn = psycopg2.connect({_render_kwargs(kwargs)})\n"
            "cursor = conn.cursor()\n"
            f'cursor.execute("""{sql}""")\n\n'
        )
    elif descriptor.dialect is SqlDialect.MYSQL:
        kwargs = parse_connection_string(descriptor.connection_string)
        head = (
            "import mysql.connector\n"
            "import json\n\n"
            f"conn = mysql.connector.connect({_render_kwargs(kwargs)})\n"
            "cursor = conn.cursor()\n"
            f'cursor.execute("""{sql}""")\n\n'
        )
    else:  # pragma: no cover - SqlDialect is closed
        return f"print({('Unsupported database type: ' + str(descriptor.dialect))!r})\n"

    return head + _ENVELOPE_TAIL


# ── Envelope parsing ──────────────────────────────────────────


def find_envelope(output: str) -> Optional[SqlEnvelope]:
    """Decode the first well-formed JSON object in *output*."""
    decoder = json.JSONDecoder()
    idx = output.find("{")
    while idx != -1:
        try:
            data, _ = decoder.raw_decode(output, idx)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            try:
                return SqlEnvelope.model_validate(data)
            except ValidationError as exc:
                logger.debug("Ignoring JSON object that is not an envelope: %s", exc)
        idx = output.find("{", idx + 1)
    return None


def parse_sql_output(output: str) -> SqlResult:
    """Turn cleaned driver output into a :class:`SqlResult`."""
    envelope = find_envelope(output)
    if envelope is not None:
        return SqlResult.from_envelope(envelope)
    text = output.strip()
    if text:
        return SqlResult(message=text)
    return SqlResult(error="Failed to parse result: no output")


# ── Bridge ────────────────────────────────────────────────────


class SqlBridge:
    """Executes SQL cells against registered connections."""

    def __init__(
        self,
        env: EnvironmentState,
        connections: Optional[ConnectionRegistry] = None,
        *,
        workspaces: Optional[WorkspaceRegistry] = None,
        timeout: Optional[float] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self.env = env
        self.connections = connections if connections is not None else ConnectionRegistry()
        self.workspaces = workspaces
        self.timeout = timeout or settings.SQL_TIMEOUT
        self._engine_factory = engine_factory or self._new_engine

    def _new_engine(self) -> ExecutionEngine:
        return ExecutionEngine(self.env, self.workspaces)

    async def execute(self, query: str, connection_name: Optional[str] = None) -> SqlResult:
        """Run *query* on the named (or default) connection. Never raises."""
        try:
            self.env.require_ready()
        except EnvironmentNotReadyError as exc:
            return SqlResult(error=str(exc))

        try:
            descriptor = self.connections.resolve(connection_name)
        except ConnectionNotFoundError as exc:
            if connection_name is None:
                return SqlResult(error="No database connection. Add one first.")
            return SqlResult(error=str(exc))

        if not query.strip():
            return SqlResult(error="Empty query")

        code = build_driver_code(query, descriptor)
        engine = self._engine_factory()
        result = await engine.execute(code, timeout=self.timeout)

        if not result.success:
            logger.info("Query on %s failed: %s", descriptor.name, result.error)
            return SqlResult(error=result.stderr.strip() or result.error or "Query failed")

        return parse_sql_output(result.clean_output)
