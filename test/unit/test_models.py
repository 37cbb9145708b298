"""
Unit tests for backend/cellrun/services/execution/models.py
Tests: ExecutionResult derived properties, dialect parsing, connection
descriptor validation, SqlResult construction from envelopes
"""

import os
import sys

import pytest
from pydantic import ValidationError

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "backend"))
sys.path.insert(0, BACKEND_DIR)

from cellrun.services.execution.errors import UnsupportedDialectError
from cellrun.services.execution.models import (
    CellDialect,
    ConnectionDescriptor,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    SqlDialect,
    SqlEnvelope,
    SqlResult,
)


class TestExecutionResult:
    def test_clean_output_strips_markers(self):
        result = ExecutionResult(
            success=True,
            stdout="before\n[CELLRUN_CHART:/w/chart_1.png]\nafter\n",
        )
        assert result.clean_output == "before\nafter"

    def test_has_output_false_when_empty(self):
        assert ExecutionResult(success=True).has_output is False

    def test_has_output_from_artifacts_only(self):
        result = ExecutionResult(success=True, stdout="[CELLRUN_CHART:/w/c.png]\n", artifacts=["/w/c.png"])
        assert result.clean_output == ""
        assert result.has_output is True

    def test_has_output_from_stderr(self):
        assert ExecutionResult(success=False, stderr="boom").has_output is True

    def test_formatted_time(self):
        assert ExecutionResult(success=True, elapsed_seconds=1.234).formatted_time == "1.23s"

    def test_failure_helper(self):
        result = ExecutionResult.failure(ErrorKind.SPAWN_FAILURE, "no such file")
        assert result.success is False
        assert result.error_kind is ErrorKind.SPAWN_FAILURE
        assert result.error == "no such file"
        assert result.stderr == "no such file"

    def test_failure_helper_keeps_explicit_stderr(self):
        result = ExecutionResult.failure(ErrorKind.TIMEOUT, "late", stderr="partial")
        assert result.stderr == "partial"

    def test_artifact_lists_not_shared(self):
        a = ExecutionResult(success=True)
        b = ExecutionResult(success=True)
        a.artifacts.append("/x.png")
        assert b.artifacts == []


class TestExecutionRequest:
    def test_defaults(self):
        req = ExecutionRequest(code="print(1)")
        assert req.dialect is CellDialect.PYTHON
        assert req.timeout is None
        assert req.connection_name is None

    def test_frozen(self):
        req = ExecutionRequest(code="print(1)")
        with pytest.raises(Exception):
            req.code = "other"


class TestSqlDialect:
    @pytest.mark.parametrize("tag,expected", [
        ("sqlite", SqlDialect.SQLITE),
        ("SQLite3", SqlDialect.SQLITE),
        ("postgres", SqlDialect.POSTGRES),
        ("postgresql", SqlDialect.POSTGRES),
        ("mysql", SqlDialect.MYSQL),
        ("MariaDB", SqlDialect.MYSQL),
    ])
    def test_parse(self, tag, expected):
        assert SqlDialect.parse(tag) is expected

    def test_parse_passthrough(self):
        assert SqlDialect.parse(SqlDialect.MYSQL) is SqlDialect.MYSQL

    def test_parse_unsupported(self):
        with pytest.raises(UnsupportedDialectError) as exc_info:
            SqlDialect.parse("oracle")
        assert "oracle" in str(exc_info.value)


class TestConnectionDescriptor:
    def test_alias_dialect_normalized(self):
        desc = ConnectionDescriptor(name="pg", dialect="postgresql", connection_string="host=x")
        assert desc.dialect is SqlDialect.POSTGRES

    def test_unsupported_dialect_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionDescriptor(name="o", dialect="oracle", connection_string="")

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionDescriptor(name="", dialect="sqlite", connection_string="/tmp/x.db")

    def test_frozen(self):
        desc = ConnectionDescriptor(name="a", dialect="sqlite", connection_string="/tmp/a.db")
        with pytest.raises(ValidationError):
            desc.name = "b"


class TestSqlResult:
    def test_tabular_from_envelope(self):
        env = SqlEnvelope(columns=["id"], rows=[{"id": 1}, {"id": 2}], rowcount=2)
        result = SqlResult.from_envelope(env)
        assert result.has_table
        assert result.columns == ["id"]
        assert result.row_count == 2
        assert result.message is None
        assert result.error is None

    def test_empty_table_from_envelope(self):
        result = SqlResult.from_envelope(SqlEnvelope(columns=["id"], rows=[], rowcount=0))
        assert result.has_table
        assert result.rows == []
        assert result.row_count == 0

    def test_rowcount_defaults_to_len_rows(self):
        result = SqlResult.from_envelope(SqlEnvelope(columns=["a"], rows=[{"a": 1}]))
        assert result.row_count == 1

    def test_message_from_envelope(self):
        result = SqlResult.from_envelope(SqlEnvelope(message="Query OK, 3 rows affected"))
        assert not result.has_table
        assert result.message == "Query OK, 3 rows affected"
        assert not result.is_error

    def test_message_defaults_to_ok(self):
        assert SqlResult.from_envelope(SqlEnvelope()).message == "OK"

    def test_error(self):
        result = SqlResult(error="no such table: t")
        assert result.is_error
        assert not result.has_table
