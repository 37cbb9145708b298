"""
Integration tests for backend/cellrun/services/execution/executor.py and the
command-line tools in backend/cellrun/cli/
Tests: one-time detection, dispatch by dialect, concurrent script cells,
cancel_all, shutdown flushing workspaces, cellrun-run and cellrun-reconcile
"""

import asyncio
import json
import os
import sqlite3
import sys

import pytest

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "backend"))
sys.path.insert(0, BACKEND_DIR)

from cellrun.cli import reconcile as reconcile_cli
from cellrun.cli import run as run_cli
from cellrun.services.execution.environment import EnvironmentState, InterpreterLocator
from cellrun.services.execution.executor import CellExecutor
from cellrun.services.execution.models import (
    CellDialect,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    SqlResult,
)


class _CountingLocator(InterpreterLocator):
    def __init__(self):
        super().__init__([sys.executable])
        self.calls = 0

    async def detect(self, state=None):
        self.calls += 1
        return await super().detect(state)


@pytest.fixture
def executor(workspaces):
    return CellExecutor(locator=_CountingLocator(), workspaces=workspaces)


# ── Initialization ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initialize_detects_once(executor):
    env = await executor.initialize()
    assert env.ready is True
    await executor.initialize()
    assert executor.locator.calls == 1

    await executor.initialize(refresh=True)
    assert executor.locator.calls == 2


@pytest.mark.asyncio
async def test_injected_ready_env_skips_detection(ready_env, workspaces):
    locator = _CountingLocator()
    executor = CellExecutor(ready_env, locator=locator, workspaces=workspaces)
    assert await executor.initialize() is ready_env
    assert locator.calls == 0


@pytest.mark.asyncio
async def test_run_before_initialize_is_not_ready(executor):
    result = await executor.run(ExecutionRequest(code="print(1)"))
    assert result.error_kind is ErrorKind.ENVIRONMENT_NOT_READY


# ── Dispatch ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatch_python(ready_env, workspaces):
    executor = CellExecutor(ready_env, workspaces=workspaces)
    result = await executor.run(ExecutionRequest(code="print(6 * 7)"))
    assert isinstance(result, ExecutionResult)
    assert result.clean_output == "42"


@pytest.mark.asyncio
async def test_dispatch_sql(ready_env, workspaces, tmp_path):
    db = str(tmp_path / "x.db")
    executor = CellExecutor(ready_env, workspaces=workspaces)
    executor.connections.add("local", "sqlite", db)
    result = await executor.run(ExecutionRequest(code="SELECT 1 AS one", dialect=CellDialect.SQL))
    assert isinstance(result, SqlResult)
    assert result.rows == [{"one": 1}]


@pytest.mark.asyncio
async def test_sql_without_connection(ready_env, workspaces):
    executor = CellExecutor(ready_env, workspaces=workspaces)
    result = await executor.run(ExecutionRequest(code="SELECT 1", dialect=CellDialect.SQL))
    assert result.error == "No database connection. Add one first."


@pytest.mark.asyncio
async def test_python_cells_run_concurrently(ready_env, workspaces):
    executor = CellExecutor(ready_env, workspaces=workspaces)
    requests = [ExecutionRequest(code=f"print({i})") for i in range(3)]
    results = await asyncio.gather(*(executor.run(r) for r in requests))
    assert [r.clean_output for r in results] == ["0", "1", "2"]


# ── Cancel / shutdown ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_all(ready_env, workspaces):
    executor = CellExecutor(ready_env, workspaces=workspaces)
    task = asyncio.create_task(executor.run_python("import time\ntime.sleep(30)", timeout=60))
    for _ in range(200):
        if any(e._process is not None for e in executor._engines):
            break
        await asyncio.sleep(0.05)

    assert executor.cancel_all() == 1
    result = await asyncio.wait_for(task, timeout=10)
    assert result.cancelled is True
    assert executor.cancel_all() == 0


@pytest.mark.asyncio
async def test_shutdown_flushes_workspaces(ready_env, workspaces):
    executor = CellExecutor(ready_env, workspaces=workspaces)
    result = await executor.run_python("print('x')")
    assert os.path.isdir(result.workspace)
    await executor.shutdown()
    assert not os.path.exists(result.workspace)
    assert workspaces.pending == []


# ── CLI ───────────────────────────────────────────────────────────────────────

@pytest.fixture
def only_this_interpreter(monkeypatch):
    monkeypatch.setattr(InterpreterLocator, "default_search_paths", staticmethod(lambda: [sys.executable]))


def test_cli_run_script(tmp_path, capsys, only_this_interpreter):
    script = tmp_path / "cell.py"
    script.write_text("print('from cli')\n")
    code = run_cli.main([str(script), "--json", "--artifacts-dir", str(tmp_path / "out")])
    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] is True
    assert payload["clean_output"] == "from cli"


def test_cli_run_failing_script(tmp_path, capsys, only_this_interpreter):
    script = tmp_path / "bad.py"
    script.write_text("raise SystemExit(4)\n")
    assert run_cli.main([str(script)]) == 1


def test_cli_run_copies_artifacts(tmp_path, capsys, only_this_interpreter):
    script = tmp_path / "img.py"
    script.write_text("open('chart_1.png', 'wb').write(b'png')\n")
    out_dir = tmp_path / "out"
    assert run_cli.main([str(script), "--artifacts-dir", str(out_dir)]) == 0
    assert (out_dir / "chart_1.png").read_bytes() == b"png"
    assert f"chart: {out_dir / 'chart_1.png'}" in capsys.readouterr().out


def test_cli_run_sql(tmp_path, capsys, only_this_interpreter):
    db = str(tmp_path / "data.db")
    conn = sqlite3.connect(db)
    conn.execute("CREATE TABLE t (a INTEGER, b TEXT)")
    conn.execute("INSERT INTO t VALUES (1, 'one')")
    conn.commit()
    conn.close()
    query = tmp_path / "q.sql"
    query.write_text("SELECT a, b FROM t")

    assert run_cli.main([str(query), "--sql", "--dsn", db]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[:2] == ["a\tb", "1\tone"]


def test_cli_run_sql_requires_dsn(tmp_path, capsys, only_this_interpreter):
    query = tmp_path / "q.sql"
    query.write_text("SELECT 1")
    assert run_cli.main([str(query), "--sql"]) == 2


def test_cli_reconcile(tmp_path, capsys):
    root = tmp_path / "ws"
    orphan = root / "cellrun_exec_1_abcdef12"
    orphan.mkdir(parents=True)

    assert reconcile_cli.main(["--root", str(root), "--dry-run"]) == 0
    assert orphan.is_dir()
    assert "would remove" in capsys.readouterr().out

    assert reconcile_cli.main(["--root", str(root)]) == 0
    assert not orphan.exists()
