"""
Shared pytest fixtures and configuration for the entire test suite.
Applies to all subdirectories: unit/, integration/
"""

import logging
import os
import sys

import pytest

# ── Ensure backend is importable from every pytest session ──────────────────
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend"))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from cellrun.services.execution.engine import ExecutionEngine  # noqa: E402
from cellrun.services.execution.environment import EnvironmentState  # noqa: E402
from cellrun.services.execution.workspace import WorkspaceRegistry  # noqa: E402


# ── Logging isolation ────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def restore_root_logger():
    """CLI entry points reconfigure the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


# ── Environment fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def ready_env():
    """A ready environment bound to the interpreter running the tests."""
    return EnvironmentState.ready_at(sys.executable, has_pip=True)


@pytest.fixture
def missing_env():
    """An environment where detection found nothing."""
    return EnvironmentState(status_message="Python3 not found. Install via Homebrew or python.org")


# ── Workspace fixtures ───────────────────────────────────────────────────────

@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return str(root)


@pytest.fixture
def workspaces(workspace_root):
    """Registry under a temp root; cleanup delay stays long so tests can read artifacts."""
    return WorkspaceRegistry(workspace_root, cleanup_delay=30)


@pytest.fixture
def engine(ready_env, workspaces):
    return ExecutionEngine(ready_env, workspaces)
