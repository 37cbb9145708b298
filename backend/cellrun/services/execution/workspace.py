"""Scoped workspaces — one fresh directory per execution, deleted on a delay.

Callers receive artifact paths that live inside the workspace, so deletion
is deferred by a grace period instead of happening when the run returns.
Every pending deletion is an ``asyncio.Task`` tracked here; ``flush()``
runs them immediately and ``reconcile()`` sweeps directories left behind
by crashed runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import uuid
from typing import Dict, List, Optional

from cellrun.core.config import settings

logger = logging.getLogger(__name__)


def _remove_tree(path: str) -> bool:
    try:
        shutil.rmtree(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("Workspace cleanup failed for %s: %s", path, exc)
        return False


class WorkspaceRegistry:
    """Creates workspaces under one root and tracks their scheduled cleanup."""

    def __init__(
        self,
        root: Optional[str] = None,
        *,
        prefix: Optional[str] = None,
        cleanup_delay: Optional[float] = None,
        max_workspaces: Optional[int] = None,
    ):
        self.root = os.path.abspath(root or settings.WORKSPACE_ROOT)
        self.prefix = prefix or settings.WORKSPACE_PREFIX
        self.cleanup_delay = settings.CLEANUP_DELAY_SECONDS if cleanup_delay is None else cleanup_delay
        self.max_workspaces = max_workspaces or settings.MAX_WORKSPACES
        self._active: set[str] = set()
        self._pending: Dict[str, asyncio.Task] = {}

    # ── Lifecycle ────────────────────────────────────────────

    def create(self) -> str:
        """Create a fresh, uniquely named workspace directory and return its path."""
        os.makedirs(self.root, exist_ok=True)
        name = f"{self.prefix}{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        path = os.path.join(self.root, name)
        os.makedirs(path)
        self._active.add(path)
        logger.debug("Created workspace %s", path)
        return path

    def release(self, path: str, delay: Optional[float] = None) -> None:
        """Schedule *path* for deletion after *delay* seconds (best-effort)."""
        self._active.discard(path)
        delay = self.cleanup_delay if delay is None else delay
        if path in self._pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _remove_tree(path)
            return
        task = loop.create_task(self._delayed_cleanup(path, delay), name=f"cleanup:{os.path.basename(path)}")
        self._pending[path] = task

    async def _delayed_cleanup(self, path: str, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await asyncio.to_thread(_remove_tree, path)
        finally:
            self._pending.pop(path, None)

    async def flush(self) -> int:
        """Run every pending cleanup now. Returns the number flushed."""
        pending = list(self._pending.items())
        for path, task in pending:
            task.cancel()
            self._pending.pop(path, None)
        if pending:
            await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
            await asyncio.to_thread(lambda: [_remove_tree(path) for path, _ in pending])
        return len(pending)

    # ── Introspection ────────────────────────────────────────

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    @property
    def active(self) -> List[str]:
        return list(self._active)

    def is_tracked(self, path: str) -> bool:
        return path in self._active or path in self._pending

    def list_workspaces(self) -> List[str]:
        """Workspace directories under the root, oldest first."""
        try:
            entries = [
                os.path.join(self.root, name)
                for name in os.listdir(self.root)
                if name.startswith(self.prefix)
            ]
        except FileNotFoundError:
            return []
        dirs = [p for p in entries if os.path.isdir(p)]
        return sorted(dirs, key=_mtime)

    # ── Orphan sweep ─────────────────────────────────────────

    def reconcile(self, max_age_seconds: Optional[float] = None, *, dry_run: bool = False) -> List[str]:
        """Remove orphaned workspaces left by crashed or killed runs.

        A directory is an orphan when this registry does not track it and,
        if *max_age_seconds* is given, it is older than that. When more than
        ``max_workspaces`` directories remain, the oldest untracked ones are
        removed as well. Returns the removed (or, with *dry_run*, the
        would-be removed) paths.
        """
        now = time.time()
        candidates = [p for p in self.list_workspaces() if not self.is_tracked(p)]

        doomed: List[str] = []
        for path in candidates:
            if max_age_seconds is None or now - _mtime(path) >= max_age_seconds:
                doomed.append(path)

        survivors = [p for p in self.list_workspaces() if p not in doomed]
        overflow = len(survivors) - self.max_workspaces
        if overflow > 0:
            for path in survivors:
                if overflow <= 0:
                    break
                if not self.is_tracked(path):
                    doomed.append(path)
                    overflow -= 1

        if dry_run:
            return doomed

        removed = [p for p in doomed if _remove_tree(p)]
        if removed:
            logger.info("Cleaned up %d stale workspace directories", len(removed))
        return removed


def _mtime(path: str) -> float:
    try:
        return os.path.getmtime(path)
    except OSError:
        return 0.0
