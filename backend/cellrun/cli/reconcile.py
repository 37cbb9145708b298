#!/usr/bin/env python
"""Remove workspace directories left behind by crashed or killed runs.

Usage
-----
    python -m cellrun.cli.reconcile                 # remove every orphan
    python -m cellrun.cli.reconcile --max-age 3600  # only older than an hour
    python -m cellrun.cli.reconcile --dry-run       # preview

Only run this while no engine is active against the same workspace root:
a fresh process tracks nothing, so every workspace counts as orphaned.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from cellrun.core.logging_setup import configure_logging
from cellrun.services.execution.workspace import WorkspaceRegistry

logger = logging.getLogger("cellrun.cli.reconcile")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sweep orphaned execution workspaces.")
    parser.add_argument("--root", default=None, help="Workspace root (default: settings)")
    parser.add_argument("--max-age", type=float, default=None, metavar="SECONDS",
                        help="Only remove workspaces older than this")
    parser.add_argument("--dry-run", action="store_true", help="List without deleting")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    registry = WorkspaceRegistry(args.root)
    paths = registry.reconcile(args.max_age, dry_run=args.dry_run)

    verb = "would remove" if args.dry_run else "removed"
    for path in paths:
        print(f"{verb}: {path}")
    logger.info("%s %d workspace(s) under %s", verb, len(paths), registry.root)
    return 0


if __name__ == "__main__":
    sys.exit(main())
