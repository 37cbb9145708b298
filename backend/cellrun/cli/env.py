#!/usr/bin/env python
"""Detect the Python interpreter and manage packages.

Usage
-----
    python -m cellrun.cli.env                  # detect and print status
    python -m cellrun.cli.env --list           # also list installed packages
    python -m cellrun.cli.env --install pandas --install matplotlib
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from cellrun.core.logging_setup import configure_logging
from cellrun.services.execution.environment import InterpreterLocator
from cellrun.services.execution.installer import PackageInstaller

logger = logging.getLogger("cellrun.cli.env")


async def _main(args: argparse.Namespace) -> int:
    locator = InterpreterLocator()
    env = await locator.detect()
    env.add_status_listener(lambda msg: print(f"  {msg}", file=sys.stderr))

    print(env.status_message)
    if not env.ready:
        return 2

    print(f"interpreter: {env.interpreter_path}")
    print(f"pip: {'yes' if env.has_pip else 'no'}")
    print(f"packages: {len(env.installed_packages)}")
    if args.list:
        for name in sorted(env.installed_packages):
            print(f"  {name}")

    if not args.install:
        return 0

    installer = PackageInstaller(env)
    results = await installer.install_missing(args.install)
    failed = [name for name, result in results.items() if not result.success]
    for name in failed:
        print(f"failed: {name}\n{results[name].stderr.strip()}", file=sys.stderr)
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect the execution environment.")
    parser.add_argument("--list", action="store_true", help="List installed packages")
    parser.add_argument("--install", action="append", default=[], metavar="PKG",
                        help="Install a package if missing (repeatable)")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)

    configure_logging(args.log_level or "WARNING")
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
