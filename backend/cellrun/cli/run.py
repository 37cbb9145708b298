#!/usr/bin/env python
"""Run a script or SQL file through the execution engine.

Usage
-----
    python -m cellrun.cli.run analysis.py
    python -m cellrun.cli.run analysis.py --timeout 10 --json
    python -m cellrun.cli.run query.sql --sql --dialect sqlite --dsn ./data.db
    python -m cellrun.cli.run query.sql --sql --dialect postgres \\
        --dsn "host=localhost;port=5432;user=me;password=pw;dbname=app"

Chart images are copied to ``--artifacts-dir`` (default: current directory)
because the workspace they were written to is deleted shortly after the run.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import shutil
import sys
from typing import List, Optional

from cellrun.core.logging_setup import configure_logging
from cellrun.services.execution.executor import CellExecutor
from cellrun.services.execution.models import ExecutionResult, SqlResult

logger = logging.getLogger("cellrun.cli.run")


def _copy_artifacts(paths: List[str], dest: str) -> List[str]:
    os.makedirs(dest, exist_ok=True)
    copied = []
    for path in paths:
        target = os.path.join(dest, os.path.basename(path))
        shutil.copy2(path, target)
        copied.append(target)
    return copied


def _print_script_result(result: ExecutionResult, as_json: bool) -> None:
    if as_json:
        payload = dataclasses.asdict(result)
        payload["clean_output"] = result.clean_output
        print(json.dumps(payload, default=str, indent=2))
        return
    if result.clean_output:
        print(result.clean_output)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    for path in result.artifacts:
        print(f"chart: {path}")
    status = "ok" if result.success else (result.error or "failed")
    print(f"-- {status} in {result.formatted_time}", file=sys.stderr)


def _print_sql_result(result: SqlResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(dataclasses.asdict(result), default=str, indent=2))
        return
    if result.is_error:
        print(result.error, file=sys.stderr)
    elif result.has_table:
        print("\t".join(result.columns))
        for row in result.rows:
            print("\t".join(str(row.get(col, "")) for col in result.columns))
        print(f"-- {result.row_count} row(s)", file=sys.stderr)
    else:
        print(result.message)


async def _run(args: argparse.Namespace) -> int:
    with open(args.file, encoding="utf-8") as f:
        source = f.read()

    executor = CellExecutor()
    env = await executor.initialize()
    if not env.ready:
        print(env.status_message, file=sys.stderr)
        return 2

    try:
        if args.sql:
            if not args.dsn:
                print("--dsn is required with --sql", file=sys.stderr)
                return 2
            executor.connections.add(args.connection, args.dialect, args.dsn)
            sql_result = await executor.run_sql(source, args.connection)
            _print_sql_result(sql_result, args.json)
            return 1 if sql_result.is_error else 0

        result = await executor.run_python(source, timeout=args.timeout)
        if result.artifacts and args.artifacts_dir:
            result.artifacts = _copy_artifacts(result.artifacts, args.artifacts_dir)
        _print_script_result(result, args.json)
        return 0 if result.success else 1
    finally:
        await executor.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a notebook cell from a file.")
    parser.add_argument("file", help="Python script or SQL file to run")
    parser.add_argument("--sql", action="store_true", help="Treat the file as a SQL query")
    parser.add_argument("--dialect", default="sqlite", help="sqlite, postgres or mysql")
    parser.add_argument("--dsn", help="Connection string (file path or key=value;... pairs)")
    parser.add_argument("--connection", default="default", help="Connection name")
    parser.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")
    parser.add_argument("--artifacts-dir", default=".", help="Where to copy chart images")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)

    configure_logging(args.log_level or "WARNING")
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
