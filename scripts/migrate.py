from __future__ import annotations

import argparse
import asyncio
import sys

from twofold.core.errors import MigrationFailure
from twofold.core.logging import configure_logging
from twofold.persistence.db import engine
from twofold.persistence.migrations import SchemaRunner
from twofold.persistence.schema_steps import STEPS


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apply pending schema steps")
    parser.add_argument("--status", action="store_true", help="Only report which steps have run")
    return parser


async def _run(args: argparse.Namespace) -> int:
    runner = SchemaRunner(engine, STEPS)
    try:
        if args.status:
            for step in await runner.status():
                executed_at = step.executed_at.isoformat() if step.executed_at else "-"
                print(f"{step.name:40} {'applied' if step.executed else 'pending':8} {executed_at}")
            return 0
        applied = await runner.run()
    finally:
        await engine.dispose()
    if applied:
        print("Applied:")
        for name in applied:
            print(f"  {name}")
    else:
        print("Schema is up to date")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except MigrationFailure as exc:
        print(f"migrate failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
