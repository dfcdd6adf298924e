"""Command-line entry points for profile import and export.

Usage:
  cellmatrix init-db
  cellmatrix import --data data_cibersort.txt --meta meta_cibersort.txt [--bulk | --immediate]
  cellmatrix export --profile brca_tcga_cibersort [--out profile.txt]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from Cellmatrix.config import load_settings
from Cellmatrix.db import create_schema, dispose_engine, session_scope
from Cellmatrix.errors import CellmatrixError
from Cellmatrix.exporter import export_profile
from Cellmatrix.importer import run_import_with_database
from Cellmatrix.logging import redact_settings, setup_logging

log = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="cellmatrix", description="Cell profile data tools")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    imp = sub.add_parser("import", help="Import a tab-delimited profile data file")
    imp.add_argument("--data", type=Path, required=True)
    imp.add_argument("--meta", type=Path, required=True)
    mode = imp.add_mutually_exclusive_group()
    mode.add_argument("--bulk", dest="bulk_load", action="store_true", default=None)
    mode.add_argument("--immediate", dest="bulk_load", action="store_false")

    exp = sub.add_parser("export", help="Export a stored profile as tab-delimited text")
    exp.add_argument("--profile", required=True, help="Profile stable id")
    exp.add_argument("--out", type=Path, default=None)
    return ap


async def _init_db() -> None:
    await create_schema()
    await dispose_engine()


async def _export(stable_id: str, out: Path | None) -> int:
    try:
        async with session_scope() as s:
            if out is None:
                return await export_profile(s, stable_id, sys.stdout)
            with out.open("w", encoding="utf-8") as handle:
                return await export_profile(s, stable_id, handle)
    finally:
        await dispose_engine()


async def _import(data: Path, meta: Path, bulk_load: bool | None, settings) -> dict:
    try:
        summary = await run_import_with_database(data, meta, bulk_load=bulk_load, settings=settings)
    finally:
        await dispose_engine()
    return summary.to_dict()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(settings)
    log.info("cli.start", command=args.command, settings=redact_settings(settings))

    if args.command == "init-db":
        asyncio.run(_init_db())
        print("Schema created.")
        return 0

    if args.command == "import":
        for path in (args.data, args.meta):
            if not path.exists():
                print(f"Error: file not found: {path}")
                return 2
        try:
            summary = asyncio.run(_import(args.data, args.meta, args.bulk_load, settings))
        except CellmatrixError as exc:
            print(f"{type(exc).__name__}: {exc}")
            return 1
        print("=== Import Summary ===")
        print(json.dumps(summary, indent=2, default=str))
        return 0

    try:
        rows = asyncio.run(_export(args.profile, args.out))
    except CellmatrixError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    if args.out is not None:
        print(f"Wrote {rows} rows to {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
