"""
Database tools for the fee tracker.

Usage examples:

  python scripts/db_tool.py init
  python scripts/db_tool.py export --format sql
  python scripts/db_tool.py import instance/backups/ecole-fees-2025-01-31T101500.json
  python scripts/db_tool.py migrate-legacy --from old_data/ --force
  python scripts/db_tool.py history

The storage backend comes from FEE_STORAGE_BACKEND (see config.py / .env).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

# Ensure project root is importable when running from scripts/
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from config import Config  # noqa: E402
from utils.backup import format_bytes, get_export_history  # noqa: E402
from utils.context import open_context  # noqa: E402
from utils.errors import FeeStoreError  # noqa: E402
from utils.kvstore import FlatDocumentStore  # noqa: E402
from utils.schema import import_legacy_data, run_legacy_import  # noqa: E402


def _config() -> dict:
    return {key: getattr(Config, key) for key in dir(Config) if key.isupper()}


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Fee tracker database tools")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create tables (idempotent)")
    ep = sub.add_parser("export", help="Write a JSON or SQL export file")
    ep.add_argument("--format", choices=["json", "sql"], default="json")
    ep.add_argument("--out", default=None, help="Target directory (default: BACKUP_DIRECTORY)")
    ip = sub.add_parser("import", help="Replace all data with the content of a .json or .sql export")
    ip.add_argument("path")
    mp = sub.add_parser("migrate-legacy", help="Import flat legacy documents into the current storage")
    mp.add_argument("--from", dest="src", default=None, help="Legacy document directory")
    mp.add_argument("--force", action="store_true", help="Run even if the import already happened")
    hp = sub.add_parser("history", help="Show recent export files")
    hp.add_argument("--limit", type=int, default=6)

    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = _config()

    if args.cmd == "history":
        for entry in get_export_history(config["BACKUP_DIRECTORY"], limit=args.limit):
            print(f"{entry.get('timestamp')}  {entry.get('format'):4}  {format_bytes(entry.get('size'))}  {entry.get('path')}")
        return 0

    # The CLI never runs the automatic legacy import; use migrate-legacy.
    config["RUN_LEGACY_IMPORT"] = False
    config["SEED_DEFAULT_SERVICES"] = False
    try:
        ctx = open_context(config)
    except FeeStoreError as e:
        print(f"Could not open storage: {e}")
        return 3

    try:
        if args.cmd == "init":
            print(f"OK: tables ready ({ctx.adapter.backend})")
            return 0
        if args.cmd == "export":
            entry = ctx.backup.write_export(
                args.out or config["BACKUP_DIRECTORY"],
                fmt=args.format,
                keep_days=int(config["BACKUP_KEEP_DAYS"]),
            )
            print(f"OK: wrote {entry['path']} ({format_bytes(entry['size'])})")
            return 0
        if args.cmd == "import":
            counts = ctx.backup.import_file(args.path)
            print("OK: imported " + ", ".join(f"{k}={v}" for k, v in counts.items()))
            return 0
        if args.cmd == "migrate-legacy":
            store = FlatDocumentStore(args.src or config["LEGACY_DATA_DIRECTORY"])
            if args.force:
                summary = import_legacy_data(ctx.adapter, store)
            else:
                summary = run_legacy_import(ctx.adapter, store)
            if summary is None:
                print("Legacy import already done; use --force to run it again.")
            else:
                print("OK: " + (", ".join(f"{k}={v}" for k, v in summary.items()) or "nothing to import"))
            return 0
        ap.error("Unknown command")
        return 2
    except FeeStoreError as e:
        print(f"Failed: {e}")
        return 1
    finally:
        ctx.close()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
