"""Operator commands for a tenant's ledger.

    python -m reconciler.cli verify-index [--tenant T]
    python -m reconciler.cli rebuild-index [--tenant T]
    python -m reconciler.cli resync-mirror [--tenant T]
    python -m reconciler.cli transcribe export.csv [--tenant T]
"""
import argparse
import json
import logging
import sys
from pathlib import Path

from .config import get_settings
from .database import init_db
from .integrations.csv_parser import parse_transcription_csv
from .pipeline import InvalidTenantError, get_registry
from .services.guard import LedgerLockTimeout


def _print(model) -> None:
    print(json.dumps(model.model_dump(), ensure_ascii=False, indent=2))


def verify_index(pipeline, args) -> int:
    report = pipeline.verify_index()
    _print(report)
    return 0 if report.consistent else 1


def rebuild_index(pipeline, args) -> int:
    _print(pipeline.rebuild_index())
    return 0


def resync_mirror(pipeline, args) -> int:
    init_db()
    summary = pipeline.resync_mirror()
    _print(summary)
    return 0 if summary.failed == 0 else 1


def transcribe(pipeline, args) -> int:
    path = Path(args.csv_path)
    if not path.exists():
        print(f"ERROR: {path} not found")
        return 2
    try:
        rows = parse_transcription_csv(path.read_text(encoding="utf-8-sig"))
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2
    init_db()
    _print(pipeline.transcribe(rows))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reconciler", description="Ledger maintenance commands")
    parser.add_argument("--tenant", default=None, help="Tenant id (defaults to DEFAULT_TENANT)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("verify-index", help="Compare the identity index with the ledger").set_defaults(func=verify_index)
    sub.add_parser("rebuild-index", help="Rebuild both indexes from a full ledger scan").set_defaults(func=rebuild_index)
    sub.add_parser("resync-mirror", help="Upsert every ledger row into the mirror").set_defaults(func=resync_mirror)

    p = sub.add_parser("transcribe", help="Transcribe an exported CSV into the ledger")
    p.add_argument("csv_path")
    p.set_defaults(func=transcribe)
    return parser


def main(argv=None) -> int:
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    args = build_parser().parse_args(argv)
    if not settings.ledger_dir:
        print("WARNING: LEDGER_DIR is not set; operating on an empty in-memory ledger.")

    try:
        pipeline = get_registry().get(args.tenant)
        return args.func(pipeline, args)
    except InvalidTenantError as e:
        print(f"ERROR: {e}")
        return 2
    except LedgerLockTimeout as e:
        print(f"ERROR: {e}")
        return 3


if __name__ == "__main__":
    sys.exit(main())
