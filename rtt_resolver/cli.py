"""CLI entrypoint for the RTT proximity resolver."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from datetime import date
from pathlib import Path

from .api import RTTResolverAPI
from .errors import InsufficientData, InvalidAddress, QueryError, StorageError
from .log import setup_logging
from .models import ResolverConfig, SyncReport


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtt-resolver", description="RTT-based nearest site resolver."
    )
    parser.add_argument("--store", type=Path, help="Path to persistent JSONL store.")
    parser.add_argument("--ledger", type=Path, help="Path to the import ledger JSON file.")
    parser.add_argument("--registry", type=Path, help="JSON list of servers and their sites.")
    parser.add_argument(
        "--samples", type=Path, help="JSONL export used as the analytical source."
    )
    parser.add_argument(
        "--max-read-batch", type=int, default=1000, help="Keys per bulk store read."
    )
    parser.add_argument(
        "--max-write-batch", type=int, default=300, help="Groups per bulk store write."
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level.")

    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a JSONL file of raw samples.")
    ingest.add_argument("path", type=Path, help="Path to samples JSONL.")

    import_day = sub.add_parser("import-day", help="Import one day from the sample export.")
    import_day.add_argument("date", type=date.fromisoformat, help="Day to import (YYYY-MM-DD).")

    resolve = sub.add_parser("resolve", help="Resolve the nearest server for a client.")
    resolve.add_argument("ip", help="Client IP address.")
    resolve.add_argument("--service", required=True, help="Service the server must run.")

    dump = sub.add_parser("dump", help="Dump stored client groups as JSON.")
    dump.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    return parser


def _config_from_args(args: argparse.Namespace) -> ResolverConfig:
    return ResolverConfig(
        store_path=str(args.store) if args.store else None,
        ledger_path=str(args.ledger) if args.ledger else None,
        registry_path=str(args.registry) if args.registry else None,
        samples_path=str(args.samples) if args.samples else None,
        max_read_batch=args.max_read_batch,
        max_write_batch=args.max_write_batch,
    )


def _print_report(report: SyncReport) -> int:
    print(
        f"groups={report.groups} created={report.created} updated={report.updated} "
        f"unchanged={report.unchanged} written={report.written} "
        f"read_errors={report.read_errors} write_errors={report.write_errors}"
    )
    return 0 if report.ok else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    config = _config_from_args(args)
    api = RTTResolverAPI(config)

    if args.command == "ingest":
        return _print_report(api.ingest_file(args.path))
    if args.command == "import-day":
        if not api.has_source:
            parser.error("import-day requires --samples")
        try:
            return _print_report(api.import_day(args.date))
        except (QueryError, StorageError) as exc:
            print(f"import failed: {exc}", file=sys.stderr)
            return 1
    if args.command == "resolve":
        try:
            server = api.resolve(args.ip, args.service)
        except (InvalidAddress, InsufficientData, StorageError) as exc:
            print(str(exc), file=sys.stderr)
            return 1
        print(server.address)
        return 0
    if args.command == "dump":
        data = api.snapshot_json()
        if args.pretty:
            print(data)
        else:
            print(data.replace("\n", ""), file=sys.stdout)
        return 0
    parser.error(f"Unsupported command {args.command}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
