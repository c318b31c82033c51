#!/usr/bin/env python3
"""Admin CLI for memory entries: list, disable, reset."""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Iterable

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from agents.invoice_memory import (  # noqa: E402
    InvoiceMemoryError,
    create_memory_engine,
    create_schema,
    disable_memory,
    list_memory,
    reset_memory_confidence,
)
from agents.invoice_memory.admin import MUTABLE_STORES  # noqa: E402
from backend.core.observability import get_logger, init_observability, set_trace_id  # noqa: E402

logger = get_logger(__name__)


def _confidence(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc
    if not 0.0 <= parsed <= 1.0:
        raise argparse.ArgumentTypeError("--to must be between 0 and 1")
    return parsed


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and administer invoice memory")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (default: settings.database_url)")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List memory of a vendor with effective confidence")
    list_cmd.add_argument("--vendor", required=True)
    list_cmd.add_argument("--simulate-days", type=float, default=0.0, help="Decay as seen N days from now")

    disable_cmd = sub.add_parser("disable", help="Disable a memory entry")
    disable_cmd.add_argument("--id", required=True, dest="memory_id")
    disable_cmd.add_argument("--store", choices=list(MUTABLE_STORES), default="vendor_memory")

    reset_cmd = sub.add_parser("reset", help="Reset confidence and rejections of a memory entry")
    reset_cmd.add_argument("--id", required=True, dest="memory_id")
    reset_cmd.add_argument("--store", choices=list(MUTABLE_STORES), default="vendor_memory")
    reset_cmd.add_argument("--to", type=_confidence, default=0.75)
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    init_observability()
    set_trace_id()
    engine = create_memory_engine(args.database_url)
    create_schema(engine)
    now = datetime.now(timezone.utc)

    try:
        if args.command == "list":
            result = list_memory(engine, args.vendor, now + timedelta(days=args.simulate_days))
            print(json.dumps(result, indent=2, ensure_ascii=False))
        elif args.command == "disable":
            entry = disable_memory(engine, args.store, args.memory_id, now)
            print(f"Disabled {args.store} id={entry.id}")
        else:
            entry = reset_memory_confidence(engine, args.store, args.memory_id, args.to, now)
            print(f"Reset confidence {args.store} id={entry.id} -> {entry.confidence}")
    except InvoiceMemoryError as exc:
        logger.error("memory_admin_failed", extra={"command": args.command, "error": str(exc)})
        print(str(exc), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
