#!/usr/bin/env python3
"""Demo-Runner: eine Rechnung aus den Beispieldaten durch die Pipeline schicken."""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from agents.invoice_memory import PipelineEngine, create_memory_engine, create_schema  # noqa: E402
from agents.invoice_memory.loaders import DATASETS, load_dataset  # noqa: E402
from backend.core.config import settings  # noqa: E402
from backend.core.observability import get_logger, init_observability, set_trace_id  # noqa: E402

logger = get_logger(__name__)


def _iso_datetime(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def run_invoice(
    *,
    invoice_id: str,
    dataset: str = "full",
    data_dir: Optional[Path] = None,
    database_url: Optional[str] = None,
    simulate_days: float = 0.0,
    now: Optional[datetime] = None,
    engine=None,
) -> Dict[str, Any]:
    """Run one invoice of a dataset; ``now`` is shifted by ``simulate_days``."""
    data = load_dataset(dataset, data_dir)
    raw = data.invoice(invoice_id)
    if raw is None:
        raise LookupError(f"Invoice not found: {invoice_id}")

    engine = engine or create_memory_engine(database_url)
    create_schema(engine)
    base_now = now or datetime.now(timezone.utc)
    logical_now = base_now + timedelta(days=simulate_days)

    output = PipelineEngine(engine).run(
        raw,
        data.reference,
        data.decisions_for(invoice_id),
        now=logical_now,
        dataset=dataset,
    )
    return output.to_dict()


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one sample invoice through the memory pipeline")
    parser.add_argument("--invoice-id", required=True, help="Invoice id, z. B. INV-A-001")
    parser.add_argument("--dataset", choices=list(DATASETS), default="full", help="Datensatz (default: full)")
    parser.add_argument(
        "--simulate-days",
        type=float,
        default=0.0,
        help="Logische Uhr um N Tage vorstellen (Decay sichtbar machen)",
    )
    parser.add_argument("--data-dir", type=Path, default=Path(settings.DATA_DIR), help="Verzeichnis mit manifest.json")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (default: settings.database_url)")
    parser.add_argument("--now", help="ISO-8601 Zeitstempel für deterministische Läufe")
    parser.add_argument("--trace-id", default=None)
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    init_observability()
    set_trace_id(args.trace_id)

    try:
        output = run_invoice(
            invoice_id=args.invoice_id,
            dataset=args.dataset,
            data_dir=args.data_dir,
            database_url=args.database_url,
            simulate_days=args.simulate_days,
            now=_iso_datetime(args.now) if args.now else None,
        )
    except (LookupError, ValueError, OSError) as exc:
        logger.error("run_invoice_failed", extra={"error": str(exc)})
        print(str(exc), file=sys.stderr)
        return 1
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
