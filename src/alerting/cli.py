"""CLI entry-point for the alert processing pipeline.

Usage examples
--------------
# Replay a JSONL alert log through the pipeline:
python -m src.alerting --input data/alerts.jsonl

# CSV input, CSV analytics export, verbose:
python -m src.alerting --input data/alerts.csv --format csv --log-level DEBUG
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
from pathlib import Path
from typing import Any

from src.alerting.pipeline import AlertProcessingPipeline, ProcessedAlert
from src.alerting.reporter import (
    write_analytics,
    write_patterns_json,
    write_processed_csv,
    write_report_txt,
)
from src.contracts.alert import parse_alert
from src.shared.clock import ReplayClock
from src.shared.errors import AlertValidationError
from src.shared.logger import setup_logging

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Alert loaders
# ═══════════════════════════════════════════════════════════════════════════


def _csv_row(row: dict[str, str]) -> dict[str, Any]:
    """CSV cells are strings: ``tags`` is ``;``-separated, ``metadata`` is JSON."""
    out: dict[str, Any] = {k: v for k, v in row.items() if k not in ("tags", "metadata")}
    tags = (row.get("tags") or "").strip()
    out["tags"] = [t for t in tags.split(";") if t] if tags else None
    meta = (row.get("metadata") or "").strip()
    out["metadata"] = json.loads(meta) if meta else {}
    return out


def load_alerts_csv(path: str | Path) -> tuple[list[dict[str, Any]], int]:
    """Load alert records from CSV; returns (records, skipped rows)."""
    records: list[dict[str, Any]] = []
    skipped = 0
    with open(path, encoding="utf-8", newline="") as fh:
        for line_no, row in enumerate(csv.DictReader(fh), 2):
            try:
                records.append(_csv_row(row))
            except json.JSONDecodeError as exc:
                log.warning("Skipping CSV line %d: bad metadata JSON (%s)", line_no, exc)
                skipped += 1
    log.info("Loaded %d alert records from CSV: %s", len(records), path)
    return records, skipped


def load_alerts_jsonl(path: str | Path) -> tuple[list[dict[str, Any]], int]:
    """Load alert records from JSONL (one JSON object per line)."""
    records: list[dict[str, Any]] = []
    skipped = 0
    with open(path, encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as exc:
                log.warning("Skipping JSONL line %d: %s", line_no, exc)
                skipped += 1
                continue
            if not isinstance(obj, dict):
                log.warning("Skipping JSONL line %d: not an object", line_no)
                skipped += 1
                continue
            records.append(obj)
    log.info("Loaded %d alert records from JSONL: %s", len(records), path)
    return records, skipped


def load_alerts(path: str | Path) -> tuple[list[dict[str, Any]], int]:
    """Auto-detect format by file extension and load alert records."""
    if Path(path).suffix in (".jsonl", ".ndjson"):
        return load_alerts_jsonl(path)
    return load_alerts_csv(path)


# ═══════════════════════════════════════════════════════════════════════════
#  Replay
# ═══════════════════════════════════════════════════════════════════════════


def run(
    input_path: str,
    config_dir: str = "config",
    out_dir: str = "out",
    fmt: str = "json",
) -> dict[str, Any]:
    """Replay *input_path* through a pipeline built from *config_dir*.

    Alerts are processed in timestamp order on a replay clock, then every
    engine is swept once at the last alert's time.

    Returns
    -------
    dict with keys: processed, rejected, stats, patterns.
    """
    records, rejected = load_alerts(input_path)
    alerts = []
    for rec in records:
        try:
            alerts.append(parse_alert(rec))
        except AlertValidationError as exc:
            log.warning("Rejected alert: %s", exc)
            rejected += 1
    alerts.sort(key=lambda a: a.timestamp)

    clock = ReplayClock(alerts[0].timestamp if alerts else None)
    pipeline = AlertProcessingPipeline.from_config_dir(config_dir, clock=clock)

    results: list[ProcessedAlert] = []
    for alert in alerts:
        clock.advance(alert.timestamp)
        results.append(pipeline.process(alert))
    pipeline.sweep(clock())

    out = Path(out_dir)
    stats = pipeline.stats()
    patterns = pipeline.analytics.get_patterns() if pipeline.analytics else []
    insights = pipeline.analytics.generate_insights() if pipeline.analytics else []

    write_processed_csv(results, out / "processed.csv")
    if pipeline.analytics is not None:
        write_analytics(pipeline.analytics, out / f"analytics.{fmt}", fmt)
    write_patterns_json(patterns, out / "patterns.json")
    write_report_txt(results, stats, patterns, insights, out / "report.txt", rejected=rejected)

    log.info("Replayed %d alerts (%d rejected) → %s", len(results), rejected, out)
    return {"processed": results, "rejected": rejected, "stats": stats, "patterns": patterns}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="alert-pipeline",
        description="Alert processing pipeline: dedup, score, suppress, escalate, analyse",
    )
    p.add_argument(
        "--input",
        default="data/alerts.jsonl",
        help="Input file (CSV or JSONL). Format auto-detected by extension. "
             "Default: data/alerts.jsonl",
    )
    p.add_argument(
        "--config-dir",
        default="config",
        help="Directory with pipeline.yaml and optional services/suppression/"
             "escalation YAML. Default: config/",
    )
    p.add_argument(
        "--out-dir",
        default="out",
        help="Output directory. Default: out/",
    )
    p.add_argument(
        "--format",
        default="json",
        choices=["json", "csv"],
        help="Analytics export format. Default: json",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level. Default: INFO",
    )
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    run(
        input_path=args.input,
        config_dir=args.config_dir,
        out_dir=args.out_dir,
        fmt=args.format,
    )


if __name__ == "__main__":
    main()
