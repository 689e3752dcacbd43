"""Звітування: processed.csv, analytics.json|csv, patterns.json, report.txt."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import pandas as pd

from src.alerting.analytics import AlertAnalytics
from src.alerting.pipeline import ProcessedAlert
from src.contracts.pattern import AlertPattern
from src.shared.clock import iso

log = logging.getLogger(__name__)

PROCESSED_COLUMNS: list[str] = [
    "alert_id",
    "timestamp",
    "source",
    "severity",
    "group_id",
    "is_new",
    "count",
    "suppressed",
    "score",
    "escalation_id",
    "suppression_reasons",
    "processing_ms",
]


def _atomic_write(path: str | Path, content: str) -> None:
    """Атомарно записує content у файл path."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=f".{target.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, target)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


# ═══════════════════════════════════════════════════════════════════════════
#  CSV / JSON writers
# ═══════════════════════════════════════════════════════════════════════════


def processed_frame(results: list[ProcessedAlert]) -> pd.DataFrame:
    """One row per processed alert, in processing order."""
    rows = [
        {
            "alert_id": r.alert.alert_id,
            "timestamp": iso(r.alert.timestamp),
            "source": r.alert.source,
            "severity": r.alert.severity,
            "group_id": r.group_id,
            "is_new": r.is_new,
            "count": r.alert.count,
            "suppressed": r.suppressed,
            "score": r.score,
            "escalation_id": r.escalation_id or "",
            "suppression_reasons": "; ".join(r.suppression_reasons),
            "processing_ms": r.processing_ms,
        }
        for r in results
    ]
    return pd.DataFrame(rows, columns=PROCESSED_COLUMNS)


def write_processed_csv(results: list[ProcessedAlert], path: str | Path) -> None:
    _atomic_write(path, processed_frame(results).to_csv(index=False))
    log.info("Wrote processed alerts → %s (%d rows)", path, len(results))


def write_analytics(analytics: AlertAnalytics, path: str | Path, fmt: str = "json") -> None:
    _atomic_write(path, analytics.export_data(fmt))
    log.info("Wrote analytics export → %s (%s)", path, fmt)


def write_patterns_json(patterns: list[AlertPattern], path: str | Path) -> None:
    ordered = sorted(patterns, key=lambda p: (-p.confidence, p.pattern_id))
    _atomic_write(path, json.dumps([p.to_dict() for p in ordered], indent=2, ensure_ascii=False) + "\n")
    log.info("Wrote patterns → %s (%d patterns)", path, len(patterns))


# ═══════════════════════════════════════════════════════════════════════════
#  TXT report
# ═══════════════════════════════════════════════════════════════════════════


def write_report_txt(
    results: list[ProcessedAlert],
    stats: dict[str, Any],
    patterns: list[AlertPattern],
    insights: list[dict[str, Any]],
    path: str | Path,
    rejected: int = 0,
) -> None:
    """Генерує текстовий звіт."""
    lines: list[str] = []
    pipe = stats.get("pipeline", {})

    lines.append("=" * 60)
    lines.append("  Alert Processing Report")
    lines.append("=" * 60)
    lines.append("")

    lines.append("--- Pipeline ---")
    lines.append(f"  Alerts processed:   {pipe.get('processed', len(results))}")
    lines.append(f"  Alerts rejected:    {rejected}")
    lines.append(f"  Suppressed:         {pipe.get('suppressed', 0)}")
    lines.append(f"  Escalated:          {pipe.get('escalated', 0)}")
    lines.append(f"  Avg processing:     {pipe.get('avg_processing_ms', 0.0):.2f} ms")
    lines.append(f"  Over budget:        {pipe.get('budget_exceeded', 0)}")
    lines.append("")

    if "deduplication" in stats:
        d = stats["deduplication"]
        lines.append("--- Deduplication ---")
        lines.append(f"  Unique groups:      {d['unique_alerts']}")
        lines.append(f"  Dedup rate:         {d['dedup_rate'] * 100:.1f}%")
        lines.append("")

    if "scoring" in stats:
        s = stats["scoring"]
        lines.append("--- Business impact ---")
        lines.append(f"  Average score:      {s['average_score']:.2f}")
        lines.append(
            f"  High / medium / low: {s['high_impact']} / {s['medium_impact']} / {s['low_impact']}"
        )
        top = sorted((r for r in results if r.score is not None), key=lambda r: r.score, reverse=True)[:5]
        for r in top:
            lines.append(f"    {r.score:6.2f}  {r.alert.alert_id}  {r.alert.source}/{r.alert.severity}")
        lines.append("")

    if "escalation" in stats:
        e = stats["escalation"]
        lines.append("--- Escalation ---")
        lines.append(
            f"  Active / acknowledged / exhausted: "
            f"{e['active']} / {e['acknowledged']} / {e['exhausted']}"
        )
        lines.append(f"  Notifications sent: {e['notifications_sent']}")
        lines.append("")

    lines.append("--- Patterns ---")
    if not patterns:
        lines.append("  none detected")
    for p in sorted(patterns, key=lambda p: (-p.confidence, p.pattern_id)):
        lines.append(f"  [{p.status}] {p.name} (confidence {p.confidence:.2f}, occurrences {p.occurrences})")
    lines.append("")

    lines.append("--- Insights ---")
    if not insights:
        lines.append("  none")
    for i in insights:
        lines.append(f"  {i['type'].upper()}: {i['title']}: {i['description']}")
        lines.append(f"     {i['recommendation']}")
    lines.append("")
    lines.append("=" * 60)

    _atomic_write(path, "\n".join(lines) + "\n")
    log.info("Wrote report → %s", path)
