"""AlertEvent — незмінний запис переходу життєвого циклу оповіщення."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.shared.clock import iso

# CSV column order for analytics exports
CSV_COLUMNS: list[str] = [
    "event_id",
    "alert_id",
    "timestamp",
    "event_type",
    "source",
    "severity",
    "duration_ms",
    "business_impact_score",
    "tags",
]


@dataclass(frozen=True, slots=True)
class AlertEvent:
    """One append-only lifecycle event; never mutated after creation."""

    event_id: str
    alert_id: str
    timestamp: datetime
    event_type: str  # created | acknowledged | escalated | resolved | suppressed | ...
    source: str
    severity: str
    duration_ms: float | None = None
    business_impact_score: float | None = None
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    # ── serialisation ─────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "alert_id": self.alert_id,
            "timestamp": iso(self.timestamp),
            "event_type": self.event_type,
            "source": self.source,
            "severity": self.severity,
            "duration_ms": self.duration_ms,
            "business_impact_score": self.business_impact_score,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
        }

    def to_csv_row(self) -> str:
        """Return a single CSV line (no trailing newline)."""
        row = self.to_dict()
        row["tags"] = ";".join(self.tags)
        buf = io.StringIO()
        csv.writer(buf).writerow(["" if row[c] is None else row[c] for c in CSV_COLUMNS])
        return buf.getvalue().rstrip("\r\n")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @staticmethod
    def csv_header() -> str:
        return ",".join(CSV_COLUMNS)
