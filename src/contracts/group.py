"""AlertGroup — одиниця дедуплікації."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.alert import Alert
from src.shared.clock import iso


@dataclass(slots=True)
class AlertGroup:
    """Група оповіщень зі спільним fingerprint або високою схожістю.

    ``count == len(alerts)`` і ``last_seen == max(alert.timestamp)`` завжди;
    ``severity`` ніколи не знижується.
    """

    group_id: str
    fingerprint: str
    alerts: list[Alert]
    first_seen: datetime
    last_seen: datetime
    count: int
    severity: str
    representative: Alert
    suppressed: bool = False
    suppressed_until: datetime | None = None
    cluster_id: str | None = None
    created_seq: int = 0

    def to_dict(self, include_alerts: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "group_id": self.group_id,
            "fingerprint": self.fingerprint,
            "first_seen": iso(self.first_seen),
            "last_seen": iso(self.last_seen),
            "count": self.count,
            "severity": self.severity,
            "representative": self.representative.alert_id,
            "suppressed": self.suppressed,
            "suppressed_until": iso(self.suppressed_until) if self.suppressed_until else None,
            "cluster_id": self.cluster_id,
        }
        if include_alerts:
            out["alerts"] = [a.to_dict() for a in self.alerts]
        return out
