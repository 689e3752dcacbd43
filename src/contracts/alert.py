"""Модель оповіщення (Alert) та перевірка вхідних записів."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.enums import Severity
from src.shared.clock import iso, parse_ts
from src.shared.errors import AlertValidationError

_SEVERITIES = {s.value for s in Severity}


@dataclass(slots=True)
class Alert:
    """Одне зареєстроване оповіщення.

    ``fingerprint``, ``group_key``, ``count`` та ``suppressed`` заповнює
    дедуплікатор; конвеєр додає ``metadata["business_impact_score"]``.
    """

    alert_id: str
    timestamp: datetime  # aware, UTC
    severity: str  # low | medium | high | critical
    source: str  # owning service / component id
    message: str
    fingerprint: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] | None = None
    suppressed: bool = False
    group_key: str = ""
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "timestamp": iso(self.timestamp),
            "severity": self.severity,
            "source": self.source,
            "message": self.message,
            "fingerprint": self.fingerprint,
            "metadata": dict(self.metadata),
            "tags": list(self.tags) if self.tags is not None else None,
            "suppressed": self.suppressed,
            "group_key": self.group_key,
            "count": self.count,
        }


def validate_alert(data: Mapping[str, Any]) -> list[str]:
    """Повертає список проблем вхідного запису (порожній, якщо все добре)."""
    problems: list[str] = []
    if not isinstance(data, Mapping):
        return [f"alert must be a mapping, got {type(data).__name__}"]

    alert_id = data.get("alert_id", data.get("id"))
    if alert_id is None or str(alert_id).strip() == "":
        problems.append("missing id")

    ts = data.get("timestamp")
    if ts is None or ts == "":
        problems.append("missing timestamp")
    elif not isinstance(ts, datetime):
        try:
            parse_ts(str(ts))
        except ValueError:
            problems.append(f"bad timestamp '{ts}'")

    sev = data.get("severity")
    if sev is None or sev == "":
        problems.append("missing severity")
    elif str(getattr(sev, "value", sev)).lower() not in _SEVERITIES:
        problems.append(f"unknown severity '{sev}'")

    for key in ("source", "message"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            problems.append(f"missing {key}")

    tags = data.get("tags")
    if tags is not None and (
        not isinstance(tags, (list, tuple, set)) or not all(isinstance(t, str) for t in tags)
    ):
        problems.append("tags must be a list of strings")

    meta = data.get("metadata")
    if meta is not None and not isinstance(meta, Mapping):
        problems.append("metadata must be a mapping")

    return problems


def parse_alert(data: Mapping[str, Any]) -> Alert:
    """Будує Alert з dict (рядок CSV / JSON об'єкт / payload хоста).

    Raises:
        AlertValidationError: Якщо відсутні обов'язкові поля.
    """
    problems = validate_alert(data)
    if problems:
        raise AlertValidationError(problems, data)

    tags = data.get("tags")
    return Alert(
        alert_id=str(data.get("alert_id", data.get("id"))),
        timestamp=parse_ts(data["timestamp"]),
        severity=str(getattr(data["severity"], "value", data["severity"])).lower(),
        source=data["source"].strip(),
        message=data["message"],
        metadata=dict(data.get("metadata") or {}),
        tags=list(tags) if tags is not None else None,
    )


def check_alert(alert: Alert) -> Alert:
    """Перевіряє вже створений Alert перед входом у ядро."""
    problems = validate_alert(
        {
            "alert_id": alert.alert_id,
            "timestamp": alert.timestamp,
            "severity": alert.severity,
            "source": alert.source,
            "message": alert.message,
            "tags": alert.tags,
            "metadata": alert.metadata,
        }
    )
    if problems:
        raise AlertValidationError(problems, alert)
    alert.timestamp = parse_ts(alert.timestamp)
    alert.severity = str(getattr(alert.severity, "value", alert.severity)).lower()
    return alert
