"""Canonical enumerations for the alert contract."""

from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return _SEV_ORDER[self.value]


_SEV_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def severity_level(severity: str | Severity) -> int:
    """Ordinal of a severity: low=0 … critical=3."""
    return _SEV_ORDER[str(getattr(severity, "value", severity))]


class EventType(str, Enum):
    CREATED = "created"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"
    ENRICHED = "enriched"
    SCORED = "scored"
    GROUPED = "grouped"


class PatternStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class EscalationStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    EXHAUSTED = "exhausted"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not EscalationStatus.ACTIVE


class Notification(str, Enum):
    """Topics published on an engine's EventBus."""

    GROUP_NEW = "group.new"
    GROUP_UPDATED = "group.updated"
    GROUP_EXPIRED = "group.expired"
    GROUP_SUPPRESSED = "group.suppressed"
    ALERT_SUPPRESSED = "alert.suppressed"
    PATTERN_DETECTED = "pattern.detected"
    ESCALATION_STARTED = "escalation.started"
    ESCALATION_ADVANCED = "escalation.advanced"
    ESCALATION_ACKNOWLEDGED = "escalation.acknowledged"
    ESCALATION_EXHAUSTED = "escalation.exhausted"
    ESCALATION_RESOLVED = "escalation.resolved"
    ESCALATION_CANCELLED = "escalation.cancelled"
    SUPPRESSION_EXPIRED = "suppression.expired"
    BUDGET_EXCEEDED = "pipeline.budget_exceeded"
