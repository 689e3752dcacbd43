"""Alert contract — canonical data structures shared by all engines."""

from src.contracts.alert import Alert, parse_alert, validate_alert
from src.contracts.enums import (
    EscalationStatus,
    EventType,
    Notification,
    PatternStatus,
    Severity,
    severity_level,
)
from src.contracts.event import AlertEvent
from src.contracts.group import AlertGroup
from src.contracts.pattern import AlertPattern, PatternCriteria, PatternImpact

__all__ = [
    "Alert",
    "AlertEvent",
    "AlertGroup",
    "AlertPattern",
    "EscalationStatus",
    "EventType",
    "Notification",
    "PatternCriteria",
    "PatternImpact",
    "PatternStatus",
    "Severity",
    "parse_alert",
    "severity_level",
    "validate_alert",
]
