"""Pattern detectors — run synchronously for every recorded event.

Detector catalogue
──────────────────
  high_freq_<source>              ``created`` events from the source in the
                                  analysis window ≥ min_occurrences;
                                  confidence min(0.95, n / 50)
  cascading_failure               ≥ 5 ``created`` events in the trailing
                                  30 minutes from ≥ 3 sources;
                                  confidence min(0.9, sources / 10)
  time_pattern_<source>           UTC hours above 1.5 × the source's
                                  hourly average, source ≥ min_occurrences;
                                  confidence min(0.8, peak_hours / 8)
  severity_escalation_<alert_id>  ≥ 3 events for one alert with strictly
                                  increasing severity in arrival order;
                                  confidence 0.85, escalation rate 100

Each detector is independent; results are keyed by deterministic id and
merged by the analytics engine.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from src.alerting.metrics import mean, mttr_ms, scores, type_rate
from src.contracts.enums import EventType, severity_level
from src.contracts.event import AlertEvent
from src.contracts.pattern import AlertPattern, PatternCriteria, PatternImpact

log = logging.getLogger(__name__)

CASCADE_WINDOW = timedelta(minutes=30)
CASCADE_MIN_EVENTS = 5
CASCADE_MIN_SOURCES = 3
PEAK_FACTOR = 1.5
SEVERITY_ESCALATION_MIN = 3


@dataclass(slots=True)
class PatternDetectionConfig:
    enabled: bool = True
    min_occurrences: int = 5
    analysis_window_days: float = 7.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PatternDetectionConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            min_occurrences=int(data.get("min_occurrences", 5)),
            analysis_window_days=float(data.get("analysis_window_days", 7)),
        )


def _created(events: list[AlertEvent]) -> list[AlertEvent]:
    return [e for e in events if e.event_type == EventType.CREATED.value]


def detect_high_frequency(
    event: AlertEvent, recent: list[AlertEvent], cfg: PatternDetectionConfig
) -> AlertPattern | None:
    source_events = [e for e in _created(recent) if e.source == event.source]
    n = len(source_events)
    if n < cfg.min_occurrences:
        return None
    all_for_source = [e for e in recent if e.source == event.source]
    return AlertPattern(
        pattern_id=f"high_freq_{event.source}",
        name=f"High Frequency Alerts: {event.source}",
        description=f"Frequent alerts from {event.source}",
        criteria=PatternCriteria(sources=[event.source], frequency_threshold=n),
        confidence=min(0.95, n / 50),
        occurrences=n,
        last_seen=event.timestamp,
        impact=PatternImpact(
            avg_business_score=round(mean(scores(source_events)), 2),
            avg_resolution_time_ms=mttr_ms(all_for_source),
            escalation_rate=round(type_rate(all_for_source, EventType.ESCALATED.value), 2),
        ),
        recommendations=[
            "Review monitoring configuration for this source",
            "Consider alert throttling or suppression rules",
            "Investigate underlying system issues",
        ],
    )


def detect_cascading_failure(
    event: AlertEvent, recent: list[AlertEvent], now: datetime
) -> AlertPattern | None:
    cutoff = now - CASCADE_WINDOW
    window = sorted((e for e in _created(recent) if e.timestamp >= cutoff), key=lambda e: e.timestamp)
    if len(window) < CASCADE_MIN_EVENTS:
        return None
    sources = list(dict.fromkeys(e.source for e in window))
    if len(sources) < CASCADE_MIN_SOURCES:
        return None
    return AlertPattern(
        pattern_id="cascading_failure",
        name="Cascading Failure Pattern",
        description="Multiple services failing in sequence",
        criteria=PatternCriteria(
            sources=sources,
            correlation_rules=["temporal_proximity", "multiple_services"],
        ),
        confidence=min(0.9, len(sources) / 10),
        occurrences=len(window),
        last_seen=event.timestamp,
        impact=PatternImpact(avg_business_score=round(mean(scores(window)), 2)),
        recommendations=[
            "Check infrastructure dependencies",
            "Review recent deployments",
            "Investigate common failure points",
        ],
    )


def detect_time_pattern(
    event: AlertEvent, recent: list[AlertEvent], cfg: PatternDetectionConfig
) -> AlertPattern | None:
    source_events = [e for e in _created(recent) if e.source == event.source]
    n = len(source_events)
    if n < cfg.min_occurrences:
        return None
    hourly = Counter(e.timestamp.hour for e in source_events)
    avg = n / 24
    peaks = sorted(h for h, count in hourly.items() if count > avg * PEAK_FACTOR)
    if not peaks:
        return None
    return AlertPattern(
        pattern_id=f"time_pattern_{event.source}",
        name=f"Time-based Pattern: {event.source}",
        description=f"Alerts from {event.source} peak at specific hours",
        criteria=PatternCriteria(
            sources=[event.source],
            time_pattern="Peak hours (UTC): " + ", ".join(f"{h:02d}" for h in peaks),
        ),
        confidence=min(0.8, len(peaks) / 8),
        occurrences=n,
        last_seen=event.timestamp,
        impact=PatternImpact(
            avg_business_score=round(mean(scores(source_events)), 2),
            avg_resolution_time_ms=mttr_ms([e for e in recent if e.source == event.source]),
        ),
        recommendations=[
            "Consider time-based alert suppression during peak hours",
            "Investigate if pattern correlates with usage patterns",
            "Review scheduled tasks or batch jobs",
        ],
    )


def detect_severity_escalation(event: AlertEvent, recent: list[AlertEvent]) -> AlertPattern | None:
    # arrival order == list order, events are append-only
    alert_events = [e for e in recent if e.alert_id == event.alert_id]
    if len(alert_events) < SEVERITY_ESCALATION_MIN:
        return None
    levels = [severity_level(e.severity) for e in alert_events]
    if any(b <= a for a, b in zip(levels, levels[1:])):
        return None
    return AlertPattern(
        pattern_id=f"severity_escalation_{event.alert_id}",
        name="Severity Escalation Pattern",
        description="Alert severity escalating over time",
        criteria=PatternCriteria(
            severities=[e.severity for e in alert_events],
            correlation_rules=["severity_escalation"],
        ),
        confidence=0.85,
        occurrences=len(alert_events),
        last_seen=event.timestamp,
        impact=PatternImpact(
            avg_business_score=round(mean(scores(alert_events)), 2),
            escalation_rate=100.0,
        ),
        recommendations=[
            "Immediate escalation required",
            "Review incident response procedures",
            "Check if automated remediation is available",
        ],
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


def detect_patterns(
    event: AlertEvent,
    events: list[AlertEvent],
    cfg: PatternDetectionConfig,
    now: datetime,
) -> list[AlertPattern]:
    """Run every detector for *event* against *events* (the full log).

    Only events inside the analysis window ending at *now* are considered.
    """
    if not cfg.enabled:
        return []
    cutoff = now - timedelta(days=cfg.analysis_window_days)
    recent = [e for e in events if e.timestamp >= cutoff]
    found = [
        detect_high_frequency(event, recent, cfg),
        detect_cascading_failure(event, recent, now),
        detect_time_pattern(event, recent, cfg),
        detect_severity_escalation(event, recent),
    ]
    return [p for p in found if p is not None]
