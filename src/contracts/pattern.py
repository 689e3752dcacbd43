"""AlertPattern — виявлена повторювана умова в історії подій."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.enums import PatternStatus
from src.shared.clock import iso


@dataclass(slots=True)
class PatternCriteria:
    sources: list[str] = field(default_factory=list)
    severities: list[str] = field(default_factory=list)
    time_pattern: str | None = None
    frequency_threshold: int | None = None
    correlation_rules: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PatternImpact:
    avg_business_score: float = 0.0
    avg_resolution_time_ms: float = 0.0
    escalation_rate: float = 0.0


@dataclass(slots=True)
class AlertPattern:
    pattern_id: str  # deterministic, e.g. "high_freq_payments-api"
    name: str
    description: str
    criteria: PatternCriteria
    confidence: float  # [0, 1]
    occurrences: int
    last_seen: datetime
    impact: PatternImpact
    recommendations: list[str] = field(default_factory=list)
    status: str = PatternStatus.ACTIVE.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "name": self.name,
            "description": self.description,
            "criteria": asdict(self.criteria),
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "last_seen": iso(self.last_seen),
            "impact": asdict(self.impact),
            "recommendations": list(self.recommendations),
            "status": self.status,
        }
