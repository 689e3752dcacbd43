"""Business Impact Scorer — 1..100 importance score per alert.

Score = Σ weightᵢ · signalᵢ over six normalised signals (each 0..100):

  severity            critical 100 · high 75 · medium 50 · low 25
  service_importance  tier score + SLA / dependency bonuses
  user_impact         % users affected + VIP boost, ×1.5 in business hours
  revenue_impact      revenue at risk through linear / exponential / log scale
  frequency           alerts per hour for (source, severity)
  duration            ``metadata["duration_ms"]`` bucketed

then scoring rules (multiplier, additive, overrides) and a clamp to [1, 100].

Unregistered services
─────────────────────
    An alert whose service is not in the registry is still scored with a
    conservative default: service 50, user impact 25, revenue 10.

Business hours are evaluated at the alert's own timestamp, so identical
inputs and registry state always give the same score.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.contracts.alert import Alert
from src.shared.clock import Clock, iso, utc_now
from src.shared.errors import ConfigurationError

log = logging.getLogger(__name__)

_SEVERITY_SCORES = {"critical": 100.0, "high": 75.0, "medium": 50.0, "low": 25.0}
_TIER_SCORES = {"critical": 100.0, "high": 75.0, "medium": 50.0, "low": 25.0}

DEFAULT_SERVICE_SCORE = 50.0
DEFAULT_USER_SCORE = 25.0
DEFAULT_REVENUE_SCORE = 10.0
DEFAULT_DURATION_SCORE = 30.0

REVENUE_METHODS = ("linear", "exponential", "logarithmic")
_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _hhmm(value: str | int) -> time:
    if isinstance(value, int):
        return time(hour=value)
    hh, mm = str(value).split(":", 1)
    return time(hour=int(hh), minute=int(mm))


def _day_index(day: str | int) -> int:
    if isinstance(day, int):
        return day
    return _DAY_NAMES.index(day.strip().lower())


# ═══════════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class ScoringWeights:
    severity: float = 0.25
    service_importance: float = 0.20
    user_impact: float = 0.20
    revenue_impact: float = 0.15
    frequency: float = 0.10
    duration: float = 0.10

    def validate(self) -> None:
        """Raise ConfigurationError unless weights are non-negative and sum to 1.0."""
        values = asdict(self)
        negative = [k for k, v in values.items() if v < 0]
        if negative:
            raise ConfigurationError(f"Negative scoring weights: {', '.join(negative)}")
        total = sum(values.values())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"Scoring weights must sum to 1.0, got {total:.6f}")


@dataclass(slots=True)
class BusinessHours:
    start: time = time(9, 0)
    end: time = time(17, 0)
    days: tuple[int, ...] = (0, 1, 2, 3, 4)  # Monday = 0
    timezone: str = "UTC"

    def contains(self, ts: datetime) -> bool:
        local = ts.astimezone(ZoneInfo(self.timezone))
        return local.weekday() in self.days and self.start <= local.time() <= self.end

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BusinessHours:
        try:
            hours = cls(
                start=_hhmm(data.get("start", "09:00")),
                end=_hhmm(data.get("end", "17:00")),
                days=tuple(_day_index(d) for d in data.get("days", (0, 1, 2, 3, 4))),
                timezone=data.get("timezone", "UTC"),
            )
            ZoneInfo(hours.timezone)
        except (ValueError, ZoneInfoNotFoundError) as exc:
            raise ConfigurationError(f"Invalid business_hours config: {exc}") from exc
        return hours


@dataclass(slots=True)
class ScoringConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    revenue_method: str = "logarithmic"
    revenue_multipliers: dict[str, float] = field(default_factory=dict)
    user_multiplier: float = 1.5

    def __post_init__(self) -> None:
        self.weights.validate()
        if self.revenue_method not in REVENUE_METHODS:
            raise ConfigurationError(
                f"Unknown revenue_method '{self.revenue_method}', expected one of {REVENUE_METHODS}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoringConfig:
        try:
            weights = ScoringWeights(**data.get("weights", {}))
        except TypeError as exc:
            raise ConfigurationError(f"Invalid scoring weights: {exc}") from exc
        return cls(
            weights=weights,
            business_hours=BusinessHours.from_dict(data.get("business_hours", {})),
            revenue_method=data.get("revenue_method", "logarithmic"),
            revenue_multipliers=dict(data.get("revenue_multipliers", {})),
            user_multiplier=float(data.get("user_multiplier", 1.5)),
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Business context registry
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class BusinessContext:
    service_id: str
    service_name: str
    tier: str  # critical | high | medium | low
    revenue: dict[str, float] | None = None  # hourly / daily / monthly
    users: dict[str, int] | None = None  # total / affected / vip
    dependencies: list[str] = field(default_factory=list)
    sla: dict[str, float] | None = None  # availability / response_time_ms / error_rate

    def __post_init__(self) -> None:
        if self.tier not in _TIER_SCORES:
            raise ConfigurationError(f"Service {self.service_id}: unknown tier '{self.tier}'")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BusinessContext:
        if "service_id" not in data:
            raise ConfigurationError("Business context entry without service_id")
        return cls(
            service_id=data["service_id"],
            service_name=data.get("service_name", data["service_id"]),
            tier=data.get("tier", "medium"),
            revenue=data.get("revenue"),
            users=data.get("users"),
            dependencies=list(data.get("dependencies", [])),
            sla=data.get("sla"),
        )


class BusinessContextRegistry:
    """serviceId → BusinessContext lookup consumed by the scorer."""

    def __init__(self, contexts: Iterable[BusinessContext] = ()) -> None:
        self._contexts: dict[str, BusinessContext] = {}
        for ctx in contexts:
            self.register(ctx)

    def register(self, ctx: BusinessContext) -> None:
        self._contexts[ctx.service_id] = ctx

    def remove(self, service_id: str) -> bool:
        return self._contexts.pop(service_id, None) is not None

    def get(self, service_id: str) -> BusinessContext | None:
        return self._contexts.get(service_id)

    def all(self) -> list[BusinessContext]:
        return list(self._contexts.values())

    def __len__(self) -> int:
        return len(self._contexts)

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> BusinessContextRegistry:
        registry = cls(BusinessContext.from_dict(s) for s in cfg.get("services", []))
        log.info("Loaded %d business contexts", len(registry))
        return registry


# ═══════════════════════════════════════════════════════════════════════════
#  Scoring rules
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class ScoringRule:
    rule_id: str
    name: str = ""
    sources: list[str] | None = None
    severities: list[str] | None = None
    tags: list[str] | None = None
    business_hours: bool | None = None
    time_of_day: tuple[time, time] | None = None
    multiplier: float = 1.0
    additive: float = 0.0
    overrides: dict[str, float] = field(default_factory=dict)  # "severity=critical" → 95
    enabled: bool = True

    def matches(self, alert: Alert, in_business_hours: bool, tz: str) -> bool:
        if self.sources is not None and alert.source not in self.sources:
            return False
        if self.severities is not None and alert.severity not in self.severities:
            return False
        if self.tags is not None and not set(self.tags) & set(alert.tags or ()):
            return False
        if self.business_hours is not None and self.business_hours != in_business_hours:
            return False
        if self.time_of_day is not None:
            local = alert.timestamp.astimezone(ZoneInfo(tz)).time()
            start, end = self.time_of_day
            if not start <= local <= end:
                return False
        return True

    def override_for(self, alert: Alert) -> float | None:
        for condition, value in self.overrides.items():
            key, _, expected = condition.partition("=")
            actual = alert.severity if key == "severity" else getattr(alert, key, None)
            if actual is None:
                actual = alert.metadata.get(key)
            if str(actual) == expected:
                return float(value)
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoringRule:
        tod = data.get("time_of_day")
        return cls(
            rule_id=data["rule_id"],
            name=data.get("name", data["rule_id"]),
            sources=data.get("sources"),
            severities=data.get("severities"),
            tags=data.get("tags"),
            business_hours=data.get("business_hours"),
            time_of_day=(_hhmm(tod["start"]), _hhmm(tod["end"])) if tod else None,
            multiplier=float(data.get("multiplier", 1.0)),
            additive=float(data.get("additive", 0.0)),
            overrides=dict(data.get("overrides", {})),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(slots=True)
class BusinessImpactScore:
    alert_id: str
    score: float
    breakdown: dict[str, float]
    factors: dict[str, Any]
    calculated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "factors": dict(self.factors),
            "calculated_at": iso(self.calculated_at),
        }


@dataclass(slots=True)
class _History:
    count: int
    first_seen: datetime
    last_seen: datetime


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class BusinessImpactScorer:
    """Deterministic weighted scorer; configuration errors fail at construction."""

    def __init__(
        self,
        config: ScoringConfig | None = None,
        registry: BusinessContextRegistry | None = None,
        rules: Iterable[ScoringRule] = (),
        clock: Clock | None = None,
    ) -> None:
        self.config = config or ScoringConfig()
        self.config.weights.validate()
        self.registry = registry or BusinessContextRegistry()
        self._rules: list[ScoringRule] = list(rules)
        self._clock = clock or utc_now
        self._history: dict[tuple[str, str], _History] = {}
        self._recent: list[BusinessImpactScore] = []
        self._lock = threading.Lock()
        self._stats: dict[str, Any] = {
            "alerts_scored": 0,
            "average_score": 0.0,
            "high_impact": 0,
            "medium_impact": 0,
            "low_impact": 0,
            "score_distribution": {"0-20": 0, "21-40": 0, "41-60": 0, "61-80": 0, "81-100": 0},
        }

    # ── configuration ────────────────────────────────────────────────────

    def update_weights(self, **weights: float) -> ScoringWeights:
        candidate = ScoringWeights(**{**asdict(self.config.weights), **weights})
        candidate.validate()
        self.config.weights = candidate
        log.info("Scoring weights updated: %s", asdict(candidate))
        return candidate

    def add_rule(self, rule: ScoringRule) -> None:
        self._rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.rule_id != rule_id]
        return len(self._rules) != before

    # ── scoring ──────────────────────────────────────────────────────────

    def score(self, alert: Alert) -> BusinessImpactScore:
        """Score *alert*; also records it in the (source, severity) history."""
        service_id = str(alert.metadata.get("service_id", alert.source))
        ctx = self.registry.get(service_id)
        in_hours = self.config.business_hours.contains(alert.timestamp)

        with self._lock:
            frequency = self._record_history(alert)

        duration_ms = _duration_ms(alert)
        revenue_at_risk = self._revenue_at_risk(ctx, duration_ms, in_hours)
        breakdown = {
            "severity": _SEVERITY_SCORES[alert.severity],
            "service_importance": self._service_score(ctx),
            "user_impact": self._user_score(alert, ctx, in_hours),
            "revenue_impact": self._revenue_score(revenue_at_risk),
            "frequency": _frequency_score(frequency),
            "duration": _duration_score(duration_ms),
        }
        weights = asdict(self.config.weights)
        total = sum(breakdown[k] * weights[k] for k in breakdown)

        applied: list[str] = []
        for rule in self._rules:
            if not rule.enabled or not rule.matches(alert, in_hours, self.config.business_hours.timezone):
                continue
            total = total * rule.multiplier + rule.additive
            override = rule.override_for(alert)
            if override is not None:
                total = override
            applied.append(rule.rule_id)

        final = round(min(100.0, max(1.0, total)), 2)
        result = BusinessImpactScore(
            alert_id=alert.alert_id,
            score=final,
            breakdown={k: round(v, 2) for k, v in breakdown.items()},
            factors={
                "service_id": service_id,
                "registered": ctx is not None,
                "tier": ctx.tier if ctx else "unknown",
                "users_affected": _users_affected(alert, ctx),
                "revenue_at_risk": round(revenue_at_risk, 2) if revenue_at_risk is not None else None,
                "frequency_per_hour": round(frequency, 4),
                "duration_ms": duration_ms,
                "business_hours": in_hours,
                "applied_rules": applied,
            },
            calculated_at=self._clock(),
        )
        with self._lock:
            self._update_stats(result)
        log.debug("Scored alert %s: %.2f (rules=%s)", alert.alert_id, final, applied)
        return result

    # ── signals ──────────────────────────────────────────────────────────

    def _record_history(self, alert: Alert) -> float:
        """Update history and return alerts per hour since first seen."""
        key = (alert.source, alert.severity)
        hist = self._history.get(key)
        if hist is None:
            hist = self._history[key] = _History(0, alert.timestamp, alert.timestamp)
        hist.count += 1
        hist.last_seen = max(hist.last_seen, alert.timestamp)
        hours = (alert.timestamp - hist.first_seen).total_seconds() / 3600.0
        return hist.count / max(hours, 1.0)

    def _service_score(self, ctx: BusinessContext | None) -> float:
        if ctx is None:
            return DEFAULT_SERVICE_SCORE
        score = _TIER_SCORES[ctx.tier]
        if ctx.sla:
            if ctx.sla.get("availability", 0) > 99.9:
                score += 10
            if ctx.sla.get("response_time_ms", math.inf) < 100:
                score += 5
            if ctx.sla.get("error_rate", math.inf) < 0.1:
                score += 5
        if len(ctx.dependencies) > 5:
            score += 10
        return min(100.0, score)

    def _user_score(self, alert: Alert, ctx: BusinessContext | None, in_hours: bool) -> float:
        if ctx is None or not ctx.users or not ctx.users.get("total"):
            return DEFAULT_USER_SCORE
        affected = _users_affected(alert, ctx) or 0
        score = min(100.0, affected / ctx.users["total"] * 100.0)
        vip = ctx.users.get("vip", 0)
        if vip and affected:
            score += vip / affected * 50.0
        if in_hours:
            score *= self.config.user_multiplier
        return min(100.0, score)

    def _revenue_at_risk(
        self, ctx: BusinessContext | None, duration_ms: float | None, in_hours: bool
    ) -> float | None:
        if ctx is None or not ctx.revenue or "hourly" not in ctx.revenue:
            return None
        hours = duration_ms / 3_600_000 if duration_ms else 1.0
        mults = self.config.revenue_multipliers
        risk = ctx.revenue["hourly"] * hours * mults.get(ctx.service_id, mults.get("default", 1.0))
        if in_hours:
            risk *= 2
        return risk

    def _revenue_score(self, risk: float | None) -> float:
        if risk is None:
            return DEFAULT_REVENUE_SCORE
        risk = max(0.0, risk)
        method = self.config.revenue_method
        if method == "linear":
            return min(100.0, risk / 10_000 * 100)
        if method == "exponential":
            return min(100.0, math.sqrt(risk / 1000) * 20)
        return min(100.0, math.log10(risk + 1) * 25)

    # ── stats ────────────────────────────────────────────────────────────

    def _update_stats(self, result: BusinessImpactScore) -> None:
        s = self._stats
        s["alerts_scored"] += 1
        n = s["alerts_scored"]
        s["average_score"] = (s["average_score"] * (n - 1) + result.score) / n
        s["score_distribution"][_score_range(result.score)] += 1
        if result.score > 80:
            s["high_impact"] += 1
        elif result.score >= 50:
            s["medium_impact"] += 1
        else:
            s["low_impact"] += 1
        self._recent.append(result)
        if len(self._recent) > 1000:
            del self._recent[:-1000]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            out = dict(self._stats)
            out["score_distribution"] = dict(self._stats["score_distribution"])
            out["average_score"] = round(out["average_score"], 2)
            return out

    def top_scores(self, limit: int = 10) -> list[BusinessImpactScore]:
        with self._lock:
            return sorted(self._recent, key=lambda s: s.score, reverse=True)[:limit]

    def history_size(self) -> int:
        return len(self._history)


# ── helpers ──────────────────────────────────────────────────────────────


def _duration_ms(alert: Alert) -> float | None:
    raw = alert.metadata.get("duration_ms")
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        log.warning("Alert %s: ignoring non-numeric duration_ms=%r", alert.alert_id, raw)
        return None


def _users_affected(alert: Alert, ctx: BusinessContext | None) -> int | None:
    if "users_affected" in alert.metadata:
        return int(alert.metadata["users_affected"])
    if ctx is None or not ctx.users:
        return None
    return ctx.users.get("affected", ctx.users.get("active"))


def _frequency_score(per_hour: float) -> float:
    if per_hour > 10:
        return 100.0
    if per_hour > 5:
        return 75.0
    if per_hour > 2:
        return 50.0
    if per_hour > 0.5:
        return 25.0
    return 10.0


def _duration_score(duration_ms: float | None) -> float:
    if not duration_ms:
        return DEFAULT_DURATION_SCORE
    hours = duration_ms / 3_600_000
    if hours > 4:
        return 100.0
    if hours > 2:
        return 75.0
    if hours > 1:
        return 50.0
    if hours > 0.5:
        return 25.0
    return 10.0


def _score_range(score: float) -> str:
    if score <= 20:
        return "0-20"
    if score <= 40:
        return "21-40"
    if score <= 60:
        return "41-60"
    if score <= 80:
        return "61-80"
    return "81-100"
