"""Analytics — append-only event log, query engine, metrics and patterns.

Event log
─────────
    ``record_event`` appends an immutable AlertEvent, refreshes the metrics
    snapshot and runs pattern detection synchronously.  Events older than
    ``retention_days`` are purged only by ``sweep()``.

Queries
───────
    Time range (inclusive) → filters → group-by → per-group metrics, plus
    overall aggregations.  Composite group key is the ``|``-joined list of
    per-dimension values (``all`` without dimensions).

    Filters: sources / severities / event_types must contain the event's
    value; tags require at least one shared tag (an untagged event never
    matches a tag filter); score bounds only apply to events that carry a
    score.

Cache
─────
    Results are cached by the JSON of the full query for
    ``cache_ttl_minutes``.  New events do NOT invalidate entries, so a
    cached answer can be up to one TTL stale.  This is accepted to keep
    dashboards cheap.
"""

from __future__ import annotations

import io
import itertools
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pandas as pd

from src.alerting.metrics import (
    hourly_distribution,
    mean,
    mtta_ms,
    mttr_ms,
    percentile,
    resolution_stats,
    scores,
    severity_distribution,
    type_rate,
)
from src.alerting.patterns import PatternDetectionConfig, detect_patterns
from src.contracts.enums import EventType, Notification, PatternStatus, Severity
from src.contracts.event import CSV_COLUMNS, AlertEvent
from src.contracts.pattern import AlertPattern
from src.shared.clock import Clock, iso, parse_ts, utc_now
from src.shared.errors import AlertValidationError, QueryError
from src.shared.events import EventBus
from src.shared.scheduler import PeriodicTask

log = logging.getLogger(__name__)

VALID_METRICS = (
    "count",
    "mttr",
    "mtta",
    "score_avg",
    "score_p95",
    "frequency",
    "escalation_rate",
    "suppression_rate",
)
VALID_DIMENSIONS = ("source", "severity", "tag", "hour", "day")
_EVENT_TYPES = {t.value for t in EventType}
_SEVERITIES = {s.value for s in Severity}
_PATTERN_STATUSES = {s.value for s in PatternStatus}


@dataclass(slots=True)
class AnalyticsConfig:
    retention_days: float = 30.0
    cache_results: bool = True
    cache_ttl_minutes: float = 5.0
    sweep_interval_sec: float = 3600.0
    pattern_detection: PatternDetectionConfig = field(default_factory=PatternDetectionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalyticsConfig:
        return cls(
            retention_days=float(data.get("retention_days", 30)),
            cache_results=bool(data.get("cache_results", True)),
            cache_ttl_minutes=float(data.get("cache_ttl_minutes", 5)),
            sweep_interval_sec=float(data.get("sweep_interval_sec", 3600)),
            pattern_detection=PatternDetectionConfig.from_dict(data.get("pattern_detection", {})),
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Query model
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class QueryFilters:
    sources: list[str] | None = None
    severities: list[str] | None = None
    tags: list[str] | None = None
    event_types: list[str] | None = None
    min_score: float | None = None
    max_score: float | None = None

    def accepts(self, e: AlertEvent) -> bool:
        if self.sources is not None and e.source not in self.sources:
            return False
        if self.severities is not None and e.severity not in self.severities:
            return False
        if self.event_types is not None and e.event_type not in self.event_types:
            return False
        if self.tags is not None and not set(self.tags) & set(e.tags):
            return False
        score = e.business_impact_score
        if score is not None:
            if self.min_score is not None and score < self.min_score:
                return False
            if self.max_score is not None and score > self.max_score:
                return False
        return True


@dataclass(slots=True)
class AnalyticsQuery:
    start: datetime
    end: datetime
    filters: QueryFilters = field(default_factory=QueryFilters)
    group_by: list[str] = field(default_factory=list)
    metrics: list[str] = field(default_factory=lambda: ["count"])

    def validate(self) -> None:
        """Raise QueryError (with this query attached) on malformed input."""
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise QueryError("start and end must be datetimes", self)
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise QueryError("start and end must be timezone-aware", self)
        if self.end <= self.start:
            raise QueryError("end must be after start", self)
        unknown = [d for d in self.group_by if d not in VALID_DIMENSIONS]
        if unknown:
            raise QueryError(f"Unknown group_by dimension(s): {', '.join(unknown)}", self)
        if len(set(self.group_by)) != len(self.group_by):
            raise QueryError("Duplicate group_by dimension", self)
        if not self.metrics:
            raise QueryError("At least one metric is required", self)
        bad = [m for m in self.metrics if m not in VALID_METRICS]
        if bad:
            raise QueryError(f"Unknown metric(s): {', '.join(bad)}", self)
        f = self.filters
        if f.event_types is not None and not set(f.event_types) <= _EVENT_TYPES:
            raise QueryError(f"Unknown event type filter: {f.event_types}", self)
        if f.severities is not None and not set(f.severities) <= _SEVERITIES:
            raise QueryError(f"Unknown severity filter: {f.severities}", self)
        if f.min_score is not None and f.max_score is not None and f.min_score > f.max_score:
            raise QueryError("min_score is greater than max_score", self)

    def cache_key(self) -> str:
        payload = {
            "start": iso(self.start),
            "end": iso(self.end),
            "filters": asdict(self.filters),
            "group_by": list(self.group_by),
            "metrics": list(self.metrics),
        }
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalyticsQuery:
        """Build a query from plain data; malformed input raises QueryError."""
        try:
            query = cls(
                start=parse_ts(data["start"]),
                end=parse_ts(data["end"]),
                filters=QueryFilters(**(data.get("filters") or {})),
                group_by=list(data.get("group_by") or []),
                metrics=list(data.get("metrics") or ["count"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise QueryError(f"Malformed query: {exc}", data) from exc
        query.validate()
        return query


@dataclass(slots=True)
class QueryRow:
    group: str
    values: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {"group": self.group, **self.values}


@dataclass(slots=True)
class QueryResult:
    rows: list[QueryRow]
    aggregations: dict[str, Any]
    total_count: int
    execution_ms: float
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": [r.to_dict() for r in self.rows],
            "aggregations": self.aggregations,
            "total_count": self.total_count,
            "execution_ms": self.execution_ms,
            "cached": self.cached,
        }


@dataclass(slots=True)
class AnalyticsMetrics:
    """Snapshot refreshed on every recorded event (trailing 24 h)."""

    total_alerts: int = 0
    alerts_per_hour: float = 0.0
    alerts_per_day: int = 0
    peak_hour: str | None = None
    mttr_ms: float = 0.0
    mtta_ms: float = 0.0
    escalation_rate: float = 0.0
    suppression_rate: float = 0.0
    avg_business_impact: float = 0.0
    critical_ratio: float = 0.0
    top_sources: list[dict[str, Any]] = field(default_factory=list)
    problematic_patterns: list[dict[str, Any]] = field(default_factory=list)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class _CacheEntry:
    result: QueryResult
    stored_at: datetime


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class AlertAnalytics:
    def __init__(
        self,
        config: AnalyticsConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or AnalyticsConfig()
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self._events: list[AlertEvent] = []
        self._patterns: dict[str, AlertPattern] = {}
        self._cache: dict[str, _CacheEntry] = {}
        self._metrics = AnalyticsMetrics()
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._sweeper = PeriodicTask("analytics-sweep", self.config.sweep_interval_sec, self.sweep)

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    # ── event log ────────────────────────────────────────────────────────

    def record_event(
        self,
        alert_id: str,
        event_type: str | EventType,
        source: str,
        severity: str | Severity,
        timestamp: datetime | str | None = None,
        duration_ms: float | None = None,
        business_impact_score: float | None = None,
        tags: list[str] | tuple[str, ...] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AlertEvent:
        """Append one lifecycle event and run pattern detection for it.

        Raises
        ──────
        AlertValidationError
            Unknown event type or severity, or missing alert id / source.
        """
        event_type = str(getattr(event_type, "value", event_type))
        severity = str(getattr(severity, "value", severity))
        problems = []
        if not alert_id:
            problems.append("missing alert_id")
        if not source:
            problems.append("missing source")
        if event_type not in _EVENT_TYPES:
            problems.append(f"unknown event type '{event_type}'")
        if severity not in _SEVERITIES:
            problems.append(f"unknown severity '{severity}'")
        if problems:
            raise AlertValidationError(problems, {"alert_id": alert_id, "event_type": event_type})

        ts = parse_ts(timestamp) if timestamp is not None else self._clock()
        with self._lock:
            event = AlertEvent(
                event_id=f"evt-{next(self._seq):08d}",
                alert_id=alert_id,
                timestamp=ts,
                event_type=event_type,
                source=source,
                severity=severity,
                duration_ms=duration_ms,
                business_impact_score=business_impact_score,
                tags=tuple(tags or ()),
                metadata=dict(metadata or {}),
            )
            self._events.append(event)
            snapshot = list(self._events)

        detected = detect_patterns(event, snapshot, self.config.pattern_detection, self._clock())
        for pattern in detected:
            self._merge_pattern(pattern)
        self._recalculate_metrics()
        for pattern in detected:
            self.bus.publish(Notification.PATTERN_DETECTED, pattern)
        return event

    def get_events(self, alert_id: str | None = None) -> list[AlertEvent]:
        with self._lock:
            if alert_id is None:
                return list(self._events)
            return [e for e in self._events if e.alert_id == alert_id]

    def event_count(self) -> int:
        return len(self._events)

    # ── patterns ─────────────────────────────────────────────────────────

    def _merge_pattern(self, pattern: AlertPattern) -> None:
        with self._lock:
            previous = self._patterns.get(pattern.pattern_id)
            if previous is not None:
                # operator-driven status survives re-detection
                pattern.status = previous.status
            else:
                log.info("Pattern detected: %s (confidence %.2f)", pattern.pattern_id, pattern.confidence)
            self._patterns[pattern.pattern_id] = pattern

    def get_patterns(self, status: str | PatternStatus | None = None) -> list[AlertPattern]:
        status = getattr(status, "value", status)
        with self._lock:
            patterns = list(self._patterns.values())
        return [p for p in patterns if status is None or p.status == status]

    def get_pattern(self, pattern_id: str) -> AlertPattern | None:
        return self._patterns.get(pattern_id)

    def set_pattern_status(self, pattern_id: str, status: str | PatternStatus) -> bool:
        status = str(getattr(status, "value", status))
        if status not in _PATTERN_STATUSES:
            raise ValueError(f"Unknown pattern status '{status}'")
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                return False
            pattern.status = status
        log.info("Pattern %s marked %s", pattern_id, status)
        return True

    # ── queries ──────────────────────────────────────────────────────────

    def execute_query(self, query: AnalyticsQuery) -> QueryResult:
        """Run *query*, serving from the TTL cache when possible.

        Raises
        ──────
        QueryError
            The query is malformed; the cache is left untouched.
        """
        query.validate()
        started = time.perf_counter()
        key = query.cache_key()
        now = self._clock()
        ttl = timedelta(minutes=self.config.cache_ttl_minutes)

        if self.config.cache_results:
            with self._lock:
                entry = self._cache.get(key)
            if entry is not None and now - entry.stored_at < ttl:
                r = entry.result
                return QueryResult(r.rows, r.aggregations, r.total_count, r.execution_ms, cached=True)

        with self._lock:
            events = [
                e for e in self._events
                if query.start <= e.timestamp <= query.end and query.filters.accepts(e)
            ]

        groups: dict[str, list[AlertEvent]] = {}
        if not query.group_by:
            groups["all"] = events
        else:
            for e in events:
                groups.setdefault(_group_key(e, query.group_by), []).append(e)

        hours = (query.end - query.start).total_seconds() / 3600.0
        rows = [QueryRow(k, _row_metrics(evts, query.metrics, hours)) for k, evts in groups.items()]
        rows.sort(key=lambda r: (-len(groups[r.group]), r.group))

        result = QueryResult(
            rows=rows,
            aggregations=_aggregations(events),
            total_count=len(events),
            execution_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        if self.config.cache_results:
            with self._lock:
                self._cache[key] = _CacheEntry(result, now)
        return result

    def cache_size(self) -> int:
        return len(self._cache)

    # ── metrics ──────────────────────────────────────────────────────────

    def _recalculate_metrics(self) -> None:
        now = self._clock()
        with self._lock:
            recent = [e for e in self._events if e.timestamp >= now - timedelta(hours=24)]
            created = [e for e in recent if e.event_type == EventType.CREATED.value]
            total_created = sum(1 for e in self._events if e.event_type == EventType.CREATED.value)
            active = [p for p in self._patterns.values() if p.status == PatternStatus.ACTIVE.value]

        hourly = hourly_distribution(created)
        source_counts: dict[str, int] = {}
        for e in created:
            source_counts[e.source] = source_counts.get(e.source, 0) + 1
        top = sorted(source_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
        problematic = sorted(active, key=lambda p: p.impact.avg_business_score, reverse=True)[:5]

        metrics = AnalyticsMetrics(
            total_alerts=total_created,
            alerts_per_day=len(created),
            alerts_per_hour=round(len(created) / 24, 4),
            peak_hour=max(hourly, key=lambda h: (hourly[h], h)) if hourly else None,
            mttr_ms=mttr_ms(recent),
            mtta_ms=mtta_ms(recent),
            escalation_rate=round(type_rate(recent, EventType.ESCALATED.value), 2),
            suppression_rate=round(type_rate(recent, EventType.SUPPRESSED.value), 2),
            avg_business_impact=round(mean(scores(created)), 2),
            critical_ratio=round(
                sum(1 for e in created if e.severity == Severity.CRITICAL.value) / len(created) * 100, 2
            ) if created else 0.0,
            top_sources=[{"source": s, "count": c} for s, c in top],
            problematic_patterns=[
                {"pattern": p.name, "frequency": p.occurrences, "impact": p.impact.avg_business_score}
                for p in problematic
            ],
            updated_at=iso(now),
        )
        with self._lock:
            self._metrics = metrics

    def get_metrics(self) -> AnalyticsMetrics:
        with self._lock:
            return AnalyticsMetrics(**asdict(self._metrics))

    def generate_insights(self) -> list[dict[str, Any]]:
        m = self.get_metrics()
        insights: list[dict[str, Any]] = []
        if m.alerts_per_hour > 50:
            insights.append({
                "type": "warning",
                "title": "High Alert Volume",
                "description": f"Current alert rate: {m.alerts_per_hour:.1f} per hour",
                "recommendation": "Review alert configuration and add suppression rules",
                "confidence": 0.9,
            })
        if m.mttr_ms > 30 * 60 * 1000:
            insights.append({
                "type": "critical",
                "title": "High Mean Time to Resolution",
                "description": f"MTTR: {m.mttr_ms / 60000:.1f} minutes",
                "recommendation": "Improve incident response procedures and consider automation",
                "confidence": 0.85,
            })
        active = self.get_patterns(PatternStatus.ACTIVE)
        if len(active) > 5:
            insights.append({
                "type": "warning",
                "title": "Multiple Active Patterns Detected",
                "description": f"{len(active)} alert patterns currently active",
                "recommendation": "Investigate recurring issues and implement preventive measures",
                "confidence": 0.8,
            })
        if m.suppression_rate > 50:
            insights.append({
                "type": "info",
                "title": "Most Alerts Are Suppressed",
                "description": f"Suppression rate: {m.suppression_rate:.1f}%",
                "recommendation": "Check whether noisy monitors should be retuned instead",
                "confidence": 0.7,
            })
        return sorted(insights, key=lambda i: i["confidence"], reverse=True)

    # ── export ───────────────────────────────────────────────────────────

    def export_data(self, fmt: str = "json") -> str:
        """Diagnostic dump: JSON of events, patterns and metrics, or CSV of events."""
        with self._lock:
            events = list(self._events)
            patterns = list(self._patterns.values())
        if fmt == "csv":
            frame = pd.DataFrame(
                [{**e.to_dict(), "tags": ";".join(e.tags)} for e in events],
                columns=CSV_COLUMNS,
            )
            buf = io.StringIO()
            frame.to_csv(buf, index=False)
            return buf.getvalue()
        if fmt != "json":
            raise ValueError(f"Unsupported export format '{fmt}'")
        return json.dumps(
            {
                "exported_at": iso(self._clock()),
                "events": [e.to_dict() for e in events],
                "patterns": [p.to_dict() for p in patterns],
                "metrics": self.get_metrics().to_dict(),
            },
            indent=2,
            ensure_ascii=False,
        )

    # ── maintenance ──────────────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Purge events past retention and expired cache entries."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self.config.retention_days)
        ttl = timedelta(minutes=self.config.cache_ttl_minutes)
        with self._lock:
            snapshot = list(self._events)
            cache_items = list(self._cache.items())
        keep_ids = {e.event_id for e in snapshot if e.timestamp >= cutoff}
        with self._lock:
            before = len(self._events)
            # events appended after the snapshot are always kept
            snap_ids = {e.event_id for e in snapshot}
            self._events = [e for e in self._events if e.event_id in keep_ids or e.event_id not in snap_ids]
            purged = before - len(self._events)
            expired = 0
            for key, entry in cache_items:
                if now - entry.stored_at >= ttl and self._cache.get(key) is entry:
                    del self._cache[key]
                    expired += 1
        if purged or expired:
            log.info("Analytics sweep: %d events purged, %d cache entries expired", purged, expired)
        return {"events_purged": purged, "cache_expired": expired}


# ── helpers ──────────────────────────────────────────────────────────────


def _group_key(e: AlertEvent, dims: list[str]) -> str:
    parts = []
    for d in dims:
        if d == "source":
            parts.append(e.source)
        elif d == "severity":
            parts.append(e.severity)
        elif d == "tag":
            parts.append(e.tags[0] if e.tags else "no-tag")
        elif d == "hour":
            parts.append(e.timestamp.strftime("%Y-%m-%d-%H"))
        else:
            parts.append(e.timestamp.strftime("%Y-%m-%d"))
    return "|".join(parts)


def _row_metrics(events: list[AlertEvent], metrics: list[str], hours: float) -> dict[str, float]:
    out: dict[str, float] = {}
    values = scores(events)
    for m in metrics:
        if m == "count":
            out[m] = len(events)
        elif m == "mttr":
            out[m] = mttr_ms(events)
        elif m == "mtta":
            out[m] = mtta_ms(events)
        elif m == "score_avg":
            out[m] = round(mean(values), 4)
        elif m == "score_p95":
            out[m] = percentile(values, 95)
        elif m == "frequency":
            out[m] = round(len(events) / hours, 4)
        elif m == "escalation_rate":
            out[m] = round(type_rate(events, EventType.ESCALATED.value), 4)
        elif m == "suppression_rate":
            out[m] = round(type_rate(events, EventType.SUPPRESSED.value), 4)
    return out


def _aggregations(events: list[AlertEvent]) -> dict[str, Any]:
    created_scores = scores(e for e in events if e.event_type == EventType.CREATED.value)
    return {
        "total_events": len(events),
        "unique_sources": len({e.source for e in events}),
        "severity_distribution": severity_distribution(events),
        "hourly_distribution": hourly_distribution(events),
        "avg_business_impact": round(mean(created_scores), 2),
        "resolution_stats": resolution_stats(events),
    }
