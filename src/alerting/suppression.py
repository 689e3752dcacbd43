"""Suppression Engine — priority-ranked rules evaluated against each alert.

This engine is independent of dedup-level suppression.  Enabled rules are
sorted by descending ``priority``, then registration order; the first rule
that suppresses wins and evaluation stops.

Rule evaluation
───────────────
  1. filters (sources, severities, tags, message_pattern, metadata) must
     all match
  2. maintenance window containing the alert timestamp → suppress until
     the window end, whatever the severity
  3. critical alerts stop here unless the rule's ``severities`` names
     ``critical`` explicitly
  4. schedule window (day-of-week + HH:MM range, rule timezone) → suppress
  5. frequency limit exceeded (per rule, source, severity) → suppress
  6. a rule with no trigger at all suppresses every matching alert

Maintenance-window override
───────────────────────────
    Step 2 deliberately overrides the deduplicator's "never suppress
    critical" rule: planned maintenance silences everything in scope.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.contracts.alert import Alert
from src.contracts.enums import Notification, Severity
from src.shared.clock import Clock, iso, parse_ts, utc_now
from src.shared.errors import ConfigurationError
from src.shared.events import EventBus
from src.shared.scheduler import PeriodicTask

log = logging.getLogger(__name__)

MAINTENANCE_PRIORITY = 999
_COUNTER_IDLE = timedelta(hours=24)
_RECORD_KEEP = timedelta(hours=24)
_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _parse_time(value: str) -> time:
    hh, mm = str(value).split(":", 1)
    return time(int(hh), int(mm))


def _parse_day(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return _DAYS.index(value.strip().lower())


# ═══════════════════════════════════════════════════════════════════════════
#  Rule model
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class ScheduleWindow:
    """Recurring weekly window; ``start > end`` wraps past midnight."""

    days: tuple[int, ...]
    start: time
    end: time

    def contains(self, local: datetime) -> bool:
        t = local.time()
        if self.start <= self.end:
            return local.weekday() in self.days and self.start <= t < self.end
        if t >= self.start:
            return local.weekday() in self.days
        # after midnight: the window opened the previous day
        return (local.weekday() - 1) % 7 in self.days and t < self.end


@dataclass(slots=True)
class MaintenanceSpan:
    start: datetime
    end: datetime
    description: str = "Scheduled maintenance"

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end


@dataclass(slots=True)
class FrequencyLimit:
    max_alerts: int
    window_min: float


@dataclass(slots=True)
class SuppressionConditions:
    sources: list[str] | None = None
    severities: list[str] | None = None
    tags: list[str] | None = None
    message_pattern: str | None = None
    metadata: dict[str, Any] | None = None
    timezone: str = "UTC"
    schedule: list[ScheduleWindow] = field(default_factory=list)
    maintenance_windows: list[MaintenanceSpan] = field(default_factory=list)
    frequency: FrequencyLimit | None = None
    _regex: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.message_pattern:
            try:
                self._regex = re.compile(self.message_pattern, re.IGNORECASE)
            except re.error as exc:
                raise ConfigurationError(f"Bad message_pattern '{self.message_pattern}': {exc}") from exc
        try:
            ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as exc:
            raise ConfigurationError(f"Unknown timezone '{self.timezone}'") from exc

    @property
    def has_trigger(self) -> bool:
        return bool(self.schedule or self.maintenance_windows or self.frequency)

    def filters_match(self, alert: Alert) -> bool:
        if self.sources is not None and alert.source not in self.sources:
            return False
        if self.severities is not None and alert.severity not in self.severities:
            return False
        if self.tags is not None and not set(self.tags) & set(alert.tags or ()):
            return False
        if self._regex is not None and not self._regex.search(alert.message):
            return False
        if self.metadata:
            for key, value in self.metadata.items():
                if alert.metadata.get(key) != value:
                    return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuppressionConditions:
        schedule = data.get("schedule") or {}
        freq = data.get("frequency")
        try:
            windows = [
                ScheduleWindow(
                    days=tuple(_parse_day(d) for d in w.get("days", range(7))),
                    start=_parse_time(w["start"]),
                    end=_parse_time(w["end"]),
                )
                for w in schedule.get("windows", [])
            ]
            spans = [
                MaintenanceSpan(
                    start=parse_ts(m["start"]),
                    end=parse_ts(m["end"]),
                    description=m.get("description", "Scheduled maintenance"),
                )
                for m in data.get("maintenance_windows", [])
            ]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Invalid suppression schedule: {exc}") from exc
        return cls(
            sources=data.get("sources"),
            severities=data.get("severities"),
            tags=data.get("tags"),
            message_pattern=data.get("message_pattern"),
            metadata=data.get("metadata"),
            timezone=schedule.get("timezone", "UTC"),
            schedule=windows,
            maintenance_windows=spans,
            frequency=FrequencyLimit(int(freq["max_alerts"]), float(freq["window_min"])) if freq else None,
        )


@dataclass(slots=True)
class SuppressionAction:
    kind: str = "temporary"  # temporary | permanent
    duration_min: float | None = 60.0
    notify_on_suppression: bool = True

    def __post_init__(self) -> None:
        if self.kind not in ("temporary", "permanent"):
            raise ConfigurationError(f"Unknown suppression action '{self.kind}'")


@dataclass(slots=True)
class SuppressionRule:
    rule_id: str
    name: str
    conditions: SuppressionConditions = field(default_factory=SuppressionConditions)
    action: SuppressionAction = field(default_factory=SuppressionAction)
    priority: int = 1
    enabled: bool = True
    auto: bool = False  # generated for a maintenance window
    seq: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuppressionRule:
        if "rule_id" not in data:
            raise ConfigurationError("Suppression rule without rule_id")
        action = data.get("action") or {}
        return cls(
            rule_id=data["rule_id"],
            name=data.get("name", data["rule_id"]),
            conditions=SuppressionConditions.from_dict(data.get("conditions") or {}),
            action=SuppressionAction(
                kind=action.get("kind", "temporary"),
                duration_min=action.get("duration_min", 60.0),
                notify_on_suppression=bool(action.get("notify_on_suppression", True)),
            ),
            priority=int(data.get("priority", 1)),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        c = self.conditions
        out: dict[str, Any] = {
            "rule_id": self.rule_id,
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "conditions": {
                k: v
                for k, v in {
                    "sources": c.sources,
                    "severities": c.severities,
                    "tags": c.tags,
                    "message_pattern": c.message_pattern,
                    "metadata": c.metadata,
                }.items()
                if v is not None
            },
            "action": {
                "kind": self.action.kind,
                "duration_min": self.action.duration_min,
                "notify_on_suppression": self.action.notify_on_suppression,
            },
        }
        if c.schedule:
            out["conditions"]["schedule"] = {
                "timezone": c.timezone,
                "windows": [
                    {"days": list(w.days), "start": w.start.strftime("%H:%M"), "end": w.end.strftime("%H:%M")}
                    for w in c.schedule
                ],
            }
        if c.maintenance_windows:
            out["conditions"]["maintenance_windows"] = [
                {"start": iso(m.start), "end": iso(m.end), "description": m.description}
                for m in c.maintenance_windows
            ]
        if c.frequency:
            out["conditions"]["frequency"] = {
                "max_alerts": c.frequency.max_alerts,
                "window_min": c.frequency.window_min,
            }
        return out


_UPDATE_TYPES: dict[str, type] = {"conditions": SuppressionConditions, "action": SuppressionAction}


@dataclass(slots=True)
class MaintenanceWindow:
    window_id: str
    name: str
    start: datetime
    end: datetime
    rule_id: str
    services: list[str] | None = None
    tags: list[str] | None = None
    cancelled: bool = False
    completed: bool = False

    def status(self, now: datetime) -> str:
        if self.cancelled:
            return "cancelled"
        if self.completed or now >= self.end:
            return "completed"
        if now >= self.start:
            return "active"
        return "scheduled"


@dataclass(slots=True)
class SuppressionRecord:
    record_id: str
    rule_id: str
    alert_id: str
    source: str
    severity: str
    suppressed_at: datetime
    expires_at: datetime | None
    reasons: list[str]
    status: str = "active"  # active | expired | cancelled
    cancelled_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "rule_id": self.rule_id,
            "alert_id": self.alert_id,
            "source": self.source,
            "severity": self.severity,
            "suppressed_at": iso(self.suppressed_at),
            "expires_at": iso(self.expires_at) if self.expires_at else None,
            "reasons": list(self.reasons),
            "status": self.status,
        }


@dataclass(slots=True)
class SuppressionDecision:
    suppressed: bool
    rule_id: str | None = None
    reasons: list[str] = field(default_factory=list)
    record: SuppressionRecord | None = None
    notify: bool = False


@dataclass(slots=True)
class _Counter:
    count: int
    first_seen: datetime
    last_seen: datetime


@dataclass(slots=True)
class SuppressionConfig:
    sweep_interval_sec: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuppressionConfig:
        return cls(sweep_interval_sec=float(data.get("sweep_interval_sec", 60.0)))


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class SuppressionEngine:
    def __init__(
        self,
        rules: list[SuppressionRule] | None = None,
        config: SuppressionConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or SuppressionConfig()
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self._rules: dict[str, SuppressionRule] = {}
        self._records: dict[str, SuppressionRecord] = {}
        self._windows: dict[str, MaintenanceWindow] = {}
        self._counters: dict[tuple[str, str, str], _Counter] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._stats = {"evaluated": 0, "suppressed": 0, "by_rule": {}}
        self._sweeper = PeriodicTask("suppression-sweep", self.config.sweep_interval_sec, self.sweep)
        for rule in rules or []:
            self.register_rule(rule)

    @classmethod
    def from_config(cls, cfg: dict[str, Any], **kwargs: Any) -> SuppressionEngine:
        rules = [SuppressionRule.from_dict(r) for r in cfg.get("rules", [])]
        log.info("Loaded %d suppression rules", len(rules))
        return cls(rules=rules, **kwargs)

    # ── lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    # ── rule registry ────────────────────────────────────────────────────

    def register_rule(self, rule: SuppressionRule) -> None:
        with self._lock:
            existing = self._rules.get(rule.rule_id)
            rule.seq = existing.seq if existing else next(self._seq)
            self._rules[rule.rule_id] = rule
        log.debug("Registered suppression rule %s (priority %d)", rule.rule_id, rule.priority)

    def update_rule(self, rule_id: str, /, **changes: Any) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            for key, value in changes.items():
                if key not in ("name", "priority", "enabled", "conditions", "action"):
                    raise ConfigurationError(f"Cannot update suppression rule field '{key}'")
                expected = _UPDATE_TYPES.get(key)
                if expected is not None and not isinstance(value, expected):
                    raise ConfigurationError(
                        f"Suppression rule field '{key}' must be {expected.__name__}, got {type(value).__name__}"
                    )
            for key, value in changes.items():
                setattr(rule, key, value)
        return True

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def get_rules(self) -> list[SuppressionRule]:
        with self._lock:
            return sorted(self._rules.values(), key=lambda r: (-r.priority, r.seq))

    def import_rules(self, rules: list[dict[str, Any]]) -> tuple[int, list[str]]:
        """Register rules from dicts; bad entries are reported, not raised."""
        imported = 0
        errors: list[str] = []
        for data in rules:
            try:
                self.register_rule(SuppressionRule.from_dict(data))
                imported += 1
            except (ConfigurationError, KeyError, TypeError, ValueError) as exc:
                errors.append(f"{data.get('rule_id', '?')}: {exc}")
        if errors:
            log.warning("Imported %d suppression rules, %d rejected", imported, len(errors))
        return imported, errors

    def export_rules(self, rule_ids: list[str] | None = None) -> list[dict[str, Any]]:
        return [
            r.to_dict()
            for r in self.get_rules()
            if not r.auto and (rule_ids is None or r.rule_id in rule_ids)
        ]

    # ── evaluation ───────────────────────────────────────────────────────

    def evaluate(self, alert: Alert) -> SuppressionDecision:
        """First suppressing rule wins; returns a non-suppressed decision otherwise."""
        with self._lock:
            self._stats["evaluated"] += 1
            for rule in self.get_rules():
                if not rule.enabled:
                    continue
                reasons, expires_at = self._evaluate_rule(rule, alert, dry_run=False)
                if reasons is None:
                    continue
                record = self._record(rule, alert, reasons, expires_at)
                by_rule = self._stats["by_rule"]
                by_rule[rule.rule_id] = by_rule.get(rule.rule_id, 0) + 1
                self._stats["suppressed"] += 1
                decision = SuppressionDecision(
                    suppressed=True,
                    rule_id=rule.rule_id,
                    reasons=reasons,
                    record=record,
                    notify=rule.action.notify_on_suppression,
                )
                break
            else:
                return SuppressionDecision(suppressed=False)

        self.bus.publish(Notification.ALERT_SUPPRESSED, {"alert": alert, "decision": decision})
        log.info("Alert %s suppressed by rule %s: %s", alert.alert_id, decision.rule_id, "; ".join(decision.reasons))
        return decision

    def test_rule(self, rule_id: str, alert: Alert) -> SuppressionDecision:
        """Dry run of one rule (enabled or not); counters are not touched."""
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ConfigurationError(f"Unknown suppression rule '{rule_id}'")
        reasons, _ = self._evaluate_rule(rule, alert, dry_run=True)
        if reasons is None:
            return SuppressionDecision(suppressed=False, rule_id=rule_id)
        return SuppressionDecision(
            suppressed=True, rule_id=rule_id, reasons=reasons, notify=rule.action.notify_on_suppression
        )

    def _evaluate_rule(
        self, rule: SuppressionRule, alert: Alert, dry_run: bool
    ) -> tuple[list[str] | None, datetime | None]:
        """Return (reasons, expires_at); reasons is None when the rule does not suppress."""
        c = rule.conditions
        if not c.filters_match(alert):
            return None, None

        for span in c.maintenance_windows:
            if span.contains(alert.timestamp):
                return [f"Maintenance window: {span.description}"], span.end

        is_critical = alert.severity == Severity.CRITICAL.value
        if is_critical and Severity.CRITICAL.value not in (c.severities or ()):
            return None, None

        expires_at = self._expiry(rule, alert.timestamp)
        if c.schedule:
            local = alert.timestamp.astimezone(ZoneInfo(c.timezone))
            for window in c.schedule:
                if window.contains(local):
                    rng = f"{window.start.strftime('%H:%M')}-{window.end.strftime('%H:%M')}"
                    return [f"Suppressed during scheduled window {rng} {c.timezone}"], expires_at

        if c.frequency is not None:
            count = self._count(rule, alert, c.frequency, dry_run)
            if count > c.frequency.max_alerts:
                return [
                    f"Alert frequency exceeded: {count}/{c.frequency.max_alerts} "
                    f"in {c.frequency.window_min:g} minutes"
                ], expires_at

        if not c.has_trigger:
            return [f"Matched rule {rule.name}"], expires_at
        return None, None

    def _count(self, rule: SuppressionRule, alert: Alert, limit: FrequencyLimit, dry_run: bool) -> int:
        key = (rule.rule_id, alert.source, alert.severity)
        ts = alert.timestamp
        counter = self._counters.get(key)
        window_open = counter is not None and counter.first_seen >= ts - timedelta(minutes=limit.window_min)
        count = counter.count + 1 if window_open else 1
        if not dry_run:
            if window_open:
                counter.count = count
                counter.last_seen = max(counter.last_seen, ts)
            else:
                self._counters[key] = _Counter(1, ts, ts)
        return count

    def _expiry(self, rule: SuppressionRule, ts: datetime) -> datetime | None:
        if rule.action.kind == "temporary" and rule.action.duration_min:
            return ts + timedelta(minutes=rule.action.duration_min)
        return None

    def _record(
        self, rule: SuppressionRule, alert: Alert, reasons: list[str], expires_at: datetime | None
    ) -> SuppressionRecord:
        record = SuppressionRecord(
            record_id=f"supp-{next(self._seq):06d}",
            rule_id=rule.rule_id,
            alert_id=alert.alert_id,
            source=alert.source,
            severity=alert.severity,
            suppressed_at=alert.timestamp,
            expires_at=expires_at,
            reasons=list(reasons),
        )
        self._records[record.record_id] = record
        return record

    # ── suppression records ──────────────────────────────────────────────

    def cancel_suppression(self, record_id: str, cancelled_by: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.status != "active":
                return False
            record.status = "cancelled"
            record.cancelled_by = cancelled_by
        log.info("Suppression %s cancelled by %s", record_id, cancelled_by)
        return True

    def active_suppressions(
        self,
        rule_id: str | None = None,
        source: str | None = None,
        severity: str | None = None,
    ) -> list[SuppressionRecord]:
        with self._lock:
            return [
                r
                for r in self._records.values()
                if r.status == "active"
                and (rule_id is None or r.rule_id == rule_id)
                and (source is None or r.source == source)
                and (severity is None or r.severity == severity)
            ]

    # ── maintenance windows ──────────────────────────────────────────────

    def create_maintenance_window(
        self,
        name: str,
        start: datetime,
        end: datetime,
        services: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """Register a window and its auto rule (priority 999); returns the window id."""
        if end <= start:
            raise ConfigurationError(f"Maintenance window '{name}' ends before it starts")
        with self._lock:
            seq = next(self._seq)
            window_id = f"mw-{seq:06d}"
            rule = SuppressionRule(
                rule_id=f"maintenance-{window_id}",
                name=f"Maintenance: {name}",
                conditions=SuppressionConditions(
                    sources=list(services) if services else None,
                    tags=list(tags) if tags else None,
                    maintenance_windows=[MaintenanceSpan(start, end, name)],
                ),
                action=SuppressionAction(kind="temporary", duration_min=None, notify_on_suppression=False),
                priority=MAINTENANCE_PRIORITY,
                auto=True,
            )
            self.register_rule(rule)
            self._windows[window_id] = MaintenanceWindow(
                window_id=window_id,
                name=name,
                start=start,
                end=end,
                rule_id=rule.rule_id,
                services=rule.conditions.sources,
                tags=rule.conditions.tags,
            )
        log.info("Maintenance window %s '%s' %s → %s", window_id, name, iso(start), iso(end))
        return window_id

    def cancel_maintenance_window(self, window_id: str) -> bool:
        with self._lock:
            window = self._windows.get(window_id)
            if window is None or window.cancelled:
                return False
            window.cancelled = True
            self._rules.pop(window.rule_id, None)
        return True

    def maintenance_windows(self, status: str | None = None) -> list[MaintenanceWindow]:
        now = self._clock()
        with self._lock:
            windows = list(self._windows.values())
        return [w for w in windows if status is None or w.status(now) == status]

    # ── maintenance ──────────────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        now = now or self._clock()
        with self._lock:
            records = list(self._records.values())
            counters = list(self._counters.items())
            windows = list(self._windows.values())

        expired: list[SuppressionRecord] = []
        with self._lock:
            for record in records:
                if record.status == "active" and record.expires_at is not None and record.expires_at <= now:
                    record.status = "expired"
                    expired.append(record)
                elif record.status != "active" and record.suppressed_at < now - _RECORD_KEEP:
                    self._records.pop(record.record_id, None)
            pruned = 0
            for key, counter in counters:
                if counter.last_seen < now - _COUNTER_IDLE and self._counters.get(key) is counter:
                    del self._counters[key]
                    pruned += 1
            completed = 0
            for window in windows:
                if not window.completed and not window.cancelled and now >= window.end:
                    window.completed = True
                    self._rules.pop(window.rule_id, None)
                    completed += 1

        for record in expired:
            self.bus.publish(Notification.SUPPRESSION_EXPIRED, record)
        if expired or pruned or completed:
            log.info(
                "Suppression sweep: %d expired, %d counters pruned, %d windows completed",
                len(expired), pruned, completed,
            )
        return {"expired": len(expired), "counters_pruned": pruned, "windows_completed": completed}

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            return {
                "rules": len(self._rules),
                "enabled_rules": sum(1 for r in self._rules.values() if r.enabled),
                "evaluated": self._stats["evaluated"],
                "suppressed": self._stats["suppressed"],
                "by_rule": dict(self._stats["by_rule"]),
                "active_suppressions": sum(1 for r in self._records.values() if r.status == "active"),
                "active_maintenance_windows": sum(
                    1 for w in self._windows.values() if w.status(now) == "active"
                ),
            }
