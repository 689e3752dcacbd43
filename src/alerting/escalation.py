"""Escalation Manager — per-alert state machine over ordered policy steps.

States
──────
    active(step i) → active(step i+1) → … → exhausted
          └──────────────→ acknowledged | resolved | cancelled

Deadlines
─────────
    Every step carries an absolute deadline ``step_entered_at + wait``.  When
    a step times out, the next one is entered *at the previous deadline*, not
    at the moment the timer happened to fire, so late ticks never add drift.
    ``tick(now)`` advances every overdue escalation exactly once per step;
    the optional ``threading.Timer`` per escalation uses the same path and
    re-checks status and step index at fire time, so a timer that fires
    after acknowledgment is a no-op.

Delivery
────────
    Notification channels are not part of this package.  The manager calls
    ``deliver(notification, contacts)``; failures are logged, written to the
    escalation history and counted.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from src.contracts.enums import EscalationStatus, Notification, Severity
from src.shared.clock import Clock, iso, ms_between, utc_now
from src.shared.errors import ConfigurationError, EscalationError
from src.shared.events import EventBus
from src.shared.scheduler import PeriodicTask

log = logging.getLogger(__name__)

_FINISHED_KEEP = timedelta(hours=24)
_SEVERITIES = {s.value for s in Severity}
_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _hhmm(value: str) -> time:
    hh, mm = str(value).split(":", 1)
    return time(int(hh), int(mm))


# ═══════════════════════════════════════════════════════════════════════════
#  On-call registry
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class Contact:
    contact_id: str
    name: str
    channels: list[str] = field(default_factory=list)
    active: bool = True


@dataclass(slots=True)
class ShiftRule:
    """Weekly shift; ``start > end`` wraps past midnight."""

    days: tuple[int, ...]
    start: time
    end: time
    contact_ids: list[str]

    def covers(self, local: datetime) -> bool:
        t = local.time()
        if self.start <= self.end:
            return local.weekday() in self.days and self.start <= t < self.end
        if t >= self.start:
            return local.weekday() in self.days
        return (local.weekday() - 1) % 7 in self.days and t < self.end


@dataclass(slots=True)
class Role:
    role_id: str
    name: str
    contacts: list[str] = field(default_factory=list)
    timezone: str = "UTC"
    shifts: list[ShiftRule] = field(default_factory=list)


class OnCallRegistry:
    """Role → contacts resolution through timezone-aware shift schedules."""

    def __init__(self) -> None:
        self._contacts: dict[str, Contact] = {}
        self._roles: dict[str, Role] = {}

    def add_contact(self, contact: Contact) -> None:
        self._contacts[contact.contact_id] = contact

    def add_role(self, role: Role) -> None:
        ZoneInfo(role.timezone)
        self._roles[role.role_id] = role

    def get_contact(self, contact_id: str) -> Contact | None:
        return self._contacts.get(contact_id)

    def has_role(self, role_id: str) -> bool:
        return role_id in self._roles

    def resolve(self, role_id: str, at: datetime) -> list[Contact]:
        """Active contacts on duty for *role_id* at *at*.

        A role without shifts always resolves to all of its contacts; a role
        with shifts resolves to nobody outside them.
        """
        role = self._roles.get(role_id)
        if role is None:
            log.warning("Unknown on-call role '%s'", role_id)
            return []
        if role.shifts:
            local = at.astimezone(ZoneInfo(role.timezone))
            ids: list[str] = []
            for shift in role.shifts:
                if shift.covers(local):
                    ids.extend(i for i in shift.contact_ids if i not in ids)
        else:
            ids = list(role.contacts)
        return [c for c in (self._contacts.get(i) for i in ids) if c is not None and c.active]

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> OnCallRegistry:
        reg = cls()
        try:
            for c in cfg.get("contacts", []):
                reg.add_contact(
                    Contact(
                        contact_id=c["contact_id"],
                        name=c.get("name", c["contact_id"]),
                        channels=list(c.get("channels", [])),
                        active=bool(c.get("active", True)),
                    )
                )
            for r in cfg.get("roles", []):
                shifts = [
                    ShiftRule(
                        days=tuple(d if isinstance(d, int) else _DAYS.index(d.lower()) for d in s["days"]),
                        start=_hhmm(s["start"]),
                        end=_hhmm(s["end"]),
                        contact_ids=list(s.get("contacts", [])),
                    )
                    for s in r.get("shifts", [])
                ]
                reg.add_role(
                    Role(
                        role_id=r["role_id"],
                        name=r.get("name", r["role_id"]),
                        contacts=list(r.get("contacts", [])),
                        timezone=r.get("timezone", "UTC"),
                        shifts=shifts,
                    )
                )
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Invalid on-call config: {exc}") from exc
        return reg


# ═══════════════════════════════════════════════════════════════════════════
#  Policies & state
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class EscalationStep:
    roles: list[str]
    wait_minutes: float

    @property
    def wait(self) -> timedelta:
        return timedelta(minutes=self.wait_minutes)


@dataclass(slots=True)
class EscalationPolicy:
    policy_id: str
    name: str
    steps: list[EscalationStep]
    enabled: bool = True
    severities: list[str] | None = None
    sources: list[str] | None = None
    tags: list[str] | None = None
    fallback_roles: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ConfigurationError(f"Escalation policy '{self.policy_id}' has no steps")
        for step in self.steps:
            if step.wait_minutes <= 0 or not step.roles:
                raise ConfigurationError(
                    f"Escalation policy '{self.policy_id}': each step needs roles and a positive wait"
                )

    def applies(self, severity: str, source: str, tags: Iterable[str] | None) -> bool:
        if not self.enabled:
            return False
        if self.severities is not None and severity not in self.severities:
            return False
        if self.sources is not None and source not in self.sources:
            return False
        if self.tags is not None and not set(self.tags) & set(tags or ()):
            return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationPolicy:
        try:
            steps = [
                EscalationStep(roles=list(s["roles"]), wait_minutes=float(s["wait_minutes"]))
                for s in data["steps"]
            ]
            return cls(
                policy_id=data["policy_id"],
                name=data.get("name", data["policy_id"]),
                steps=steps,
                enabled=bool(data.get("enabled", True)),
                severities=data.get("severities"),
                sources=data.get("sources"),
                tags=data.get("tags"),
                fallback_roles=list(data.get("fallback_roles", [])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid escalation policy: {exc}") from exc


@dataclass(slots=True)
class EscalationNotification:
    escalation_id: str
    alert_id: str
    policy_id: str
    step: int  # -1 for fallback after exhaustion
    roles: list[str]
    severity: str
    source: str
    kind: str  # step | fallback
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "escalation_id": self.escalation_id,
            "alert_id": self.alert_id,
            "policy_id": self.policy_id,
            "step": self.step,
            "roles": list(self.roles),
            "severity": self.severity,
            "source": self.source,
            "kind": self.kind,
            "at": iso(self.at),
        }


@dataclass(slots=True)
class EscalationState:
    escalation_id: str
    alert_id: str
    policy_id: str
    severity: str
    source: str
    status: EscalationStatus
    current_step: int
    step_entered_at: datetime
    deadline: datetime
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    acknowledged_step: int | None = None
    finished_at: datetime | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "escalation_id": self.escalation_id,
            "alert_id": self.alert_id,
            "policy_id": self.policy_id,
            "severity": self.severity,
            "source": self.source,
            "status": self.status.value,
            "current_step": self.current_step,
            "step_entered_at": iso(self.step_entered_at),
            "deadline": iso(self.deadline),
            "created_at": iso(self.created_at),
            "acknowledged_at": iso(self.acknowledged_at) if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_step": self.acknowledged_step,
            "history": list(self.history),
        }


Deliverer = Callable[[EscalationNotification, list[Contact]], None]


def log_deliverer(notification: EscalationNotification, contacts: list[Contact]) -> None:
    """Default deliverer: only writes the notification to the log."""
    log.info(
        "Escalation %s step %d (%s) → %s",
        notification.escalation_id,
        notification.step,
        notification.kind,
        ", ".join(c.contact_id for c in contacts) or "nobody",
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class EscalationManager:
    def __init__(
        self,
        registry: OnCallRegistry,
        policies: Iterable[EscalationPolicy],
        default_policy_id: str | None = None,
        deliver: Deliverer | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        sweep_interval_sec: float = 300.0,
    ) -> None:
        self.registry = registry
        self._policies: dict[str, EscalationPolicy] = {p.policy_id: p for p in policies}
        if default_policy_id is not None and default_policy_id not in self._policies:
            raise ConfigurationError(f"Default escalation policy '{default_policy_id}' is not defined")
        for policy in self._policies.values():
            for role_id in [r for s in policy.steps for r in s.roles] + policy.fallback_roles:
                if not registry.has_role(role_id):
                    log.warning("Policy %s references unknown role '%s'", policy.policy_id, role_id)
        self.default_policy_id = default_policy_id
        self._deliver = deliver or log_deliverer
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self._states: dict[str, EscalationState] = {}
        self._by_alert: dict[str, str] = {}  # alert_id → latest escalation_id
        self._timers: dict[str, threading.Timer] = {}
        self._running = False
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._counts = {"notifications_sent": 0, "notification_failures": 0}
        self._sweeper = PeriodicTask("escalation-sweep", sweep_interval_sec, self.sweep)

    @classmethod
    def from_config(cls, cfg: dict[str, Any], default_policy_id: str | None = None, **kwargs: Any) -> EscalationManager:
        policies = [EscalationPolicy.from_dict(p) for p in cfg.get("policies", [])]
        log.info("Loaded %d escalation policies", len(policies))
        return cls(OnCallRegistry.from_config(cfg), policies, default_policy_id=default_policy_id, **kwargs)

    # ── lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Arm wall-clock timers for active escalations and start the sweeper."""
        with self._lock:
            self._running = True
            for state in self._states.values():
                if state.status is EscalationStatus.ACTIVE:
                    self._arm(state)
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()
        with self._lock:
            self._running = False
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def __enter__(self) -> EscalationManager:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ── policies ─────────────────────────────────────────────────────────

    def add_policy(self, policy: EscalationPolicy) -> None:
        with self._lock:
            self._policies[policy.policy_id] = policy

    def get_policy(self, policy_id: str) -> EscalationPolicy | None:
        return self._policies.get(policy_id)

    def select_policy(self, severity: str, source: str, tags: Iterable[str] | None = None) -> EscalationPolicy | None:
        """Default policy when it applies, otherwise the first applicable one."""
        tags = list(tags or ())
        if self.default_policy_id:
            default = self._policies[self.default_policy_id]
            if default.applies(severity, source, tags):
                return default
        for policy in self._policies.values():
            if policy.applies(severity, source, tags):
                return policy
        return None

    # ── transitions ──────────────────────────────────────────────────────

    def start_escalation(
        self,
        alert_id: str,
        severity: str,
        source: str,
        tags: Iterable[str] | None = None,
        policy_id: str | None = None,
    ) -> str | None:
        """Start escalating *alert_id*; returns the escalation id.

        Returns ``None`` when no policy applies.  An alert that already has
        an active escalation keeps it and its id is returned.

        Raises
        ──────
        EscalationError
            *policy_id* is given but unknown.
        """
        if not alert_id or not source:
            raise EscalationError("start_escalation requires alert_id, severity and source")
        if severity not in _SEVERITIES:
            raise EscalationError(f"Unknown severity '{severity}'")
        tags = list(tags or ())
        if policy_id is not None:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise EscalationError(f"Unknown escalation policy '{policy_id}'")
            if not policy.applies(severity, source, tags):
                log.debug("Policy %s does not apply to alert %s", policy_id, alert_id)
                return None
        else:
            policy = self.select_policy(severity, source, tags)
            if policy is None:
                log.debug("No escalation policy applies to alert %s (%s/%s)", alert_id, source, severity)
                return None

        now = self._clock()
        with self._lock:
            existing = self._by_alert.get(alert_id)
            if existing and self._states[existing].status is EscalationStatus.ACTIVE:
                return existing
            esc_id = f"esc-{next(self._seq):06d}"
            first = policy.steps[0]
            state = EscalationState(
                escalation_id=esc_id,
                alert_id=alert_id,
                policy_id=policy.policy_id,
                severity=severity,
                source=source,
                status=EscalationStatus.ACTIVE,
                current_step=0,
                step_entered_at=now,
                deadline=now + first.wait,
                created_at=now,
            )
            self._states[esc_id] = state
            self._by_alert[alert_id] = esc_id
            state.history.append({"at": iso(now), "event": "started", "step": 0})
            pending = [self._notification(state, policy, 0, first.roles, "step", now)]
            if self._running:
                self._arm(state)

        log.info("Escalation %s started for alert %s (policy %s)", esc_id, alert_id, policy.policy_id)
        self.bus.publish(Notification.ESCALATION_STARTED, state)
        self._dispatch(state, pending)
        return esc_id

    def tick(self, now: datetime | None = None) -> int:
        """Advance every overdue escalation; returns the number of step transitions."""
        now = now or self._clock()
        with self._lock:
            due = [
                s for s in self._states.values()
                if s.status is EscalationStatus.ACTIVE and s.deadline <= now
            ]
        transitions = 0
        for state in due:
            while True:
                with self._lock:
                    if state.status is not EscalationStatus.ACTIVE or state.deadline > now:
                        break
                    step = state.current_step
                transitions += self._advance(state.escalation_id, step)
        return transitions

    def _fire(self, escalation_id: str, step: int) -> None:
        """Timer callback; stale timers are ignored by ``_advance``."""
        try:
            self._advance(escalation_id, step)
        except Exception:
            log.exception("Escalation timer for %s failed", escalation_id)

    def _advance(self, escalation_id: str, expected_step: int) -> int:
        """Leave *expected_step*; no-op unless the escalation is still in it."""
        with self._lock:
            state = self._states.get(escalation_id)
            if state is None or state.status is not EscalationStatus.ACTIVE or state.current_step != expected_step:
                return 0
            policy = self._policies[state.policy_id]
            entered = state.deadline
            nxt = expected_step + 1
            if nxt < len(policy.steps):
                step = policy.steps[nxt]
                state.current_step = nxt
                state.step_entered_at = entered
                state.deadline = entered + step.wait
                state.history.append({"at": iso(entered), "event": "advanced", "step": nxt})
                pending = [self._notification(state, policy, nxt, step.roles, "step", entered)]
                topic = Notification.ESCALATION_ADVANCED
                if self._running:
                    self._arm(state)
            else:
                state.status = EscalationStatus.EXHAUSTED
                state.finished_at = entered
                state.history.append({"at": iso(entered), "event": "exhausted", "step": expected_step})
                pending = []
                if policy.fallback_roles:
                    pending.append(
                        self._notification(state, policy, -1, policy.fallback_roles, "fallback", entered)
                    )
                topic = Notification.ESCALATION_EXHAUSTED
                self._timers.pop(escalation_id, None)

        if topic is Notification.ESCALATION_EXHAUSTED:
            log.warning(
                "Escalation %s for alert %s exhausted all %d steps without acknowledgment",
                escalation_id, state.alert_id, len(policy.steps),
            )
        else:
            log.info("Escalation %s advanced to step %d", escalation_id, state.current_step)
        self.bus.publish(topic, state)
        self._dispatch(state, pending)
        return 1

    def acknowledge(self, escalation_id: str, by: str) -> bool:
        """Halt advancement; records the step at which it was acknowledged."""
        now = self._clock()
        with self._lock:
            state = self._states.get(escalation_id)
            if state is None:
                raise EscalationError(f"Unknown escalation '{escalation_id}'")
            if state.status is not EscalationStatus.ACTIVE:
                return False
            state.status = EscalationStatus.ACKNOWLEDGED
            state.acknowledged_at = now
            state.acknowledged_by = by
            state.acknowledged_step = state.current_step
            state.finished_at = now
            state.history.append({"at": iso(now), "event": "acknowledged", "step": state.current_step, "by": by})
            self._cancel_timer(escalation_id)
        log.info("Escalation %s acknowledged by %s at step %d", escalation_id, by, state.current_step)
        self.bus.publish(Notification.ESCALATION_ACKNOWLEDGED, state)
        return True

    def acknowledge_alert(self, alert_id: str, by: str) -> bool:
        esc_id = self._by_alert.get(alert_id)
        return esc_id is not None and self.acknowledge(esc_id, by)

    def resolve(self, escalation_id: str, by: str) -> bool:
        return self._finish(escalation_id, EscalationStatus.RESOLVED, Notification.ESCALATION_RESOLVED, by)

    def resolve_alert(self, alert_id: str, by: str) -> bool:
        esc_id = self._by_alert.get(alert_id)
        return esc_id is not None and self.resolve(esc_id, by)

    def cancel(self, escalation_id: str, reason: str = "") -> bool:
        return self._finish(escalation_id, EscalationStatus.CANCELLED, Notification.ESCALATION_CANCELLED, reason)

    def _finish(self, escalation_id: str, status: EscalationStatus, topic: Notification, note: str) -> bool:
        now = self._clock()
        with self._lock:
            state = self._states.get(escalation_id)
            if state is None:
                raise EscalationError(f"Unknown escalation '{escalation_id}'")
            if state.status in (EscalationStatus.RESOLVED, EscalationStatus.CANCELLED):
                return False
            if status is EscalationStatus.CANCELLED and state.status is not EscalationStatus.ACTIVE:
                return False
            state.status = status
            state.finished_at = now
            state.history.append({"at": iso(now), "event": status.value, "note": note})
            self._cancel_timer(escalation_id)
        self.bus.publish(topic, state)
        return True

    # ── timers & delivery ────────────────────────────────────────────────

    def _arm(self, state: EscalationState) -> None:
        self._cancel_timer(state.escalation_id)
        delay = max(0.0, (state.deadline - self._clock()).total_seconds())
        timer = threading.Timer(delay, self._fire, args=(state.escalation_id, state.current_step))
        timer.daemon = True
        self._timers[state.escalation_id] = timer
        timer.start()

    def _cancel_timer(self, escalation_id: str) -> None:
        timer = self._timers.pop(escalation_id, None)
        if timer is not None:
            timer.cancel()

    def _notification(
        self,
        state: EscalationState,
        policy: EscalationPolicy,
        step: int,
        roles: list[str],
        kind: str,
        at: datetime,
    ) -> EscalationNotification:
        return EscalationNotification(
            escalation_id=state.escalation_id,
            alert_id=state.alert_id,
            policy_id=policy.policy_id,
            step=step,
            roles=list(roles),
            severity=state.severity,
            source=state.source,
            kind=kind,
            at=at,
        )

    def _dispatch(self, state: EscalationState, pending: list[EscalationNotification]) -> None:
        for note in pending:
            contacts: list[Contact] = []
            for role_id in note.roles:
                for c in self.registry.resolve(role_id, note.at):
                    if c not in contacts:
                        contacts.append(c)
            if not contacts:
                log.warning("Escalation %s step %d: no on-call contacts for roles %s",
                            note.escalation_id, note.step, note.roles)
            try:
                self._deliver(note, contacts)
            except Exception as exc:
                log.warning("Delivery failed for escalation %s step %d: %s", note.escalation_id, note.step, exc)
                with self._lock:
                    self._counts["notification_failures"] += 1
                    state.history.append({"at": iso(note.at), "event": "delivery_failed", "step": note.step, "error": str(exc)})
                continue
            with self._lock:
                self._counts["notifications_sent"] += 1
                state.history.append(
                    {"at": iso(note.at), "event": "notified", "step": note.step,
                     "contacts": [c.contact_id for c in contacts]}
                )

    # ── queries ──────────────────────────────────────────────────────────

    def get(self, escalation_id: str) -> EscalationState | None:
        return self._states.get(escalation_id)

    def for_alert(self, alert_id: str) -> EscalationState | None:
        esc_id = self._by_alert.get(alert_id)
        return self._states.get(esc_id) if esc_id else None

    def active(self) -> list[EscalationState]:
        with self._lock:
            return [s for s in self._states.values() if s.status is EscalationStatus.ACTIVE]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            states = list(self._states.values())
            by_status = {s.value: 0 for s in EscalationStatus}
            by_step: dict[int, int] = {}
            by_severity: dict[str, int] = {}
            ack_ms: list[float] = []
            for s in states:
                by_status[s.status.value] += 1
                by_step[s.current_step] = by_step.get(s.current_step, 0) + 1
                by_severity[s.severity] = by_severity.get(s.severity, 0) + 1
                if s.acknowledged_at is not None:
                    ack_ms.append(ms_between(s.created_at, s.acknowledged_at))
            return {
                "total": len(states),
                **by_status,
                "by_step": by_step,
                "by_severity": by_severity,
                "average_ack_ms": round(sum(ack_ms) / len(ack_ms), 2) if ack_ms else 0.0,
                **self._counts,
            }

    # ── maintenance ──────────────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> int:
        """Advance overdue steps, then forget escalations finished over 24 h ago."""
        now = now or self._clock()
        self.tick(now)
        with self._lock:
            snapshot = list(self._states.values())
        removed = 0
        for state in snapshot:
            if state.finished_at is None or state.finished_at >= now - _FINISHED_KEEP:
                continue
            with self._lock:
                if self._states.pop(state.escalation_id, None) is not None:
                    if self._by_alert.get(state.alert_id) == state.escalation_id:
                        del self._by_alert[state.alert_id]
                    removed += 1
        if removed:
            log.info("Escalation sweep removed %d finished escalations", removed)
        return removed
