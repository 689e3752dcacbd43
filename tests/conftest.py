"""Shared fixtures for alert pipeline tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.contracts.alert import Alert
from src.contracts.event import AlertEvent
from src.shared.events import EventBus

BASE = datetime(2026, 2, 25, 10, 0, tzinfo=UTC)  # Wednesday, business hours

# ── Timestamp helpers ────────────────────────────────────────────────────


def ts_offset(seconds: float = 0, base: datetime = BASE) -> datetime:
    """Return an aware UTC datetime offset from *base* by *seconds*."""
    return base + timedelta(seconds=seconds)


class FakeClock:
    """Manually driven clock for engines that accept ``clock=``."""

    def __init__(self, start: datetime = BASE) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


# ── Helper: create Alert / AlertEvent with sensible defaults ─────────────


def make_alert(
    *,
    alert_id: str = "alert-1",
    timestamp: datetime | None = None,
    severity: str = "high",
    source: str = "payments-api",
    message: str = "Database connection failed",
    metadata: dict | None = None,
    tags: list[str] | None = None,
) -> Alert:
    return Alert(
        alert_id=alert_id,
        timestamp=timestamp or BASE,
        severity=severity,
        source=source,
        message=message,
        metadata=dict(metadata or {}),
        tags=tags,
    )


def alert_dict(**overrides) -> dict:
    data = {
        "id": "alert-1",
        "timestamp": "2026-02-25T10:00:00Z",
        "severity": "high",
        "source": "payments-api",
        "message": "Database connection failed",
    }
    data.update(overrides)
    return data


_seq = iter(range(1, 1_000_000))


def make_event(
    *,
    alert_id: str = "alert-1",
    event_type: str = "created",
    timestamp: datetime | None = None,
    source: str = "payments-api",
    severity: str = "high",
    duration_ms: float | None = None,
    score: float | None = None,
    tags: tuple[str, ...] = (),
) -> AlertEvent:
    return AlertEvent(
        event_id=f"evt-test-{next(_seq):06d}",
        alert_id=alert_id,
        timestamp=timestamp or BASE,
        event_type=event_type,
        source=source,
        severity=severity,
        duration_ms=duration_ms,
        business_impact_score=score,
        tags=tags,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus):
    """Collect every (topic, payload) published on *bus*."""
    seen: list[tuple[str, object]] = []
    bus.subscribe("*", lambda topic, payload: seen.append((topic, payload)))
    return seen


@pytest.fixture
def services_cfg() -> dict:
    return {
        "services": [
            {
                "service_id": "payments-api",
                "service_name": "Payments API",
                "tier": "critical",
                "dependencies": ["db", "cache", "auth", "queue", "fraud", "ledger"],
                "sla": {"availability": 99.99, "response_time_ms": 200, "error_rate": 0.1},
                "revenue": {"hourly": 50000, "daily": 1200000, "monthly": 36000000},
                "users": {"total": 100000, "active": 20000, "vip": 500},
            },
            {
                "service_id": "reporting",
                "service_name": "Reporting",
                "tier": "low",
                "dependencies": [],
                "revenue": {"hourly": 0, "daily": 0, "monthly": 0},
                "users": {"total": 200, "active": 20, "vip": 0},
            },
        ]
    }


@pytest.fixture
def escalation_cfg() -> dict:
    return {
        "contacts": [
            {"contact_id": "alice", "name": "Alice", "channels": ["pager"]},
            {"contact_id": "bob", "name": "Bob", "channels": ["email"]},
            {"contact_id": "carol", "name": "Carol", "channels": ["phone"]},
        ],
        "roles": [
            {"role_id": "primary-oncall", "contacts": ["alice"]},
            {"role_id": "team-lead", "contacts": ["bob"]},
            {"role_id": "management", "contacts": ["carol"]},
        ],
        "policies": [
            {
                "policy_id": "standard",
                "name": "Standard",
                "severities": ["high", "critical"],
                "steps": [
                    {"roles": ["primary-oncall"], "wait_minutes": 15},
                    {"roles": ["team-lead"], "wait_minutes": 30},
                ],
                "fallback_roles": ["management"],
            }
        ],
    }
