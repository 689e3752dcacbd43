"""Metric helpers over AlertEvent collections.

MTTR / MTTA
───────────
    Per alert id: earliest ``created`` timestamp and the *first*
    ``resolved`` (MTTR) or ``acknowledged`` (MTTA) timestamp within the
    given events.  The mean is taken over alerts having both endpoints; an
    alert missing either one is excluded, never counted as zero.  Negative
    deltas (end recorded before creation) are excluded too.  Result in ms.

Percentile
──────────
    Nearest rank: sort ascending, ``index = ceil(p/100 · n) − 1`` clamped
    into ``[0, n−1]``.  No interpolation.

Rates
─────
    escalation / suppression rate = matching events / all events · 100.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime

from src.contracts.enums import EventType, Severity
from src.contracts.event import AlertEvent
from src.shared.clock import ms_between


def _time_to(events: Iterable[AlertEvent], end_type: str) -> list[float]:
    created: dict[str, datetime] = {}
    ended: dict[str, datetime] = {}
    for e in events:
        if e.event_type == EventType.CREATED.value:
            if e.alert_id not in created or e.timestamp < created[e.alert_id]:
                created[e.alert_id] = e.timestamp
        elif e.event_type == end_type:
            if e.alert_id not in ended or e.timestamp < ended[e.alert_id]:
                ended[e.alert_id] = e.timestamp
    deltas = []
    for alert_id, start in created.items():
        end = ended.get(alert_id)
        if end is None:
            continue
        delta = ms_between(start, end)
        if delta >= 0:
            deltas.append(delta)
    return deltas


def mttr_ms(events: Iterable[AlertEvent]) -> float:
    deltas = _time_to(events, EventType.RESOLVED.value)
    return sum(deltas) / len(deltas) if deltas else 0.0


def mtta_ms(events: Iterable[AlertEvent]) -> float:
    deltas = _time_to(events, EventType.ACKNOWLEDGED.value)
    return sum(deltas) / len(deltas) if deltas else 0.0


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = math.ceil(p / 100.0 * len(ordered)) - 1
    idx = min(max(idx, 0), len(ordered) - 1)
    return ordered[idx]


def scores(events: Iterable[AlertEvent]) -> list[float]:
    return [e.business_impact_score for e in events if e.business_impact_score is not None]


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def type_rate(events: Sequence[AlertEvent], event_type: str) -> float:
    if not events:
        return 0.0
    return sum(1 for e in events if e.event_type == event_type) / len(events) * 100.0


def severity_distribution(events: Iterable[AlertEvent]) -> dict[str, int]:
    dist = {s.value: 0 for s in Severity}
    for e in events:
        if e.event_type == EventType.CREATED.value and e.severity in dist:
            dist[e.severity] += 1
    return dist


def hourly_distribution(events: Iterable[AlertEvent]) -> dict[str, int]:
    """Created events per UTC hour ("00".."23"); only hours that occur."""
    counts = Counter(
        e.timestamp.strftime("%H") for e in events if e.event_type == EventType.CREATED.value
    )
    return dict(sorted(counts.items()))


def resolution_stats(events: Sequence[AlertEvent]) -> dict[str, float]:
    by_type = Counter(e.event_type for e in events)
    created = by_type[EventType.CREATED.value]

    def pct(kind: EventType) -> float:
        return round(by_type[kind.value] / created * 100.0, 2) if created else 0.0

    return {
        "resolution_rate": pct(EventType.RESOLVED),
        "acknowledgment_rate": pct(EventType.ACKNOWLEDGED),
        "escalation_rate": pct(EventType.ESCALATED),
        "suppression_rate": pct(EventType.SUPPRESSED),
    }
