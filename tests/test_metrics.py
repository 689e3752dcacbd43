"""Tests for src.alerting.metrics — MTTR/MTTA, percentiles, rates."""

from __future__ import annotations

import pytest

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
from tests.conftest import make_event, ts_offset

# ═══════════════════════════════════════════════════════════════════════════
#  Percentile
# ═══════════════════════════════════════════════════════════════════════════


class TestPercentile:
    def test_empty(self):
        assert percentile([], 95) == 0.0

    def test_nearest_rank(self):
        values = list(range(1, 101))
        assert percentile(values, 95) == 95
        assert percentile(values, 99) == 99
        assert percentile(values, 100) == 100

    def test_p95_of_ten_values_is_last(self):
        assert percentile(list(range(10, 101, 10)), 95) == 100

    def test_small_sample_rounds_up(self):
        assert percentile([10, 20, 30], 50) == 20
        assert percentile([10, 20, 30], 95) == 30

    def test_unsorted_input(self):
        assert percentile([30, 10, 20], 0) == 10

    def test_single_value(self):
        assert percentile([7.5], 95) == 7.5


# ═══════════════════════════════════════════════════════════════════════════
#  MTTR / MTTA
# ═══════════════════════════════════════════════════════════════════════════


class TestTimeToResolve:
    def test_single_alert(self):
        events = [
            make_event(alert_id="a1", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(600)),
        ]
        assert mttr_ms(events) == 600_000

    def test_mean_over_alerts(self):
        events = [
            make_event(alert_id="a1", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(60)),
            make_event(alert_id="a2", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a2", event_type="resolved", timestamp=ts_offset(180)),
        ]
        assert mttr_ms(events) == 120_000

    def test_unresolved_excluded_not_zero(self):
        events = [
            make_event(alert_id="a1", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(600)),
            make_event(alert_id="a2", event_type="created", timestamp=ts_offset(0)),
        ]
        assert mttr_ms(events) == 600_000

    def test_resolution_without_creation_excluded(self):
        events = [make_event(alert_id="a9", event_type="resolved", timestamp=ts_offset(60))]
        assert mttr_ms(events) == 0.0

    def test_first_resolution_counts(self):
        events = [
            make_event(alert_id="a1", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(300)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(900)),
        ]
        assert mttr_ms(events) == 300_000

    def test_mtta(self):
        events = [
            make_event(alert_id="a1", event_type="created", timestamp=ts_offset(0)),
            make_event(alert_id="a1", event_type="acknowledged", timestamp=ts_offset(30)),
            make_event(alert_id="a1", event_type="resolved", timestamp=ts_offset(900)),
        ]
        assert mtta_ms(events) == 30_000

    def test_empty(self):
        assert mttr_ms([]) == 0.0
        assert mtta_ms([]) == 0.0


# ═══════════════════════════════════════════════════════════════════════════
#  Rates & distributions
# ═══════════════════════════════════════════════════════════════════════════


class TestRates:
    def test_scores_skip_missing(self):
        events = [make_event(score=40.0), make_event(score=None), make_event(score=60.0)]
        assert scores(events) == [40.0, 60.0]
        assert mean(scores(events)) == 50.0
        assert mean([]) == 0.0

    def test_type_rate(self):
        events = [make_event(event_type="created"), make_event(event_type="escalated")]
        assert type_rate(events, "escalated") == 50.0
        assert type_rate([], "escalated") == 0.0

    def test_severity_distribution_counts_created_only(self):
        events = [
            make_event(severity="critical"),
            make_event(severity="low"),
            make_event(severity="low", event_type="resolved"),
        ]
        assert severity_distribution(events) == {"low": 1, "medium": 0, "high": 0, "critical": 1}

    def test_hourly_distribution(self):
        events = [make_event(timestamp=ts_offset(0)), make_event(timestamp=ts_offset(3600)),
                  make_event(timestamp=ts_offset(3700))]
        assert hourly_distribution(events) == {"10": 1, "11": 2}

    def test_resolution_stats(self):
        events = [
            make_event(alert_id="a1", event_type="created"),
            make_event(alert_id="a2", event_type="created"),
            make_event(alert_id="a1", event_type="resolved"),
            make_event(alert_id="a2", event_type="suppressed"),
        ]
        stats = resolution_stats(events)
        assert stats["resolution_rate"] == 50.0
        assert stats["suppression_rate"] == 50.0
        assert stats["acknowledgment_rate"] == 0.0

    def test_resolution_stats_empty(self):
        assert resolution_stats([])["resolution_rate"] == pytest.approx(0.0)
