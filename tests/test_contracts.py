"""Tests for src.contracts — alert parsing, events, patterns, enums."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from src.contracts.alert import check_alert, parse_alert, validate_alert
from src.contracts.enums import EscalationStatus, Severity, severity_level
from src.contracts.event import CSV_COLUMNS, AlertEvent
from src.contracts.pattern import AlertPattern, PatternCriteria, PatternImpact
from src.shared.clock import iso, parse_ts
from src.shared.errors import AlertValidationError
from tests.conftest import BASE, alert_dict, make_alert, make_event

# ═══════════════════════════════════════════════════════════════════════════
#  Alert validation
# ═══════════════════════════════════════════════════════════════════════════


class TestValidateAlert:
    def test_valid_record_has_no_problems(self):
        assert validate_alert(alert_dict()) == []

    def test_alert_id_key_accepted(self):
        data = alert_dict()
        data["alert_id"] = data.pop("id")
        assert validate_alert(data) == []

    def test_missing_fields_all_reported(self):
        problems = validate_alert({"message": "x"})
        assert "missing id" in problems
        assert "missing timestamp" in problems
        assert "missing severity" in problems
        assert "missing source" in problems

    def test_unknown_severity(self):
        problems = validate_alert(alert_dict(severity="fatal"))
        assert problems == ["unknown severity 'fatal'"]

    def test_bad_timestamp(self):
        problems = validate_alert(alert_dict(timestamp="yesterday"))
        assert problems == ["bad timestamp 'yesterday'"]

    def test_tags_must_be_strings(self):
        assert validate_alert(alert_dict(tags=["ok", 3])) == ["tags must be a list of strings"]

    def test_metadata_must_be_mapping(self):
        assert validate_alert(alert_dict(metadata=["x"])) == ["metadata must be a mapping"]

    def test_non_mapping_rejected(self):
        assert validate_alert(["not", "a", "dict"])[0].startswith("alert must be a mapping")


class TestParseAlert:
    def test_parses_timestamp_to_utc(self):
        alert = parse_alert(alert_dict(timestamp="2026-02-25T12:00:00+02:00"))
        assert alert.timestamp == datetime(2026, 2, 25, 10, 0, tzinfo=UTC)

    def test_severity_lowercased(self):
        assert parse_alert(alert_dict(severity="HIGH")).severity == "high"

    def test_enum_severity_accepted(self):
        assert parse_alert(alert_dict(severity=Severity.CRITICAL)).severity == "critical"

    def test_invalid_raises_with_problems(self):
        with pytest.raises(AlertValidationError) as err:
            parse_alert(alert_dict(source=""))
        assert err.value.problems == ["missing source"]
        assert "Invalid alert" in str(err.value)

    def test_tags_copied(self):
        tags = ["db"]
        alert = parse_alert(alert_dict(tags=tags))
        tags.append("x")
        assert alert.tags == ["db"]


class TestCheckAlert:
    def test_normalises_naive_timestamp(self):
        alert = make_alert(timestamp=datetime(2026, 2, 25, 10, 0))
        check_alert(alert)
        assert alert.timestamp.tzinfo is not None

    def test_rejects_empty_message(self):
        with pytest.raises(AlertValidationError):
            check_alert(make_alert(message="  "))

    def test_to_dict_roundtrips_iso(self):
        d = make_alert().to_dict()
        assert d["timestamp"] == "2026-02-25T10:00:00.000Z"
        assert parse_ts(d["timestamp"]) == BASE


# ═══════════════════════════════════════════════════════════════════════════
#  Enums
# ═══════════════════════════════════════════════════════════════════════════


class TestEnums:
    def test_severity_order(self):
        levels = [severity_level(s) for s in ("low", "medium", "high", "critical")]
        assert levels == [0, 1, 2, 3]
        assert Severity.HIGH.level == 2

    def test_terminal_statuses(self):
        assert not EscalationStatus.ACTIVE.terminal
        assert EscalationStatus.EXHAUSTED.terminal


# ═══════════════════════════════════════════════════════════════════════════
#  AlertEvent / AlertPattern serialisation
# ═══════════════════════════════════════════════════════════════════════════


class TestAlertEvent:
    def test_is_frozen(self):
        e = make_event()
        with pytest.raises(AttributeError):
            e.alert_id = "other"  # type: ignore[misc]

    def test_csv_row_matches_header(self):
        e = make_event(tags=("db", "prod"), score=42.0)
        row = e.to_csv_row().split(",")
        assert len(row) == len(CSV_COLUMNS)
        assert row[CSV_COLUMNS.index("tags")] == "db;prod"
        assert AlertEvent.csv_header().split(",") == CSV_COLUMNS

    def test_json(self):
        e = make_event(score=10.0)
        data = json.loads(e.to_json())
        assert data["business_impact_score"] == 10.0
        assert data["timestamp"] == iso(BASE)


class TestAlertPattern:
    def test_to_dict(self):
        p = AlertPattern(
            pattern_id="high_freq_api",
            name="High Frequency Alerts: api",
            description="d",
            criteria=PatternCriteria(sources=["api"]),
            confidence=0.5,
            occurrences=25,
            last_seen=BASE,
            impact=PatternImpact(avg_business_score=40.0),
        )
        d = p.to_dict()
        assert d["status"] == "active"
        assert d["criteria"]["sources"] == ["api"]
        assert d["impact"]["avg_business_score"] == 40.0
