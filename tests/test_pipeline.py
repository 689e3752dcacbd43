"""Tests for src.alerting.pipeline — stage order, escalation trigger, lifecycle."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.alerting.escalation import EscalationManager
from src.alerting.pipeline import AlertProcessingPipeline, PipelineConfig
from src.alerting.scoring import BusinessContextRegistry
from src.alerting.suppression import SuppressionRule
from src.contracts.enums import EscalationStatus, Notification
from src.shared.errors import AlertValidationError, ConfigurationError
from tests.conftest import alert_dict, make_alert, ts_offset

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def pipeline(services_cfg, escalation_cfg, bus, clock):
    escalation = EscalationManager.from_config(escalation_cfg, "standard", bus=bus, clock=clock)
    return AlertProcessingPipeline(
        PipelineConfig(),
        registry=BusinessContextRegistry.from_config(services_cfg),
        escalation=escalation,
        bus=bus,
        clock=clock,
    )


def _types(pipeline, alert_id):
    return [e.event_type for e in pipeline.analytics.get_events(alert_id)]


# ═══════════════════════════════════════════════════════════════════════════
#  Config
# ═══════════════════════════════════════════════════════════════════════════


class TestPipelineConfig:
    def test_defaults_from_empty(self):
        cfg = PipelineConfig.from_dict({})
        assert cfg.dedup_enabled and cfg.analytics_enabled
        assert cfg.score_threshold == 80.0
        assert cfg.max_processing_ms == 500.0

    def test_sections(self):
        cfg = PipelineConfig.from_dict({
            "deduplication": {"enabled": False, "time_window_min": 2},
            "escalation": {"default_policy": "standard", "score_threshold": 60},
            "performance": {"max_processing_ms": 50},
        })
        assert not cfg.dedup_enabled
        assert cfg.dedup.time_window_min == 2
        assert cfg.default_policy == "standard"
        assert cfg.score_threshold == 60.0
        assert cfg.max_processing_ms == 50.0

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict({"performance": {"max_processing_ms": "fast"}})
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict({"scoring": "on"})


# ═══════════════════════════════════════════════════════════════════════════
#  Processing flow
# ═══════════════════════════════════════════════════════════════════════════


class TestProcess:
    def test_new_high_alert_escalates(self, pipeline):
        r = pipeline.process(make_alert(source="unknown-svc"))
        assert r.is_new
        assert not r.suppressed
        assert r.score == pytest.approx(40.75)
        assert r.alert.metadata["business_impact_score"] == r.score
        assert r.escalation_id == "esc-000001"
        assert r.steps == ["validation", "deduplication", "scoring", "suppression", "escalation", "analytics"]
        assert _types(pipeline, "alert-1") == ["created", "escalated"]

    def test_accepts_mapping(self, pipeline):
        r = pipeline.process(alert_dict(severity="low"))
        assert r.alert.alert_id == "alert-1"
        assert r.escalation_id is None
        assert "escalation" not in r.steps

    def test_repeat_high_alert_does_not_escalate(self, pipeline):
        pipeline.process(make_alert(alert_id="a1", source="unknown-svc"))
        r = pipeline.process(make_alert(alert_id="a2", source="unknown-svc", timestamp=ts_offset(30)))
        assert not r.is_new
        assert [a.alert_id for a in r.similar_alerts] == ["a1"]
        assert r.escalation_id is None

    def test_critical_always_escalates(self, pipeline):
        pipeline.process(make_alert(alert_id="a1", severity="critical"))
        r = pipeline.process(make_alert(alert_id="a2", severity="critical", timestamp=ts_offset(30)))
        assert not r.is_new
        assert r.escalation_id is not None

    def test_score_threshold(self, services_cfg, escalation_cfg, bus, clock):
        escalation = EscalationManager.from_config(escalation_cfg, "standard", bus=bus, clock=clock)
        p = AlertProcessingPipeline(
            PipelineConfig(score_threshold=30.0),
            registry=BusinessContextRegistry.from_config(services_cfg),
            escalation=escalation, bus=bus, clock=clock,
        )
        p.process(make_alert(alert_id="a1", source="unknown-svc"))
        r = p.process(make_alert(alert_id="a2", source="unknown-svc", timestamp=ts_offset(30)))
        assert r.score > 30.0
        assert r.escalation_id is not None

    def test_dedup_suppression_skips_later_stages(self, pipeline):
        results = [
            pipeline.process(make_alert(alert_id=f"a{i}", severity="medium", timestamp=ts_offset(i)))
            for i in range(11)
        ]
        last = results[-1]
        assert last.suppressed
        assert last.score is None
        assert last.steps == ["validation", "deduplication", "analytics"]
        assert last.suppression_reasons == [f"duplicate in group {last.group_id}"]
        assert _types(pipeline, "a10") == ["created", "suppressed"]

    def test_rule_suppression_blocks_escalation(self, pipeline, recorder):
        pipeline.suppression.register_rule(
            SuppressionRule.from_dict({"rule_id": "mute", "name": "Mute batch", "conditions": {"sources": ["batch"]}})
        )
        r = pipeline.process(make_alert(source="batch"))
        assert r.suppressed
        assert r.alert.suppressed
        assert r.suppression_reasons == ["Matched rule Mute batch"]
        assert r.escalation_id is None
        assert _types(pipeline, "alert-1") == ["created", "suppressed"]
        assert Notification.ALERT_SUPPRESSED.value in [t for t, _ in recorder]

    def test_invalid_alert_rejected(self, pipeline):
        with pytest.raises(AlertValidationError):
            pipeline.process(alert_dict(severity="urgent"))
        stats = pipeline.stats()["pipeline"]
        assert stats["rejected"] == 1
        assert stats["processed"] == 0
        assert pipeline.analytics.event_count() == 0

    def test_batch(self, pipeline):
        batch = pipeline.process_batch([
            alert_dict(id="a1"),
            alert_dict(id="a2", source=""),
            alert_dict(id="a3", severity="low", message="Disk almost full"),
        ])
        assert [r.alert.alert_id for r in batch.processed] == ["a1", "a3"]
        assert len(batch.rejected) == 1
        assert "missing source" in batch.rejected[0].problems

    def test_to_dict(self, pipeline):
        d = pipeline.process(make_alert()).to_dict()
        assert d["alert"]["alert_id"] == "alert-1"
        assert d["similar_alerts"] == []
        assert d["escalation_id"] == "esc-000001"


class TestDisabledStages:
    def test_minimal_pipeline(self, bus, clock):
        cfg = PipelineConfig.from_dict({
            "deduplication": {"enabled": False},
            "scoring": {"enabled": False},
            "suppression": {"enabled": False},
            "escalation": {"enabled": False},
        })
        p = AlertProcessingPipeline(cfg, bus=bus, clock=clock)
        r = p.process(make_alert(severity="critical"))
        assert r.steps == ["validation", "analytics"]
        assert r.is_new
        assert r.group_id == ""
        assert r.alert.fingerprint
        assert r.score is None
        assert set(p.stats()) == {"pipeline", "analytics"}
        assert p.health()["components"]["escalation"] == "disabled"


# ═══════════════════════════════════════════════════════════════════════════
#  Acknowledge / resolve
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_acknowledge_halts_escalation(self, pipeline, clock):
        r = pipeline.process(make_alert())
        clock.advance(minutes=5)
        assert pipeline.acknowledge("alert-1", "alice")
        assert pipeline.escalation.get(r.escalation_id).status is EscalationStatus.ACKNOWLEDGED
        ack = pipeline.analytics.get_events("alert-1")[-1]
        assert ack.event_type == "acknowledged"
        assert ack.duration_ms == 300_000
        assert ack.timestamp == ts_offset(300)

    def test_acknowledged_alert_not_escalated_again(self, pipeline, clock):
        pipeline.process(make_alert())
        pipeline.acknowledge("alert-1", "alice")
        r = pipeline.process(make_alert(severity="critical", timestamp=ts_offset(60)))
        assert r.escalation_id is None

    def test_resolve(self, pipeline, clock):
        r = pipeline.process(make_alert())
        clock.advance(minutes=20)
        assert pipeline.resolve("alert-1", "bob")
        assert pipeline.escalation.get(r.escalation_id).status is EscalationStatus.RESOLVED
        assert _types(pipeline, "alert-1") == ["created", "escalated", "resolved"]
        assert pipeline.analytics.get_metrics().mttr_ms == 20 * 60 * 1000

    def test_unknown_alert(self, pipeline):
        assert not pipeline.acknowledge("ghost", "alice")
        assert not pipeline.resolve("ghost", "alice")


# ═══════════════════════════════════════════════════════════════════════════
#  Budget, stats, sweep
# ═══════════════════════════════════════════════════════════════════════════


class TestBudgetAndStats:
    def test_budget_exceeded(self, bus, clock, recorder):
        p = AlertProcessingPipeline(PipelineConfig(max_processing_ms=0.0), bus=bus, clock=clock)
        r = p.process(make_alert())
        assert r.processing_ms > 0
        assert p.stats()["pipeline"]["budget_exceeded"] == 1
        assert Notification.BUDGET_EXCEEDED.value in [t for t, _ in recorder]
        assert p.health()["status"] == "degraded"

    def test_healthy(self, pipeline):
        pipeline.process(make_alert())
        health = pipeline.health()
        assert health["status"] == "healthy"
        assert health["processed"] == 1
        assert set(health["components"].values()) == {"enabled"}

    def test_stats_sections(self, pipeline):
        pipeline.process(make_alert())
        stats = pipeline.stats()
        assert set(stats) == {"pipeline", "deduplication", "scoring", "suppression", "escalation", "analytics"}
        assert stats["pipeline"]["processed"] == 1
        assert stats["pipeline"]["escalated"] == 1
        assert stats["deduplication"]["total_alerts"] == 1
        assert stats["escalation"]["total"] == 1

    def test_sweep_forgets_old_alerts(self, pipeline):
        pipeline.process(make_alert())
        out = pipeline.sweep(ts_offset(31 * 86400))
        assert out["alerts_forgotten"] == 1
        assert out["groups_expired"] == 1
        assert out["analytics"]["events_purged"] == 2
        assert not pipeline.acknowledge("alert-1", "alice")

    def test_start_stop(self, pipeline):
        with pipeline:
            assert pipeline.deduplicator._sweeper.running
        assert not pipeline.deduplicator._sweeper.running


class TestFromConfigDir:
    def test_shipped_config(self, clock):
        delivered = []
        p = AlertProcessingPipeline.from_config_dir(
            CONFIG_DIR, deliver=lambda note, contacts: delivered.append(note), clock=clock
        )
        r = p.process(make_alert(severity="critical"))
        assert r.escalation_id is not None
        assert p.escalation.get(r.escalation_id).policy_id == "standard"
        assert delivered[0].alert_id == "alert-1"
        assert r.score > 50

    def test_only_pipeline_yaml(self, tmp_path, clock):
        (tmp_path / "pipeline.yaml").write_text("escalation:\n  default_policy: standard\n", encoding="utf-8")
        p = AlertProcessingPipeline.from_config_dir(tmp_path, clock=clock)
        r = p.process(make_alert(severity="critical"))
        assert r.escalation_id is None
        assert p.escalation.default_policy_id is None

    def test_missing_pipeline_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            AlertProcessingPipeline.from_config_dir(tmp_path)

    def test_undefined_default_policy(self, tmp_path):
        (tmp_path / "pipeline.yaml").write_text("escalation:\n  default_policy: nope\n", encoding="utf-8")
        (tmp_path / "escalation.yaml").write_text(
            "roles:\n  - role_id: r\npolicies:\n  - policy_id: p\n    steps:\n      - roles: [r]\n        wait_minutes: 5\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError):
            AlertProcessingPipeline.from_config_dir(tmp_path)
