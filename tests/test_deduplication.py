"""Tests for src.alerting.deduplication — grouping, windows, suppression, sweep."""

from __future__ import annotations

import threading
import time

import pytest

from src.alerting.deduplication import AlertDeduplicator, DedupConfig, DedupStats
from src.contracts.enums import Notification
from src.shared.errors import AlertValidationError, ConfigurationError
from tests.conftest import make_alert, ts_offset


@pytest.fixture
def dedup(bus, clock):
    return AlertDeduplicator(DedupConfig(), bus=bus, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
#  Config
# ═══════════════════════════════════════════════════════════════════════════


class TestDedupConfig:
    def test_defaults(self):
        cfg = DedupConfig()
        assert cfg.time_window_min == 5
        assert cfg.max_alerts_per_group == 10
        assert cfg.similarity_threshold == 0.8

    @pytest.mark.parametrize(
        "kwargs",
        [{"time_window_min": 0}, {"max_alerts_per_group": 0}, {"similarity_threshold": 1.5},
         {"fingerprint_fields": ()}],
    )
    def test_invalid_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            DedupConfig(**kwargs)

    def test_from_dict_ignores_enabled_and_unknown(self):
        cfg = DedupConfig.from_dict({"enabled": True, "time_window_min": 2, "bogus": 1})
        assert cfg.time_window_min == 2


# ═══════════════════════════════════════════════════════════════════════════
#  Grouping
# ═══════════════════════════════════════════════════════════════════════════


class TestGrouping:
    def test_first_alert_creates_group(self, dedup, recorder):
        r = dedup.process(make_alert())
        assert r.is_new
        assert r.matched_by == "new"
        assert r.similar_alerts == []
        assert r.group_id.startswith("grp-000001-")
        assert recorder[0][0] == Notification.GROUP_NEW.value

    def test_three_identical_alerts_share_group(self, dedup):
        results = [
            dedup.process(make_alert(alert_id=f"a{i}", timestamp=ts_offset(i * 60)))
            for i in range(3)
        ]
        assert [r.is_new for r in results] == [True, False, False]
        assert len({r.group_id for r in results}) == 1
        group = dedup.get_group(results[0].group_id)
        assert group.count == 3
        assert group.last_seen == ts_offset(120)
        assert [a.alert_id for a in results[2].similar_alerts] == ["a0", "a1"]

    def test_count_and_last_seen_track_members(self, dedup):
        offsets = [120, 30, 200, 90]
        results = [
            dedup.process(make_alert(alert_id=f"a{i}", timestamp=ts_offset(s))) for i, s in enumerate(offsets)
        ]
        group = dedup.get_group(results[0].group_id)
        assert group.count == len(group.alerts) == 4
        assert group.last_seen == max(a.timestamp for a in group.alerts) == ts_offset(200)

    def test_alert_fields_filled(self, dedup):
        alert = make_alert()
        r = dedup.process(alert)
        assert alert.fingerprint
        assert alert.group_key == r.group_id
        assert alert.count == 1

    def test_window_anchored_to_first_seen(self, dedup):
        first = dedup.process(make_alert(alert_id="a0"))
        dedup.process(make_alert(alert_id="a1", timestamp=ts_offset(240)))
        edge = dedup.process(make_alert(alert_id="a2", timestamp=ts_offset(300)))
        late = dedup.process(make_alert(alert_id="a3", timestamp=ts_offset(301)))
        assert edge.group_id == first.group_id
        assert late.is_new
        assert late.group_id != first.group_id

    def test_alert_after_window_starts_new_group(self, dedup, recorder):
        first = dedup.process(make_alert(alert_id="a0"))
        later = dedup.process(make_alert(alert_id="a1", timestamp=ts_offset(6 * 60)))
        assert later.is_new
        assert later.group_id != first.group_id
        assert dedup.get_group(first.group_id) is None
        assert Notification.GROUP_EXPIRED.value in [t for t, _ in recorder]

    def test_similar_message_joins_group(self, dedup):
        first = dedup.process(make_alert(alert_id="a0", message="Database connection failed"))
        second = dedup.process(make_alert(alert_id="a1", message="Database connection failure"))
        assert second.group_id == first.group_id
        assert second.matched_by == "similarity"

    def test_dissimilar_alert_new_group(self, dedup):
        first = dedup.process(make_alert(alert_id="a0"))
        other = dedup.process(make_alert(alert_id="a1", source="reporting", message="Report ready"))
        assert other.group_id != first.group_id

    def test_severity_never_decreases(self, dedup):
        r = dedup.process(make_alert(alert_id="a0", severity="high"))
        dedup.process(make_alert(alert_id="a1", severity="critical", message="Database connection failed!"))
        dedup.process(make_alert(alert_id="a2", severity="high"))
        group = dedup.get_group(r.group_id)
        assert group.severity == "critical"
        assert group.representative.alert_id == "a1"

    def test_invalid_alert_touches_nothing(self, dedup):
        with pytest.raises(AlertValidationError):
            dedup.process(make_alert(source=""))
        assert dedup.get_groups() == []
        assert dedup.get_stats().total_alerts == 0

    def test_concurrent_identical_alerts_single_group(self, dedup):
        barrier = threading.Barrier(8)

        def worker(i):
            barrier.wait()
            dedup.process(make_alert(alert_id=f"t{i}"))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        groups = dedup.get_groups()
        assert len(groups) == 1
        assert groups[0].count == 8


# ═══════════════════════════════════════════════════════════════════════════
#  Suppression decisions
# ═══════════════════════════════════════════════════════════════════════════


class TestDedupSuppression:
    def test_first_member_never_suppressed(self, dedup):
        assert not dedup.process(make_alert()).suppressed

    def test_over_max_alerts_suppressed(self, dedup):
        results = [dedup.process(make_alert(alert_id=f"a{i}")) for i in range(11)]
        assert not any(r.suppressed for r in results[:10])
        assert results[10].suppressed
        assert dedup.get_stats().alerts_suppressed == 1

    def test_critical_never_suppressed(self, dedup):
        results = [
            dedup.process(make_alert(alert_id=f"a{i}", severity="critical")) for i in range(12)
        ]
        assert not any(r.suppressed for r in results)

    def test_critical_group_members_never_suppressed(self, bus, clock):
        d = AlertDeduplicator(DedupConfig(max_alerts_per_group=3), bus=bus, clock=clock)
        first = d.process(make_alert(alert_id="a0", severity="high"))
        d.process(make_alert(alert_id="a1", severity="critical", message="Database connection failed!"))
        later = [d.process(make_alert(alert_id=f"a{i}", severity="high")) for i in range(2, 6)]
        group = d.get_group(first.group_id)
        assert group.severity == "critical"
        assert group.count == 6
        assert [r.group_id for r in later] == [first.group_id] * 4
        assert not any(r.suppressed for r in later)
        assert d.get_stats().alerts_suppressed == 0

    def test_operator_suppression_lapses(self, dedup, clock):
        r = dedup.process(make_alert(alert_id="a0"))
        assert dedup.suppress_group(r.group_id, minutes=10)
        assert dedup.process(make_alert(alert_id="a1", timestamp=ts_offset(30))).suppressed
        clock.advance(minutes=11)
        assert not dedup.process(make_alert(alert_id="a2", timestamp=ts_offset(60))).suppressed
        assert not dedup.get_group(r.group_id).suppressed

    def test_critical_group_refuses_suppression(self, dedup):
        r = dedup.process(make_alert(severity="critical"))
        assert not dedup.suppress_group(r.group_id, minutes=10)

    def test_critical_alert_clears_group_flag(self, dedup):
        r = dedup.process(make_alert(alert_id="a0"))
        dedup.suppress_group(r.group_id, minutes=10)
        crit = dedup.process(make_alert(alert_id="a1", severity="critical", message="Database connection failed!"))
        assert crit.group_id == r.group_id
        assert not crit.suppressed
        assert not dedup.get_group(r.group_id).suppressed

    def test_unsuppress(self, dedup):
        r = dedup.process(make_alert(alert_id="a0"))
        dedup.suppress_group(r.group_id, minutes=10)
        assert dedup.unsuppress_group(r.group_id)
        assert not dedup.process(make_alert(alert_id="a1")).suppressed

    def test_unknown_group(self, dedup):
        assert not dedup.suppress_group("nope", 5)
        assert not dedup.unsuppress_group("nope")


# ═══════════════════════════════════════════════════════════════════════════
#  Clustering
# ═══════════════════════════════════════════════════════════════════════════


class _SlowClusterer:
    def predict(self, alert):
        time.sleep(0.5)
        return "cluster_0"


class _BrokenClusterer:
    def predict(self, alert):
        raise RuntimeError("model unavailable")


class _HangsOnFirstAlert:
    def __init__(self):
        self.release = threading.Event()

    def predict(self, alert):
        if alert.alert_id == "a0":
            self.release.wait(5)
        return "cluster_0"


class TestClustering:
    def test_cluster_match(self, bus, clock):
        d = AlertDeduplicator(DedupConfig(enable_clustering=True), bus=bus, clock=clock)
        first = d.process(make_alert(alert_id="a0", message="Database connection failed"))
        second = d.process(make_alert(alert_id="a1", message="Database connection fialed"))
        d.stop()
        assert second.group_id == first.group_id
        assert second.matched_by == "cluster"
        assert d.get_group(first.group_id).cluster_id is not None

    def test_timeout_falls_back_to_similarity(self, bus, clock):
        cfg = DedupConfig(enable_clustering=True, clustering_timeout_sec=0.05)
        d = AlertDeduplicator(cfg, clusterer=_SlowClusterer(), bus=bus, clock=clock)
        d.process(make_alert(alert_id="a0", message="Database connection failed"))
        second = d.process(make_alert(alert_id="a1", message="Database connection failure"))
        d.stop()
        assert second.matched_by == "similarity"
        assert d.get_stats().clustering_fallbacks == 2

    def test_failure_falls_back(self, bus, clock):
        cfg = DedupConfig(enable_clustering=True)
        d = AlertDeduplicator(cfg, clusterer=_BrokenClusterer(), bus=bus, clock=clock)
        r = d.process(make_alert())
        d.stop()
        assert r.is_new
        assert d.get_stats().clustering_fallbacks == 1

    def test_hung_clusterer_does_not_block_later_alerts(self, bus, clock):
        clusterer = _HangsOnFirstAlert()
        cfg = DedupConfig(enable_clustering=True, clustering_timeout_sec=0.05)
        d = AlertDeduplicator(cfg, clusterer=clusterer, bus=bus, clock=clock)
        try:
            d.process(make_alert(alert_id="a0", message="Database connection failed"))
            d.process(make_alert(alert_id="a1", source="auth-service", message="Token refresh rejected"))
        finally:
            clusterer.release.set()
            d.stop()
        assert d.get_stats().clustering_fallbacks == 1
        assert d.get_groups()[1].cluster_id == "cluster_0"

    def test_repeated_timeouts_disable_clustering_until_config_update(self, bus, clock):
        cfg = DedupConfig(enable_clustering=True, clustering_timeout_sec=0.02)
        d = AlertDeduplicator(cfg, clusterer=_SlowClusterer(), bus=bus, clock=clock)
        for i in range(5):
            d.process(make_alert(alert_id=f"a{i}", source=f"svc-{i}", message=f"Queue {i} stalled"))
        assert d.get_stats().clustering_fallbacks == 3
        d.update_config(clustering_timeout_sec=2.0)
        r = d.process(make_alert(alert_id="a9", source="svc-9", message="Disk almost full"))
        d.stop()
        assert d.get_stats().clustering_fallbacks == 3
        assert d.get_group(r.group_id).cluster_id == "cluster_0"


# ═══════════════════════════════════════════════════════════════════════════
#  Stats, config, sweep
# ═══════════════════════════════════════════════════════════════════════════


class TestStatsAndSweep:
    def test_dedup_rate_fraction(self, dedup):
        for i in range(4):
            dedup.process(make_alert(alert_id=f"a{i}"))
        stats = dedup.get_stats()
        assert stats.total_alerts == 4
        assert stats.unique_alerts == 1
        assert stats.dedup_rate == pytest.approx(0.75)

    def test_empty_rate(self):
        assert DedupStats().dedup_rate == 0.0

    def test_groups_created_counts_new_groups(self, dedup):
        dedup.process(make_alert(alert_id="a0"))
        dedup.process(make_alert(alert_id="a1"))
        dedup.process(make_alert(alert_id="a2", source="reporting", message="Report ready"))
        dedup.process(make_alert(alert_id="a3", timestamp=ts_offset(6 * 60)))
        stats = dedup.get_stats()
        assert stats.groups_created == 3
        assert stats.groups_expired == 1
        assert stats.to_dict()["groups_created"] == 3

    def test_reset_stats(self, dedup):
        dedup.process(make_alert())
        dedup.reset_stats()
        assert dedup.get_stats().total_alerts == 0

    def test_update_config_validates(self, dedup):
        assert dedup.update_config(time_window_min=10).time_window_min == 10
        with pytest.raises(ConfigurationError):
            dedup.update_config(similarity_threshold=2)

    def test_sweep_evicts_idle_groups(self, dedup, recorder):
        r = dedup.process(make_alert())
        assert dedup.sweep(ts_offset(9 * 60)) == 0
        assert dedup.sweep(ts_offset(11 * 60)) == 1
        assert dedup.get_group(r.group_id) is None
        assert dedup.get_stats().groups_expired == 1
        assert recorder[-1][0] == Notification.GROUP_EXPIRED.value

    def test_start_stop(self, dedup):
        with dedup:
            assert dedup._sweeper.running
        assert not dedup._sweeper.running
