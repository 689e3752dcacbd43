"""Deduplication — group incoming alerts by fingerprint, cluster or similarity.

Matching order for every alert
──────────────────────────────
  1. exact fingerprint, group still inside its window
  2. clusterer-assisted match (only with ``enable_clustering``); a
     clusterer that times out is abandoned for a fresh worker, and after
     three timeouts in a row clustering stays off until ``update_config``
  3. linear similarity scan over live groups, best score ≥ threshold,
     ties go to the most recently created group
  4. new group

Time window
───────────
    An alert belongs to a group when ``alert.timestamp <= first_seen +
    time_window``.  The window is anchored to the group's first alert, it
    does not slide with later members.

Suppression (per alert)
───────────────────────
    critical alert or critical group → never; first member → never;
    ``count > max_alerts_per_group`` → always; otherwise the group's
    operator-set flag, which lapses once ``suppressed_until`` has passed.

Eviction
────────
    ``sweep()`` drops groups whose ``last_seen < now − 2 × time_window``.
    It runs on a PeriodicTask after ``start()`` and can be called directly.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from src.alerting.fingerprint import DEFAULT_FIELDS, FeatureHashClusterer, fingerprint, similarity
from src.contracts.alert import Alert, check_alert
from src.contracts.enums import Notification, Severity, severity_level
from src.contracts.group import AlertGroup
from src.shared.clock import Clock, utc_now
from src.shared.errors import ClusteringError, ConfigurationError
from src.shared.events import EventBus
from src.shared.scheduler import PeriodicTask

log = logging.getLogger(__name__)

_MAX_SIMILAR = 10
_MAX_CLUSTER_TIMEOUTS = 3


class Clusterer(Protocol):
    def predict(self, alert: Alert) -> str: ...


@dataclass(slots=True)
class DedupConfig:
    time_window_min: float = 5.0
    max_alerts_per_group: int = 10
    similarity_threshold: float = 0.8
    fingerprint_fields: tuple[str, ...] = DEFAULT_FIELDS
    enable_clustering: bool = False
    clustering_timeout_sec: float = 0.2
    sweep_interval_sec: float = 60.0

    def __post_init__(self) -> None:
        if self.time_window_min <= 0:
            raise ConfigurationError("time_window_min must be positive")
        if self.max_alerts_per_group < 1:
            raise ConfigurationError("max_alerts_per_group must be >= 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError("similarity_threshold must be within [0, 1]")
        if not self.fingerprint_fields:
            raise ConfigurationError("fingerprint_fields must not be empty")
        self.fingerprint_fields = tuple(self.fingerprint_fields)

    @property
    def time_window(self) -> timedelta:
        return timedelta(minutes=self.time_window_min)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DedupConfig:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known) - {"enabled"}
        if unknown:
            log.warning("Ignoring unknown deduplication keys: %s", ", ".join(sorted(unknown)))
        return cls(**known)


@dataclass(slots=True)
class DedupResult:
    alert: Alert
    is_new: bool
    group_id: str
    suppressed: bool
    similar_alerts: list[Alert] = field(default_factory=list)
    matched_by: str = "new"  # fingerprint | cluster | similarity | new

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "is_new": self.is_new,
            "group_id": self.group_id,
            "suppressed": self.suppressed,
            "similar_alerts": [a.alert_id for a in self.similar_alerts],
            "matched_by": self.matched_by,
        }


@dataclass(slots=True)
class DedupStats:
    total_alerts: int = 0
    unique_alerts: int = 0
    groups_created: int = 0
    alerts_suppressed: int = 0
    groups_expired: int = 0
    clustering_fallbacks: int = 0
    processing_time_ms: float = 0.0

    @property
    def dedup_rate(self) -> float:
        """``(total − unique) / total`` as a fraction; 0 before any alert."""
        if self.total_alerts == 0:
            return 0.0
        return (self.total_alerts - self.unique_alerts) / self.total_alerts

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["dedup_rate"] = round(self.dedup_rate, 6)
        return out


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class AlertDeduplicator:
    """Stateful deduplication engine.

    One engine lock guards lookup-or-create, so at most one group exists per
    fingerprint even under concurrent ``process`` calls.
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        clusterer: Clusterer | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or DedupConfig()
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self._clusterer: Clusterer = clusterer or FeatureHashClusterer()
        self._executor: ThreadPoolExecutor | None = None
        self._cluster_timeouts = 0  # consecutive
        self._clustering_off = False
        self._groups: dict[str, AlertGroup] = {}  # fingerprint → group
        self._by_id: dict[str, AlertGroup] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()
        self._stats = DedupStats()
        self._sweeper = PeriodicTask("dedup-sweep", self.config.sweep_interval_sec, self.sweep)

    # ── lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> AlertDeduplicator:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ── processing ───────────────────────────────────────────────────────

    def process(self, alert: Alert) -> DedupResult:
        """Assign *alert* to a group and decide dedup-level suppression.

        Mutates ``alert.fingerprint``, ``group_key``, ``count`` and
        ``suppressed``.

        Raises
        ──────
        AlertValidationError
            When the alert is missing required fields; no group is touched.
        """
        started = time.perf_counter()
        check_alert(alert)
        fp = fingerprint(alert, self.config.fingerprint_fields)
        alert.fingerprint = fp
        notifications: list[tuple[Notification, Any]] = []

        with self._lock:
            self._stats.total_alerts += 1
            group = self._groups.get(fp)
            stale: AlertGroup | None = None
            matched_by = "fingerprint"

            if group is not None and not self._in_window(group, alert.timestamp):
                stale, group = group, None

            cluster_id = None
            if group is None and self.config.enable_clustering and not self._clustering_off:
                cluster_id = self._predict_cluster(alert)
                group = self._match_cluster(alert, cluster_id)
                matched_by = "cluster"
            if group is None:
                group = self._match_similar(alert)
                matched_by = "similarity"

            if group is None:
                if stale is not None:
                    self._retire(stale)
                    notifications.append((Notification.GROUP_EXPIRED, stale))
                group = self._create_group(fp, alert, cluster_id)
                is_new = True
                matched_by = "new"
                self._stats.unique_alerts += 1
                notifications.append((Notification.GROUP_NEW, group))
            else:
                self._append(group, alert)
                is_new = False
                notifications.append((Notification.GROUP_UPDATED, group))

            suppressed = self._should_suppress(group, alert)
            alert.group_key = group.group_id
            alert.count = group.count
            alert.suppressed = suppressed
            if suppressed:
                self._stats.alerts_suppressed += 1
                notifications.append((Notification.ALERT_SUPPRESSED, {"alert": alert, "group": group}))

            similar = [a for a in group.alerts if a is not alert][:_MAX_SIMILAR]
            self._stats.processing_time_ms += (time.perf_counter() - started) * 1000.0

        for topic, payload in notifications:
            self.bus.publish(topic, payload)

        log.debug(
            "Alert %s → group %s (%s, count=%d, suppressed=%s)",
            alert.alert_id, group.group_id, matched_by, group.count, suppressed,
        )
        return DedupResult(
            alert=alert,
            is_new=is_new,
            group_id=group.group_id,
            suppressed=suppressed,
            similar_alerts=similar,
            matched_by=matched_by,
        )

    # ── group matching ───────────────────────────────────────────────────

    def _in_window(self, group: AlertGroup, ts: datetime) -> bool:
        return ts <= group.first_seen + self.config.time_window

    def _live_groups(self, ts: datetime) -> list[AlertGroup]:
        return [g for g in self._by_id.values() if self._in_window(g, ts)]

    def _best_match(self, alert: Alert, candidates: list[AlertGroup]) -> AlertGroup | None:
        best: AlertGroup | None = None
        best_score = -1.0
        for g in candidates:
            score = similarity(alert, g.representative)
            if score < self.config.similarity_threshold:
                continue
            if score > best_score or (score == best_score and g.created_seq > best.created_seq):
                best, best_score = g, score
        return best

    def _match_similar(self, alert: Alert) -> AlertGroup | None:
        return self._best_match(alert, self._live_groups(alert.timestamp))

    def _predict_cluster(self, alert: Alert) -> str | None:
        """Run the clusterer with a bounded timeout; ``None`` means fall back."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dedup-cluster")
        future = self._executor.submit(self._clusterer.predict, alert)
        try:
            cluster_id = future.result(timeout=self.config.clustering_timeout_sec)
            self._cluster_timeouts = 0
            return cluster_id
        except FutureTimeout:
            # the stuck worker is abandoned; the next call gets a fresh one
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._cluster_timeouts += 1
            log.warning(
                "Clusterer timed out after %.3fs for alert %s, using similarity match",
                self.config.clustering_timeout_sec, alert.alert_id,
            )
            if self._cluster_timeouts >= _MAX_CLUSTER_TIMEOUTS:
                self._clustering_off = True
                log.error(
                    "Clusterer timed out %d times in a row, clustering disabled until the next config update",
                    self._cluster_timeouts,
                )
        except Exception as exc:
            self._cluster_timeouts = 0
            err = exc if isinstance(exc, ClusteringError) else ClusteringError(str(exc))
            log.warning("Clusterer failed for alert %s (%s), using similarity match", alert.alert_id, err)
        self._stats.clustering_fallbacks += 1
        return None

    def _match_cluster(self, alert: Alert, cluster_id: str | None) -> AlertGroup | None:
        if cluster_id is None:
            return None
        candidates = [g for g in self._live_groups(alert.timestamp) if g.cluster_id == cluster_id]
        return self._best_match(alert, candidates)

    # ── group mutation ───────────────────────────────────────────────────

    def _create_group(self, fp: str, alert: Alert, cluster_id: str | None = None) -> AlertGroup:
        seq = next(self._seq)
        group = AlertGroup(
            group_id=f"grp-{seq:06d}-{fp[:8]}",
            fingerprint=fp,
            alerts=[alert],
            first_seen=alert.timestamp,
            last_seen=alert.timestamp,
            count=1,
            severity=alert.severity,
            representative=alert,
            cluster_id=cluster_id,
            created_seq=seq,
        )
        self._groups[fp] = group
        self._by_id[group.group_id] = group
        self._stats.groups_created += 1
        log.info("New alert group %s for source=%s severity=%s", group.group_id, alert.source, alert.severity)
        return group

    def _append(self, group: AlertGroup, alert: Alert) -> None:
        group.alerts.append(alert)
        group.count = len(group.alerts)
        if alert.timestamp > group.last_seen:
            group.last_seen = alert.timestamp
        if severity_level(alert.severity) > severity_level(group.severity):
            group.severity = alert.severity
            group.representative = alert
        if group.severity == Severity.CRITICAL.value and group.suppressed:
            group.suppressed = False
            group.suppressed_until = None

    def _retire(self, group: AlertGroup) -> None:
        if self._groups.get(group.fingerprint) is group:
            del self._groups[group.fingerprint]
        self._by_id.pop(group.group_id, None)
        self._stats.groups_expired += 1

    def _should_suppress(self, group: AlertGroup, alert: Alert) -> bool:
        if Severity.CRITICAL.value in (alert.severity, group.severity):
            return False
        if group.count <= 1:
            return False
        if group.count > self.config.max_alerts_per_group:
            return True
        if group.suppressed and group.suppressed_until is not None and self._clock() > group.suppressed_until:
            group.suppressed = False
            group.suppressed_until = None
        return group.suppressed

    # ── operator actions ─────────────────────────────────────────────────

    def suppress_group(self, group_id: str, minutes: float) -> bool:
        """Suppress a group for *minutes*; critical groups are refused."""
        with self._lock:
            group = self._by_id.get(group_id)
            if group is None:
                return False
            if group.severity == Severity.CRITICAL.value:
                log.warning("Refusing to suppress critical group %s", group_id)
                return False
            group.suppressed = True
            group.suppressed_until = self._clock() + timedelta(minutes=minutes)
        self.bus.publish(Notification.GROUP_SUPPRESSED, {"group": group, "minutes": minutes})
        log.info("Group %s suppressed for %.1f min", group_id, minutes)
        return True

    def unsuppress_group(self, group_id: str) -> bool:
        with self._lock:
            group = self._by_id.get(group_id)
            if group is None:
                return False
            group.suppressed = False
            group.suppressed_until = None
        self.bus.publish(Notification.GROUP_UPDATED, group)
        return True

    # ── queries ──────────────────────────────────────────────────────────

    def get_group(self, group_id: str) -> AlertGroup | None:
        return self._by_id.get(group_id)

    def get_groups(self) -> list[AlertGroup]:
        with self._lock:
            return sorted(self._by_id.values(), key=lambda g: g.created_seq)

    def get_stats(self) -> DedupStats:
        with self._lock:
            return DedupStats(**asdict(self._stats))

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = DedupStats()

    def update_config(self, **changes: Any) -> DedupConfig:
        """Replace configuration values; the new config is re-validated."""
        with self._lock:
            merged = {**asdict(self.config), **changes}
            self.config = DedupConfig.from_dict(merged)
            self._cluster_timeouts = 0
            self._clustering_off = False
        log.info("Deduplication config updated: %s", ", ".join(sorted(changes)))
        return self.config

    # ── maintenance ──────────────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> int:
        """Evict groups idle for more than twice the time window.

        Snapshot first, then re-check each candidate under the lock so the
        hot path is never blocked for the whole scan.
        """
        now = now or self._clock()
        cutoff = now - 2 * self.config.time_window
        with self._lock:
            snapshot = list(self._by_id.values())
        expired: list[AlertGroup] = []
        for group in snapshot:
            if group.last_seen >= cutoff:
                continue
            with self._lock:
                if self._by_id.get(group.group_id) is group and group.last_seen < cutoff:
                    self._retire(group)
                    expired.append(group)
        for group in expired:
            self.bus.publish(Notification.GROUP_EXPIRED, group)
        if expired:
            log.info("Dedup sweep evicted %d groups (%d live)", len(expired), len(self._by_id))
        return len(expired)
