"""Pipeline — orchestrator: validate -> dedup -> score -> suppress -> escalate -> record.

One alert is processed at a time under the pipeline lock, so every engine
sees alerts in the same order.  All engines share one EventBus and one
clock.

Escalation trigger
──────────────────
    The alert is not suppressed (by dedup or by a rule), its alert id has
    no acknowledged escalation, and at least one of:

      * severity is ``critical``
      * business impact score > ``escalation.score_threshold``
      * it opened a new group with severity ``high``

Analytics
─────────
    Every processed alert records ``created``; suppressed alerts add
    ``suppressed``; escalated alerts add ``escalated``.  ``acknowledge`` and
    ``resolve`` record the matching lifecycle events.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from src.alerting.analytics import AlertAnalytics, AnalyticsConfig
from src.alerting.deduplication import AlertDeduplicator, DedupConfig
from src.alerting.escalation import Deliverer, EscalationManager, OnCallRegistry
from src.alerting.fingerprint import fingerprint
from src.alerting.scoring import BusinessContextRegistry, BusinessImpactScorer, ScoringConfig
from src.alerting.suppression import SuppressionConfig, SuppressionEngine
from src.contracts.alert import Alert, check_alert, parse_alert
from src.contracts.enums import EscalationStatus, EventType, Notification, Severity
from src.shared.clock import Clock, ms_between, utc_now
from src.shared.config_loader import load_optional_yaml, load_yaml, section
from src.shared.errors import AlertValidationError, ConfigurationError
from src.shared.events import EventBus

log = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineConfig:
    dedup_enabled: bool = True
    dedup: DedupConfig = field(default_factory=DedupConfig)
    scoring_enabled: bool = True
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    suppression_enabled: bool = True
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    escalation_enabled: bool = True
    default_policy: str | None = None
    score_threshold: float = 80.0
    escalation_sweep_interval_sec: float = 300.0
    analytics_enabled: bool = True
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    max_processing_ms: float = 500.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Build from the ``pipeline.yaml`` mapping; missing sections use defaults."""
        dedup = section(data, "deduplication")
        scoring = section(data, "scoring")
        suppression = section(data, "suppression")
        escalation = section(data, "escalation")
        analytics = section(data, "analytics")
        performance = section(data, "performance")
        try:
            return cls(
                dedup_enabled=bool(dedup.get("enabled", True)),
                dedup=DedupConfig.from_dict(dedup),
                scoring_enabled=bool(scoring.get("enabled", True)),
                scoring=ScoringConfig.from_dict(scoring),
                suppression_enabled=bool(suppression.get("enabled", True)),
                suppression=SuppressionConfig.from_dict(suppression),
                escalation_enabled=bool(escalation.get("enabled", True)),
                default_policy=escalation.get("default_policy"),
                score_threshold=float(escalation.get("score_threshold", 80)),
                escalation_sweep_interval_sec=float(escalation.get("sweep_interval_sec", 300)),
                analytics_enabled=bool(analytics.get("enabled", True)),
                analytics=AnalyticsConfig.from_dict(analytics),
                max_processing_ms=float(performance.get("max_processing_ms", 500)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid pipeline config: {exc}") from exc


@dataclass(slots=True)
class ProcessedAlert:
    alert: Alert
    is_new: bool
    group_id: str
    suppressed: bool
    similar_alerts: list[Alert] = field(default_factory=list)
    score: float | None = None
    escalation_id: str | None = None
    suppression_reasons: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    processing_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "is_new": self.is_new,
            "group_id": self.group_id,
            "suppressed": self.suppressed,
            "similar_alerts": [a.alert_id for a in self.similar_alerts],
            "score": self.score,
            "escalation_id": self.escalation_id,
            "suppression_reasons": list(self.suppression_reasons),
            "steps": list(self.steps),
            "processing_ms": self.processing_ms,
        }


@dataclass(slots=True)
class BatchResult:
    processed: list[ProcessedAlert] = field(default_factory=list)
    rejected: list[AlertValidationError] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


class AlertProcessingPipeline:
    def __init__(
        self,
        config: PipelineConfig | None = None,
        registry: BusinessContextRegistry | None = None,
        suppression: SuppressionEngine | None = None,
        escalation: EscalationManager | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        cfg = self.config

        self.deduplicator = (
            AlertDeduplicator(cfg.dedup, bus=self.bus, clock=self._clock) if cfg.dedup_enabled else None
        )
        self.scorer = (
            BusinessImpactScorer(cfg.scoring, registry, clock=self._clock) if cfg.scoring_enabled else None
        )
        if cfg.suppression_enabled:
            self.suppression = suppression or SuppressionEngine(
                config=cfg.suppression, bus=self.bus, clock=self._clock
            )
        else:
            self.suppression = None
        if cfg.escalation_enabled:
            self.escalation = escalation or EscalationManager(
                OnCallRegistry(), [], bus=self.bus, clock=self._clock,
                sweep_interval_sec=cfg.escalation_sweep_interval_sec,
            )
        else:
            self.escalation = None
        self.analytics = (
            AlertAnalytics(cfg.analytics, bus=self.bus, clock=self._clock) if cfg.analytics_enabled else None
        )

        self._alerts: dict[str, Alert] = {}
        self._lock = threading.RLock()
        self._stats = {
            "processed": 0,
            "rejected": 0,
            "suppressed": 0,
            "escalated": 0,
            "budget_exceeded": 0,
            "total_processing_ms": 0.0,
            "max_processing_ms": 0.0,
        }

    @classmethod
    def from_config_dir(
        cls,
        config_dir: str | Path = "config",
        deliver: Deliverer | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> AlertProcessingPipeline:
        """Build a pipeline from ``pipeline.yaml`` plus the optional
        ``services.yaml``, ``suppression.yaml`` and ``escalation.yaml``.

        Raises
        ──────
        FileNotFoundError
            ``pipeline.yaml`` is missing.
        ConfigurationError
            Any file is malformed or references an undefined policy.
        """
        base = Path(config_dir)
        config = PipelineConfig.from_dict(load_yaml(base / "pipeline.yaml"))
        bus = bus or EventBus()
        clock = clock or utc_now

        registry = BusinessContextRegistry.from_config(load_optional_yaml(base / "services.yaml"))

        suppression = None
        if config.suppression_enabled:
            suppression = SuppressionEngine.from_config(
                load_optional_yaml(base / "suppression.yaml"),
                config=config.suppression, bus=bus, clock=clock,
            )

        escalation = None
        if config.escalation_enabled:
            esc_cfg = load_optional_yaml(base / "escalation.yaml")
            default_policy = config.default_policy if esc_cfg else None
            if config.default_policy and not esc_cfg:
                log.warning("escalation.yaml not found, default policy '%s' ignored", config.default_policy)
            escalation = EscalationManager.from_config(
                esc_cfg, default_policy,
                deliver=deliver, bus=bus, clock=clock,
                sweep_interval_sec=config.escalation_sweep_interval_sec,
            )

        log.info("Pipeline configured from %s (%d business contexts)", base, len(registry))
        return cls(config, registry, suppression, escalation, bus=bus, clock=clock)

    # ── lifecycle ────────────────────────────────────────────────────────

    def _engines(self) -> list[Any]:
        return [e for e in (self.deduplicator, self.suppression, self.escalation, self.analytics) if e is not None]

    def start(self) -> None:
        for engine in self._engines():
            engine.start()
        log.info("Pipeline started (%d background engines)", len(self._engines()))

    def stop(self) -> None:
        for engine in reversed(self._engines()):
            engine.stop()
        log.info("Pipeline stopped")

    def __enter__(self) -> AlertProcessingPipeline:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ── processing ───────────────────────────────────────────────────────

    def process(self, alert: Alert | Mapping[str, Any]) -> ProcessedAlert:
        """Run one alert through every enabled stage.

        Raises
        ──────
        AlertValidationError
            The alert is malformed; no engine state is touched.
        """
        started = time.perf_counter()
        try:
            alert = check_alert(alert) if isinstance(alert, Alert) else parse_alert(alert)
        except AlertValidationError:
            with self._lock:
                self._stats["rejected"] += 1
            raise

        with self._lock:
            result = self._run(alert)
            result.processing_ms = round((time.perf_counter() - started) * 1000.0, 3)
            self._alerts[alert.alert_id] = alert
            self._stats["processed"] += 1
            self._stats["suppressed"] += int(result.suppressed)
            self._stats["escalated"] += int(result.escalation_id is not None)
            self._stats["total_processing_ms"] += result.processing_ms
            self._stats["max_processing_ms"] = max(self._stats["max_processing_ms"], result.processing_ms)
            over_budget = result.processing_ms > self.config.max_processing_ms
            if over_budget:
                self._stats["budget_exceeded"] += 1

        if over_budget:
            log.warning(
                "Alert %s took %.1f ms (budget %.0f ms)",
                alert.alert_id, result.processing_ms, self.config.max_processing_ms,
            )
            self.bus.publish(Notification.BUDGET_EXCEEDED, result)
        return result

    def _run(self, alert: Alert) -> ProcessedAlert:
        steps: list[str] = ["validation"]

        if self.deduplicator is not None:
            dedup = self.deduplicator.process(alert)
            steps.append("deduplication")
            result = ProcessedAlert(
                alert=alert,
                is_new=dedup.is_new,
                group_id=dedup.group_id,
                suppressed=dedup.suppressed,
                similar_alerts=dedup.similar_alerts,
                steps=steps,
            )
            if dedup.suppressed:
                result.suppression_reasons.append(f"duplicate in group {dedup.group_id}")
        else:
            alert.fingerprint = fingerprint(alert)
            result = ProcessedAlert(alert=alert, is_new=True, group_id="", suppressed=False, steps=steps)

        if not result.suppressed:
            if self.scorer is not None:
                impact = self.scorer.score(alert)
                alert.metadata["business_impact_score"] = impact.score
                result.score = impact.score
                steps.append("scoring")

            if self.suppression is not None:
                decision = self.suppression.evaluate(alert)
                steps.append("suppression")
                if decision.suppressed:
                    alert.suppressed = True
                    result.suppressed = True
                    result.suppression_reasons.extend(decision.reasons)

            if self.escalation is not None and not result.suppressed and self._should_escalate(result):
                result.escalation_id = self.escalation.start_escalation(
                    alert.alert_id, alert.severity, alert.source, alert.tags
                )
                steps.append("escalation")

        if self.analytics is not None:
            self._record(alert, EventType.CREATED, result.score)
            if result.suppressed:
                self._record(alert, EventType.SUPPRESSED, result.score)
            if result.escalation_id is not None:
                self._record(alert, EventType.ESCALATED, result.score)
            steps.append("analytics")
        return result

    def _should_escalate(self, result: ProcessedAlert) -> bool:
        alert = result.alert
        existing = self.escalation.for_alert(alert.alert_id)
        if existing is not None and existing.status is EscalationStatus.ACKNOWLEDGED:
            return False
        if alert.severity == Severity.CRITICAL.value:
            return True
        if result.score is not None and result.score > self.config.score_threshold:
            return True
        return result.is_new and alert.severity == Severity.HIGH.value

    def _record(
        self,
        alert: Alert,
        event_type: EventType,
        score: float | None,
        timestamp: datetime | None = None,
        duration_ms: float | None = None,
    ) -> None:
        self.analytics.record_event(
            alert.alert_id,
            event_type,
            alert.source,
            alert.severity,
            timestamp=timestamp or alert.timestamp,
            duration_ms=duration_ms,
            business_impact_score=score,
            tags=alert.tags,
            metadata={"group_id": alert.group_key} if alert.group_key else None,
        )

    def process_batch(self, alerts: Iterable[Alert | Mapping[str, Any]]) -> BatchResult:
        """Process alerts in order; malformed ones are logged and collected."""
        batch = BatchResult()
        for item in alerts:
            try:
                batch.processed.append(self.process(item))
            except AlertValidationError as exc:
                log.warning("Rejected alert: %s", exc)
                batch.rejected.append(exc)
        log.info("Batch done: %d processed, %d rejected", len(batch.processed), len(batch.rejected))
        return batch

    # ── lifecycle events ─────────────────────────────────────────────────

    def acknowledge(self, alert_id: str, by: str) -> bool:
        """Acknowledge *alert_id*; halts its escalation and records ``acknowledged``."""
        return self._close(alert_id, by, EventType.ACKNOWLEDGED)

    def resolve(self, alert_id: str, by: str) -> bool:
        """Resolve *alert_id*; finishes its escalation and records ``resolved``."""
        return self._close(alert_id, by, EventType.RESOLVED)

    def _close(self, alert_id: str, by: str, event_type: EventType) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                log.warning("Cannot mark unknown alert %s as %s", alert_id, event_type.value)
                return False
            if self.escalation is not None:
                if event_type is EventType.ACKNOWLEDGED:
                    self.escalation.acknowledge_alert(alert_id, by)
                else:
                    self.escalation.resolve_alert(alert_id, by)
            now = self._clock()
            if self.analytics is not None:
                self._record(
                    alert, event_type, alert.metadata.get("business_impact_score"),
                    timestamp=now, duration_ms=ms_between(alert.timestamp, now),
                )
        log.info("Alert %s %s by %s", alert_id, event_type.value, by)
        return True

    # ── maintenance & introspection ──────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every engine's sweep at *now* (deterministic housekeeping)."""
        now = now or self._clock()
        out: dict[str, Any] = {}
        if self.deduplicator is not None:
            out["groups_expired"] = self.deduplicator.sweep(now)
        if self.suppression is not None:
            out["suppression"] = self.suppression.sweep(now)
        if self.escalation is not None:
            out["escalations_removed"] = self.escalation.sweep(now)
        if self.analytics is not None:
            out["analytics"] = self.analytics.sweep(now)
        cutoff = now - timedelta(days=self.config.analytics.retention_days)
        with self._lock:
            stale = [k for k, a in self._alerts.items() if a.timestamp < cutoff]
            for k in stale:
                del self._alerts[k]
        out["alerts_forgotten"] = len(stale)
        return out

    def stats(self) -> dict[str, Any]:
        with self._lock:
            base = dict(self._stats)
        processed = base["processed"]
        base["avg_processing_ms"] = round(base["total_processing_ms"] / processed, 3) if processed else 0.0
        out: dict[str, Any] = {"pipeline": base}
        if self.deduplicator is not None:
            out["deduplication"] = self.deduplicator.get_stats().to_dict()
        if self.scorer is not None:
            out["scoring"] = self.scorer.get_stats()
        if self.suppression is not None:
            out["suppression"] = self.suppression.get_stats()
        if self.escalation is not None:
            out["escalation"] = self.escalation.get_stats()
        if self.analytics is not None:
            out["analytics"] = self.analytics.get_metrics().to_dict()
        return out

    def health(self) -> dict[str, Any]:
        """``healthy`` unless the average latency is over budget."""
        base = self.stats()["pipeline"]
        components = {
            "deduplication": self.deduplicator is not None,
            "scoring": self.scorer is not None,
            "suppression": self.suppression is not None,
            "escalation": self.escalation is not None,
            "analytics": self.analytics is not None,
        }
        degraded = base["avg_processing_ms"] > self.config.max_processing_ms
        return {
            "status": "degraded" if degraded else "healthy",
            "components": {k: "enabled" if v else "disabled" for k, v in components.items()},
            "processed": base["processed"],
            "avg_processing_ms": base["avg_processing_ms"],
            "budget_ms": self.config.max_processing_ms,
        }
