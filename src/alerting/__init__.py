"""Alert processing — dedup, business impact, suppression, escalation, analytics.

Modules
───────
  fingerprint   — stable alert fingerprint, similarity, feature-hash clusterer
  deduplication — Alert → AlertGroup (fingerprint / cluster / similarity)
  scoring       — weighted business impact score 1..100
  suppression   — rule-based suppression, maintenance windows
  escalation    — multi-step on-call escalation with timers
  metrics       — MTTR / MTTA / percentile helpers over AlertEvent
  patterns      — pattern detectors
  analytics     — event log, query engine, metrics, insights, export
  pipeline      — orchestrate the full flow
  reporter      — write CSV, JSON, TXT outputs
  cli           — argparse entry-point
"""

from src.alerting.analytics import AlertAnalytics, AnalyticsConfig, AnalyticsQuery, QueryFilters
from src.alerting.deduplication import AlertDeduplicator, DedupConfig
from src.alerting.escalation import EscalationManager, EscalationPolicy, OnCallRegistry
from src.alerting.pipeline import AlertProcessingPipeline, PipelineConfig, ProcessedAlert
from src.alerting.scoring import BusinessContext, BusinessContextRegistry, BusinessImpactScorer, ScoringConfig
from src.alerting.suppression import SuppressionEngine, SuppressionRule

__all__ = [
    "AlertAnalytics",
    "AlertDeduplicator",
    "AlertProcessingPipeline",
    "AnalyticsConfig",
    "AnalyticsQuery",
    "BusinessContext",
    "BusinessContextRegistry",
    "BusinessImpactScorer",
    "DedupConfig",
    "EscalationManager",
    "EscalationPolicy",
    "OnCallRegistry",
    "PipelineConfig",
    "ProcessedAlert",
    "QueryFilters",
    "ScoringConfig",
    "SuppressionEngine",
    "SuppressionRule",
]
