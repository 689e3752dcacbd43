"""Exception taxonomy for the alert pipeline.

Business outcomes (an alert was suppressed, no pattern was found, a policy
did not apply) are never exceptions.  These classes are reserved for input
and configuration that break the documented contract.
"""

from __future__ import annotations

from typing import Any


class AlertingError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(AlertingError):
    """Invalid configuration, raised at construction time."""


class AlertValidationError(AlertingError):
    """A single alert (or event) failed schema validation."""

    def __init__(self, problems: list[str], data: Any = None) -> None:
        self.problems = list(problems)
        self.data = data
        super().__init__("Invalid alert: " + "; ".join(self.problems))


class QueryError(AlertingError):
    """Malformed analytics query; the offending query is attached."""

    def __init__(self, message: str, query: Any = None) -> None:
        self.query = query
        super().__init__(message)


class ClusteringError(AlertingError):
    """Transient failure of the pluggable clusterer."""


class EscalationError(AlertingError):
    """Unknown escalation policy or escalation instance."""
