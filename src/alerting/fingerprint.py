"""Fingerprint & similarity — canonical grouping keys for alerts.

Fingerprint
───────────
    SHA-256 over ``json.dumps(..., sort_keys=True)`` of a configurable field
    subset (default ``source``, ``severity``, normalised ``message``).  Field
    names of the form ``metadata.<key>`` read from alert metadata.  Pure and
    stable across processes.

Message normalisation
─────────────────────
    lowercase → UUID ``<uuid>`` → e-mail ``<email>`` → IPv4 ``<ip>`` →
    remaining digit runs ``<n>`` → collapse whitespace.  Tokens are replaced
    most-specific first so a UUID is never half-eaten by the digit rule.

Similarity
──────────
    ============  ======  =====================================
    signal        weight  score
    ============  ======  =====================================
    source        0.3     1 if equal else 0
    severity      0.2     1 − |Δlevel| / 3
    message       0.4     Levenshtein ratio of normalised text
    tags          0.1     Jaccard, only when both carry tags
    ============  ======  =====================================

    The sum is divided by the total applied weight.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Sequence
from typing import Any

from src.contracts.alert import Alert
from src.contracts.enums import severity_level

DEFAULT_FIELDS: tuple[str, ...] = ("source", "severity", "message")

_UUID_RE = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b"
)
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_DIGITS_RE = re.compile(r"\d+")
_SPACE_RE = re.compile(r"\s+")

_W_SOURCE = 0.3
_W_SEVERITY = 0.2
_W_MESSAGE = 0.4
_W_TAGS = 0.1


def normalize_message(text: str) -> str:
    """Replace volatile values with placeholder tokens."""
    s = text.lower()
    s = _UUID_RE.sub("<uuid>", s)
    s = _EMAIL_RE.sub("<email>", s)
    s = _IPV4_RE.sub("<ip>", s)
    s = _DIGITS_RE.sub("<n>", s)
    return _SPACE_RE.sub(" ", s).strip()


def _field_value(alert: Alert, name: str) -> Any:
    if name == "message":
        return normalize_message(alert.message)
    if name == "tags":
        return sorted(alert.tags) if alert.tags else []
    if name.startswith("metadata."):
        return alert.metadata.get(name.split(".", 1)[1])
    if name in ("source", "severity", "alert_id"):
        return getattr(alert, name)
    return alert.metadata.get(name)


def fingerprint(alert: Alert, fields: Sequence[str] = DEFAULT_FIELDS) -> str:
    """Deterministic hex digest of the selected alert fields."""
    payload = {name: _field_value(alert, name) for name in sorted(set(fields))}
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════
#  Similarity
# ═══════════════════════════════════════════════════════════════════════════


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert / delete / substitute, all cost 1)."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]


def string_similarity(a: str, b: str) -> float:
    """``1 − distance / maxLen``; two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 1.0
    return len(sa & sb) / len(sa | sb)


def similarity(a: Alert, b: Alert) -> float:
    """Weighted similarity of two alerts in [0, 1]."""
    total = _W_SOURCE + _W_SEVERITY + _W_MESSAGE
    score = _W_SOURCE * (1.0 if a.source == b.source else 0.0)

    delta = abs(severity_level(a.severity) - severity_level(b.severity))
    score += _W_SEVERITY * (1.0 - delta / 3.0)

    score += _W_MESSAGE * string_similarity(
        normalize_message(a.message), normalize_message(b.message)
    )

    if a.tags is not None and b.tags is not None:
        score += _W_TAGS * jaccard(a.tags, b.tags)
        total += _W_TAGS

    return round(score / total, 10)


# ═══════════════════════════════════════════════════════════════════════════
#  Default clusterer
# ═══════════════════════════════════════════════════════════════════════════


class FeatureHashClusterer:
    """Deterministic bucketer over a few coarse alert features.

    Stands in for an ML clustering service: same ``predict`` interface,
    no model, no I/O.
    """

    def __init__(self, buckets: int = 10) -> None:
        if buckets < 1:
            raise ValueError("buckets must be >= 1")
        self.buckets = buckets

    def features(self, alert: Alert) -> list[int]:
        return [
            severity_level(alert.severity),
            len(alert.message),
            len(alert.source),
            len(alert.tags or ()),
        ]

    def predict(self, alert: Alert) -> str:
        bucket = sum(f * 31 for f in self.features(alert)) % self.buckets
        return f"cluster_{bucket}"
