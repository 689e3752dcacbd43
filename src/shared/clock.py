"""Time helpers shared by all engines."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_ts(value: str | datetime) -> datetime:
    """Parse ISO-8601 timestamp to an aware UTC datetime.

    Naive values are assumed to be UTC.  ``Z`` suffix is accepted.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def iso(dt: datetime) -> str:
    """Format an aware datetime as ISO-8601 with a ``Z`` suffix."""
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def ms_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000.0


class ReplayClock:
    """Clock that follows the newest timestamp fed to ``advance``.

    Used when replaying recorded alerts so windows and deadlines are
    measured in alert time, not wall time.  Before the first ``advance``
    it reports *start* (wall time by default).
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utc_now()
        self._started = start is not None

    def advance(self, ts: datetime) -> datetime:
        if not self._started or ts > self._now:
            self._now = ts
            self._started = True
        return self._now

    def __call__(self) -> datetime:
        return self._now
