"""
Time sources.

The lifecycle processor and services never call ``datetime.now`` directly;
they ask the ``TimeSource`` on the billing context. ``SimulatedTimeSource``
lets tests and simulations move time forward deterministically.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

import structlog

from dotmac.billing_core.dates import ensure_utc

logger = structlog.get_logger(__name__)


@runtime_checkable
class TimeSource(Protocol):
    """Supplies the current instant as an aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemTimeSource:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class SimulatedTimeSource:
    """Manually controlled clock for tests and billing simulations."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start) if start is not None else datetime.now(UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move the clock forward by ``delta`` or by timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("simulated time cannot move backwards")
        self._now = self._now + step
        logger.debug("time_source.advanced", now=self._now.isoformat())
        return self._now

    def set(self, value: datetime) -> datetime:
        """Jump to an absolute instant."""
        self._now = ensure_utc(value)
        logger.debug("time_source.set", now=self._now.isoformat())
        return self._now
