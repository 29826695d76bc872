"""
Poll driver: forces the live session to re-query availability at a target rate.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional, Protocol

from .models import utcnow
from .observer import SlotObserver

logger = logging.getLogger(__name__)


class Requerier(Protocol):
    async def trigger_requery(self) -> None: ...


def compute_delay(target_cpm: int, overhead_ms: int = 100) -> float:
    """
    Inter-tick delay in seconds for a target checks-per-minute rate.

    A cycle costs roughly ``delay + overhead``, so the overhead is subtracted
    from the ideal cycle; never negative.
    """
    if target_cpm <= 0:
        raise ValueError("target_cpm must be positive")
    ideal_ms = 60_000 / target_cpm
    return max(0, int(ideal_ms - overhead_ms)) / 1000.0


def effective_cpm(checks: int, elapsed_seconds: float) -> float:
    if elapsed_seconds <= 0:
        return 0.0
    return checks / (elapsed_seconds / 60.0)


class PollDriver:
    def __init__(
        self,
        session: Requerier,
        observer: SlotObserver,
        *,
        target_cpm: int,
        overhead_ms: int = 100,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._session = session
        self._observer = observer
        self._clock = clock
        self.delay = compute_delay(target_cpm, overhead_ms)
        self.last_request_at: Optional[dt.datetime] = None
        self.ticks = 0

    async def tick(self) -> None:
        """Issue one re-query. Failures are swallowed so the next tick still runs."""
        self.ticks += 1
        try:
            await self._session.trigger_requery()
        except Exception as e:  # noqa: BLE001
            logger.debug("Re-query trigger failed: %s", e)
        self.last_request_at = self._clock()

    @property
    def latency(self) -> Optional[dt.timedelta]:
        observed_at = self._observer.snapshot().observed_at
        if observed_at is None or self.last_request_at is None:
            return None
        if observed_at < self.last_request_at:
            return None
        return observed_at - self.last_request_at

    @property
    def latency_ms(self) -> Optional[int]:
        latency = self.latency
        return int(latency.total_seconds() * 1000) if latency is not None else None


__all__ = ["PollDriver", "compute_delay", "effective_cpm"]
