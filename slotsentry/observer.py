"""
Slot observer: turns intercepted portal responses into a "latest known slot".

Наблюдатель слотов:
- классификация ответов портала (список дат / список времени / прочее)
- последняя увиденная дата и время с отметкой времени
- трекер ближайшей даты (никогда не ухудшается)
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .models import SlotCandidate, utcnow

logger = logging.getLogger(__name__)


_FACILITY_RE = re.compile(r"/(\d+)\.json")


@dataclass(frozen=True)
class SlotList:
    url: str
    slot: SlotCandidate


@dataclass(frozen=True)
class TimeList:
    url: str
    time: str


@dataclass(frozen=True)
class Unrecognized:
    url: str


Classified = Union[SlotList, TimeList, Unrecognized]


def classify_response(url: str, body: Any, *, now: Optional[dt.datetime] = None) -> Classified:
    """
    Best-effort classification of one portal response.

    The wire format is neither documented nor versioned, so anything that
    does not look exactly like a date list or a time list is Unrecognized.
    Never raises.
    """
    if ".json" not in url:
        return Unrecognized(url)

    if "date=" in url:
        if isinstance(body, dict):
            times = body.get("available_times")
            if isinstance(times, list) and times and times[0]:
                return TimeList(url, str(times[0]))
        return Unrecognized(url)

    if "appointments" not in url or not isinstance(body, list) or not body:
        return Unrecognized(url)

    first = body[0]
    if not isinstance(first, dict):
        return Unrecognized(url)
    try:
        slot_date = dt.date.fromisoformat(str(first.get("date", "")))
    except ValueError:
        return Unrecognized(url)

    match = _FACILITY_RE.search(url)
    slot = SlotCandidate(
        date=slot_date,
        facility_id=match.group(1) if match else None,
        observed_at=now or utcnow(),
    )
    return SlotList(url, slot)


class ClosestSlotTracker:
    """Earliest slot seen today-or-later. Only ever replaced by a strictly earlier date."""

    def __init__(self, today: Callable[[], dt.date] = dt.date.today) -> None:
        self._today = today
        self._closest: Optional[SlotCandidate] = None

    @property
    def closest(self) -> Optional[SlotCandidate]:
        return self._closest

    def offer(self, candidate: SlotCandidate) -> bool:
        if candidate.date < self._today():
            return False
        if self._closest is not None and candidate.date >= self._closest.date:
            return False
        self._closest = candidate
        logger.info("New closest slot: %s", candidate.date.isoformat())
        return True


@dataclass(frozen=True)
class ObservationSnapshot:
    slot: Optional[SlotCandidate] = None
    time: Optional[str] = None
    generation: int = 0

    @property
    def observed_at(self) -> Optional[dt.datetime]:
        return self.slot.observed_at if self.slot else None


class SlotObserver:
    """
    Single-writer state cell fed by the response callback.

    Readers get an immutable snapshot; the value may be superseded right
    after it is read.
    """

    def __init__(self, tracker: Optional[ClosestSlotTracker] = None) -> None:
        self.tracker = tracker or ClosestSlotTracker()
        self._snapshot = ObservationSnapshot()
        self._changed = asyncio.Event()

    def snapshot(self) -> ObservationSnapshot:
        return self._snapshot

    @property
    def last_slot(self) -> Optional[SlotCandidate]:
        return self._snapshot.slot

    @property
    def last_time(self) -> Optional[str]:
        return self._snapshot.time

    def on_response(self, url: str, body: Any) -> Classified:
        result = classify_response(url, body)
        if isinstance(result, SlotList):
            self.record(result.slot)
        elif isinstance(result, TimeList):
            self.record_time(result.time)
            logger.info("Time captured: %s", result.time)
        return result

    def record(self, candidate: SlotCandidate) -> None:
        current = self._snapshot
        self._snapshot = ObservationSnapshot(
            slot=candidate,
            time=current.time,
            generation=current.generation + 1,
        )
        self.tracker.offer(candidate)
        # будим всех, кто ждёт свежего ответа, и заводим новое событие
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def record_time(self, value: Optional[str]) -> None:
        current = self._snapshot
        self._snapshot = ObservationSnapshot(
            slot=current.slot,
            time=value,
            generation=current.generation,
        )

    def reset_time(self) -> None:
        self.record_time(None)

    def reset_session(self) -> None:
        """Forget what the previous session saw. The closest-slot tracker is kept."""
        self._snapshot = ObservationSnapshot(generation=self._snapshot.generation + 1)
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def wait_for_fresh_observation(self, timeout: float) -> Optional[SlotCandidate]:
        """
        Wait until a slot newer than the one present at call time is recorded.

        Returns the current slot either way; a timeout is not an error.
        """
        changed = self._changed
        if timeout > 0:
            try:
                await asyncio.wait_for(changed.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self._snapshot.slot


__all__ = [
    "Classified",
    "ClosestSlotTracker",
    "ObservationSnapshot",
    "SlotList",
    "SlotObserver",
    "TimeList",
    "Unrecognized",
    "classify_response",
]
