"""
Booking coordinator: claims a qualifying slot with a bounded number of attempts.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import BookingAttemptFailed
from .models import DateWindow, SlotCandidate
from .notifier import NotificationKind, Notifier
from .observer import SlotObserver

logger = logging.getLogger(__name__)


MAX_ATTEMPTS = 3


class BookingPage(Protocol):
    async def select_date(self, value: dt.date) -> None: ...

    async def dropdown_time(self) -> Optional[str]: ...

    async def select_time_and_submit(self, value: str) -> None: ...

    async def confirm(self) -> None: ...

    async def form_present(self) -> bool: ...


@dataclass(frozen=True)
class BookingResult:
    booked: bool
    attempts: int
    elapsed: float = 0.0
    time: Optional[str] = None


class BookingCoordinator:
    """
    Drives the date → time → submit → confirm sequence on the primary page.

    While ``in_progress`` is set the supervisor stops ticking and keeps the
    freshness verifier away.
    """

    def __init__(
        self,
        *,
        page: BookingPage,
        observer: SlotObserver,
        window: DateWindow,
        notifier: Notifier,
        email: str,
        max_attempts: int = MAX_ATTEMPTS,
        poll_interval: float = 0.01,
        attempt_gap: float = 0.05,
        time_timeout: Optional[float] = None,
    ) -> None:
        self.page = page
        self.observer = observer
        self.window = window
        self.notifier = notifier
        self.email = email
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.attempt_gap = attempt_gap
        self.time_timeout = time_timeout
        self.in_progress = False
        self.completed = False

    def qualifies(self, slot: Optional[SlotCandidate]) -> bool:
        return slot is not None and self.window.contains(slot.date)

    async def book(self, slot: SlotCandidate) -> BookingResult:
        if not self.qualifies(slot):
            logger.warning("Slot %s is outside %s, not booking", slot.date, self.window)
            return BookingResult(booked=False, attempts=0)
        if self.in_progress:
            raise BookingAttemptFailed("booking already in progress")

        self.in_progress = True
        started = time.monotonic()
        self.notifier.notify(NotificationKind.BOOKING_STARTED, date=slot.date.isoformat(), email=self.email)
        try:
            for attempt in range(1, self.max_attempts + 1):
                logger.info("Booking attempt %s/%s for %s", attempt, self.max_attempts, slot.date)
                chosen = await self._attempt(slot)
                if chosen is not None:
                    elapsed = time.monotonic() - started
                    self.completed = True
                    logger.info("BOOKED %s %s in %.0f ms", slot.date, chosen, elapsed * 1000)
                    self.notifier.notify(
                        NotificationKind.BOOKING_SUCCEEDED,
                        date=slot.date.isoformat(),
                        time=chosen,
                        elapsed=f"{elapsed * 1000:.0f}ms",
                        email=self.email,
                    )
                    return BookingResult(booked=True, attempts=attempt, elapsed=elapsed, time=chosen)
                await asyncio.sleep(self.attempt_gap)
        finally:
            if not self.completed:
                self.in_progress = False

        elapsed = time.monotonic() - started
        logger.error("Booking failed for %s after %s attempts", slot.date, self.max_attempts)
        self.notifier.notify(
            NotificationKind.BOOKING_FAILED,
            date=slot.date.isoformat(),
            attempts=self.max_attempts,
            status="Continuing to monitor",
        )
        return BookingResult(booked=False, attempts=self.max_attempts, elapsed=elapsed)

    async def _attempt(self, slot: SlotCandidate) -> Optional[str]:
        """One attempt. Returns the booked time, or None if the form is still there."""
        chosen: Optional[str] = None
        try:
            self.observer.reset_time()
            await self.page.select_date(slot.date)
            chosen = await self._wait_for_time()
            await self.page.select_time_and_submit(chosen)
            await self.page.confirm()
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            # Сабмит мог пройти, даже если подтверждение упало локально
            logger.error("Booking attempt error: %s", e)

        if await self._form_still_present():
            logger.warning("Still on appointment form after submit")
            return None
        return chosen or "unknown"

    async def _wait_for_time(self) -> str:
        deadline = None if self.time_timeout is None else time.monotonic() + self.time_timeout
        while True:
            value = self.observer.last_time
            if not value:
                try:
                    value = await self.page.dropdown_time()
                except Exception as e:  # noqa: BLE001
                    logger.debug("Time dropdown not readable yet: %s", e)
            if value:
                logger.info("Selected time: %s", value)
                return value
            if deadline is not None and time.monotonic() > deadline:
                raise BookingAttemptFailed("no time became available for the selected date")
            await asyncio.sleep(self.poll_interval)

    async def _form_still_present(self) -> bool:
        try:
            return await self.page.form_present()
        except Exception as e:  # noqa: BLE001
            logger.warning("Form check failed (%s), treating the form as gone", e)
            return False


__all__ = ["BookingCoordinator", "BookingResult", "MAX_ATTEMPTS"]
