from __future__ import annotations

import asyncio
import datetime as dt
import time
from typing import Any, Callable, Optional

from conftest import FakeBrowser, FakeFactory, RecordingNotifier, SleepRecorder

from slotsentry.config import Settings
from slotsentry.errors import AccountLocked, AuthenticationFailed, SystemBusy
from slotsentry.governor import AccountGovernor, MemoryCredentialStore
from slotsentry.models import ExitReason, SessionState, VerificationVerdict
from slotsentry.notifier import NotificationKind
from slotsentry.observer import ClosestSlotTracker, SlotObserver
from slotsentry.supervisor import SessionSupervisor


class StubVerifier:
    """Reports a fixed verdict the first time it is due."""

    def __init__(self, verdict: VerificationVerdict) -> None:
        self.verdict = verdict
        self.due = True
        self.calls = 0

    def reset_timer(self) -> None:
        pass

    def is_due(self) -> bool:
        return self.due

    def seconds_until_due(self) -> float:
        return 0.0

    async def verify(self) -> VerificationVerdict:
        self.calls += 1
        self.due = False
        return self.verdict


def _supervisor(
    settings: Settings,
    factory: FakeFactory,
    notifier: RecordingNotifier,
    sleeper: SleepRecorder,
    *,
    store: Optional[MemoryCredentialStore] = None,
    verifier: Optional[Any] = None,
    observer: Optional[SlotObserver] = None,
    clock: Callable[[], float] = time.monotonic,
) -> SessionSupervisor:
    return SessionSupervisor(
        settings,
        observer=observer or SlotObserver(),
        governor=AccountGovernor(store or MemoryCredentialStore()),
        notifier=notifier,
        browser_factory=factory,
        verifier=verifier,  # type: ignore[arg-type]
        sleep=sleeper,
        clock=clock,
        fresh_wait=0,
    )


def _with_poll(settings: Settings, **changes: int) -> Settings:
    return settings.model_copy(update={"poll": settings.poll.model_copy(update=changes)})


def test_slot_inside_window_is_booked(settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder) -> None:
    browser = FakeBrowser(dates=("2026-02-10",))
    factory = FakeFactory(browser)
    supervisor = _supervisor(settings, factory, notifier, sleeper)

    reason = asyncio.run(supervisor.run())

    assert reason is ExitReason.BOOKED
    assert reason.exit_code == 0
    assert browser.submits == 1
    assert browser.closed
    assert supervisor.state.state is SessionState.TERMINATED
    kinds = notifier.kinds()
    assert kinds.index(NotificationKind.SLOT_DETECTED) < kinds.index(NotificationKind.BOOKING_SUCCEEDED)
    assert factory.calls == [("primary", None, True)]


def test_stale_verdict_restarts_primary(settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder) -> None:
    browser = FakeBrowser(dates=("2026-06-01",))
    verdict = VerificationVerdict(
        primary_date=dt.date(2026, 6, 1),
        secondary_date=dt.date(2026, 1, 5),
        fresh=False,
    )
    verifier = StubVerifier(verdict)
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, verifier=verifier)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert verifier.calls == 1
    assert browser.closed
    assert 3.0 in sleeper.calls


def test_three_login_failures_ban_the_credential(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    browsers = [FakeBrowser(login_errors=(AuthenticationFailed("still on sign-in page"),)) for _ in range(3)]
    factory = FakeFactory(*browsers)
    store = MemoryCredentialStore()
    supervisor = _supervisor(settings, factory, notifier, sleeper, store=store)

    reason = asyncio.run(supervisor.run())

    assert reason is ExitReason.BANNED
    assert reason.exit_code == 10
    assert store.is_banned("main@example.com")
    assert sleeper.calls == [30.0, 30.0]
    assert all(b.closed for b in browsers)
    assert notifier.kinds().count(NotificationKind.LOGIN_FAILED) == 3

    # Забаненный аккаунт больше не используется: браузер даже не создаётся
    again = asyncio.run(supervisor.run_once())
    assert again is ExitReason.BANNED
    assert len(factory.calls) == 3


def test_locked_account_is_banned_immediately(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    browser = FakeBrowser(login_errors=(AccountLocked("Locked until 2026-10-19 10:00 UTC"),))
    store = MemoryCredentialStore()
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, store=store)

    reason = asyncio.run(supervisor.run())

    assert reason is ExitReason.BANNED
    assert browser.logins == 1
    assert store.bans()["main@example.com"].reason.startswith("Locked until")


def test_busy_sign_in_page_starts_cooldown(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    browser = FakeBrowser(login_errors=(SystemBusy("system busy on sign-in page"),))
    factory = FakeFactory(browser)
    store = MemoryCredentialStore()
    supervisor = _supervisor(settings, factory, notifier, sleeper, store=store)

    reason = asyncio.run(supervisor.run())

    assert reason is ExitReason.COOLDOWN
    assert reason.exit_code == 20
    assert store.cooldown_until("main@example.com") is not None
    assert not store.is_banned("main@example.com")

    assert asyncio.run(supervisor.run_once()) is ExitReason.COOLDOWN
    assert len(factory.calls) == 1


def test_exhausted_booking_returns_to_monitoring(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=2)
    browser = FakeBrowser(
        dates=("2026-02-10", "2026-02-10", "2026-06-01"),
        book_succeeds=False,
        signed_out=True,
    )
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert browser.submits == 3
    kinds = notifier.kinds()
    assert kinds.index(NotificationKind.BOOKING_FAILED) < kinds.index(NotificationKind.SESSION_EXPIRED)


def test_repeated_loop_errors_force_restart(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, liveness_every=1)
    browser = FakeBrowser(dates=("2026-06-01",), ping_error=RuntimeError("evaluate failed"))
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert sleeper.calls == [1.0, 1.0, 1.0, 1.0, 5.0]
    assert NotificationKind.CONNECTION_LOST in notifier.kinds()


def test_closed_target_restarts_without_retrying(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, liveness_every=1)
    browser = FakeBrowser(dates=("2026-06-01",), ping_error=RuntimeError("Target page has been closed"))
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert sleeper.calls == [5.0]


def test_locked_banner_while_monitoring_bans(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=1)
    browser = FakeBrowser(
        dates=("2026-06-01",),
        page_text="Your account is locked until October 19, 2026 10:00 AM.",
    )
    store = MemoryCredentialStore()
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, store=store)

    reason = asyncio.run(supervisor.run())

    assert reason is ExitReason.BANNED
    assert "Locked until" in store.bans()["main@example.com"].reason


def test_outside_window_slot_never_books(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=3)
    browser = FakeBrowser(dates=("2026-06-01",), signed_out=True)
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert browser.submits == 0
    assert browser.selected == []
    assert supervisor.state.current_slot is not None
    assert NotificationKind.BOOKING_STARTED not in notifier.kinds()


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class ClockJumpSleeper(SleepRecorder):
    """First sleep moves the clock past the cookie rotation interval."""

    def __init__(self, clock: FakeClock, jump: float) -> None:
        super().__init__()
        self.clock = clock
        self.jump = jump

    async def __call__(self, seconds: float) -> None:
        if not self.calls:
            self.clock.now += self.jump
        await super().__call__(seconds)


class HangingVerifier:
    """Verification that never finishes on its own."""

    def __init__(self) -> None:
        self.due = True
        self.cancelled = False
        self.resets = 0

    def reset_timer(self) -> None:
        pass

    def is_due(self) -> bool:
        return self.due

    def seconds_until_due(self) -> float:
        return 0.0

    async def verify(self) -> VerificationVerdict:
        self.due = False
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            self.resets += 1
        return VerificationVerdict(fresh=True)


class BusyOncePage(FakeBrowser):
    """Shows the busy banner once, then the portal signs the session out."""

    async def page_text(self) -> str:
        if not self.signed_out_value:
            self.signed_out_value = True
            return "The system is busy. Please try again later."
        return ""


def _stale(primary: str) -> VerificationVerdict:
    return VerificationVerdict(
        primary_date=dt.date.fromisoformat(primary),
        secondary_date=dt.date(2026, 1, 5),
        fresh=False,
    )


def test_pending_verification_finishes_before_booking_a_stale_slot(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    browser = FakeBrowser(dates=("2026-02-10",), book_succeeds=False)
    verifier = StubVerifier(_stale("2026-02-10"))
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, verifier=verifier)

    reason = asyncio.run(asyncio.wait_for(supervisor.run_once(), timeout=5))

    assert reason is ExitReason.RESTART
    assert verifier.calls == 1
    assert browser.submits == 0
    assert NotificationKind.BOOKING_STARTED not in notifier.kinds()


def test_fresh_verdict_lets_booking_proceed(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    browser = FakeBrowser(dates=("2026-02-10",))
    verifier = StubVerifier(VerificationVerdict(fresh=True))
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, verifier=verifier)

    reason = asyncio.run(asyncio.wait_for(supervisor.run_once(), timeout=5))

    assert reason is ExitReason.BOOKED
    assert verifier.calls == 1
    assert browser.submits == 1


def test_restarted_session_does_not_see_previous_slot(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=2)
    first = FakeBrowser(dates=("2026-06-01",))
    second = FakeBrowser(signed_out=True)
    observer = SlotObserver(ClosestSlotTracker(today=lambda: dt.date(2026, 1, 1)))
    supervisor = _supervisor(
        settings,
        FakeFactory(first, second),
        notifier,
        sleeper,
        verifier=StubVerifier(_stale("2026-06-01")),
        observer=observer,
    )

    assert asyncio.run(supervisor.run_once()) is ExitReason.RESTART
    assert observer.last_slot is not None

    assert asyncio.run(supervisor.run_once()) is ExitReason.RESTART
    assert observer.last_slot is None
    assert supervisor.state.current_slot is None
    assert second.selected == []
    # ближайшая дата переживает рестарт
    assert observer.tracker.closest is not None
    assert observer.tracker.closest.date == dt.date(2026, 6, 1)


def test_cookie_rotation_reuses_the_same_browser(settings: Settings, notifier: RecordingNotifier) -> None:
    settings = _with_poll(settings, page_check_every=3)
    clock = FakeClock()
    sleeper = ClockJumpSleeper(clock, jump=settings.poll.rotation_minutes * 60 + 1)
    browser = FakeBrowser(dates=("2026-06-01",), signed_out=True)
    factory = FakeFactory(browser)
    supervisor = _supervisor(settings, factory, notifier, sleeper, clock=clock)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert len(factory.calls) == 1
    assert browser.cookie_clears == 1
    assert browser.logins == 2
    kinds = notifier.kinds()
    assert kinds.index(NotificationKind.COOKIE_RESET) < kinds.index(NotificationKind.SESSION_EXPIRED)


def test_busy_banner_while_monitoring_pauses_and_resumes(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=1)
    browser = BusyOncePage(dates=("2026-06-01",))
    factory = FakeFactory(browser)
    store = MemoryCredentialStore()
    supervisor = _supervisor(settings, factory, notifier, sleeper, store=store)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert sleeper.calls[0] == settings.poll.busy_pause_seconds
    assert browser.triggers >= 1
    assert NotificationKind.SYSTEM_BUSY in notifier.kinds()
    assert store.cooldown_until("main@example.com") is None
    assert len(factory.calls) == 1


def test_running_verification_is_cancelled_on_teardown(
    settings: Settings, notifier: RecordingNotifier, sleeper: SleepRecorder
) -> None:
    settings = _with_poll(settings, page_check_every=2)
    browser = FakeBrowser(dates=("2026-06-01",), signed_out=True)
    verifier = HangingVerifier()
    supervisor = _supervisor(settings, FakeFactory(browser), notifier, sleeper, verifier=verifier)

    reason = asyncio.run(supervisor.run_once())

    assert reason is ExitReason.RESTART
    assert verifier.cancelled
    assert verifier.resets == 1
