"""
Session supervisor: owns the primary session's lifecycle.

Супервизор основной сессии:
- логин → переход к записи → мониторинг → бронирование
- плановая ротация cookies каждые 15 минут
- проверка живости страницы, "system busy", истечение сессии
- любой фатальный случай = полная пересборка сессии с нуля
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional

from .booking import BookingCoordinator
from .browser import BrowserFactory, PortalBrowser, is_busy_text, lock_reason
from .config import Settings
from .errors import (
    AccountLocked,
    AuthenticationFailed,
    ConnectivityLost,
    CredentialBanned,
    NavigationFailed,
    SentryError,
    SessionExpired,
    StaleData,
    SystemBusy,
)
from .governor import AccountGovernor
from .models import ExitReason, MonitorState, SessionState, utcnow
from .notifier import NotificationKind, Notifier
from .observer import SlotObserver
from .poller import PollDriver, effective_cpm
from .verifier import FreshnessVerifier

logger = logging.getLogger(__name__)


RESTART_BACKOFF = 3.0
CONNECTIVITY_BACKOFF = 5.0
ERROR_BACKOFF = 10.0
LOGIN_RETRY_WAIT = 30.0
MAX_CONSECUTIVE_ERRORS = 5
OUTSIDE_RANGE_EVERY = 100

SleepFunc = Callable[[float], Awaitable[None]]


def _looks_closed(exc: BaseException) -> bool:
    message = str(exc)
    return "closed" in message or "Target" in message


class SessionSupervisor:
    """Explicit restart loop around one primary credential."""

    def __init__(
        self,
        settings: Settings,
        *,
        observer: SlotObserver,
        governor: AccountGovernor,
        notifier: Notifier,
        browser_factory: BrowserFactory,
        verifier: Optional[FreshnessVerifier] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        fresh_wait: float = 0.1,
    ) -> None:
        self.settings = settings
        self.observer = observer
        self.governor = governor
        self.notifier = notifier
        self.browser_factory = browser_factory
        self._sleep = sleep
        self._clock = clock
        self.fresh_wait = fresh_wait
        self.verifier = verifier or FreshnessVerifier(
            credentials=settings.verify.credentials,
            city=settings.portal.city,
            observer=observer,
            browser_factory=browser_factory,
            notifier=notifier,
            interval=settings.verify.interval_seconds,
            proxy=settings.proxy,
        )
        self.state = MonitorState()
        self._verify_task: Optional[asyncio.Task] = None

    @property
    def email(self) -> str:
        return self.settings.primary.email

    def _transition(self, new: SessionState) -> None:
        if self.state.state is not new:
            logger.info("Session state: %s -> %s", self.state.state.value, new.value)
            self.state.state = new

    async def run(self) -> ExitReason:
        """Run sessions until one ends with a terminal reason."""
        while True:
            reason = await self.run_once()
            if reason.terminal:
                logger.info("Supervisor finished: %s (exit code %s)", reason.value, reason.exit_code)
                return reason
            self.state.restarts += 1
            logger.info("Restarting session (restart #%s)", self.state.restarts)

    async def run_once(self) -> ExitReason:
        """One full session from Unauthenticated to Terminated."""
        try:
            self.governor.ensure_usable(self.email)
        except CredentialBanned as e:
            logger.critical("Account %s is banned (%s). Skipping.", self.email, e.reason)
            self.notifier.notify(NotificationKind.ACCOUNT_BANNED, email=self.email, reason=e.reason)
            return ExitReason.BANNED

        until = self.governor.store.cooldown_until(self.email)
        if until is not None:
            logger.warning("Account %s is cooling down until %s", self.email, until.isoformat())
            return ExitReason.COOLDOWN

        self._transition(SessionState.UNAUTHENTICATED)
        self.observer.reset_session()
        self.state.current_slot = None
        proxy = self.settings.proxy if self.settings.proxy.enabled else None
        browser = self.browser_factory("primary", proxy, self.settings.poll.headless)
        backoff = 0.0
        try:
            await browser.start()
            browser.on_response(self.observer.on_response)
            await self._authenticate(browser)
            await self._navigate(browser)
            self.notifier.notify(
                NotificationKind.LOGGED_IN,
                email=self.email,
                city=self.settings.portal.city,
                status="Monitoring for slots",
            )
            return await self._monitor(browser)

        except AuthenticationFailed as e:
            await self._debug_screenshot(browser, "login_failed")
            banned = self.governor.record_login_failure(self.email, str(e))
            failures = self.governor.failures(self.email)
            self.notifier.notify(
                NotificationKind.LOGIN_FAILED,
                attempt=f"{failures}/{self.governor.threshold}",
                email=self.email,
                error=str(e),
                status="Max attempts reached" if banned else "Will retry",
            )
            if banned:
                self.notifier.notify(NotificationKind.ACCOUNT_BANNED, email=self.email, reason="Too many login failures")
                return ExitReason.BANNED
            backoff = LOGIN_RETRY_WAIT
            return ExitReason.RESTART

        except AccountLocked as e:
            self.governor.lock(self.email, str(e))
            self.notifier.notify(NotificationKind.ACCOUNT_BANNED, email=self.email, reason=str(e))
            return ExitReason.BANNED

        except SystemBusy as e:
            self.governor.cool_down(self.email, str(e))
            self.notifier.notify(
                NotificationKind.SYSTEM_BUSY,
                email=self.email,
                action="Cooling down for 5 minutes",
            )
            return ExitReason.COOLDOWN

        except StaleData as e:
            logger.error("Restarting due to stale data: %s", e)
            backoff = RESTART_BACKOFF
            return ExitReason.RESTART

        except SessionExpired as e:
            logger.warning("Session expired - restarting: %s", e)
            self.notifier.notify(NotificationKind.SESSION_EXPIRED, email=self.email, action="Re-logging in")
            backoff = RESTART_BACKOFF
            return ExitReason.RESTART

        except ConnectivityLost as e:
            logger.error("Connection lost - restarting: %s", e)
            self.notifier.notify(NotificationKind.CONNECTION_LOST, error=str(e), action="Restarting")
            backoff = CONNECTIVITY_BACKOFF
            return ExitReason.RESTART

        except NavigationFailed as e:
            logger.error("Navigation failed - restarting: %s", e)
            self.notifier.notify(NotificationKind.CRASHED, error=f"Navigation failed: {e}", action="Restarting")
            backoff = RESTART_BACKOFF
            return ExitReason.RESTART

        except Exception as e:  # noqa: BLE001
            logger.exception("Unhandled session error: %s", e)
            self.state.last_error = str(e)
            self.notifier.notify(NotificationKind.CRASHED, error=str(e), action="Restarting in 10s")
            backoff = ERROR_BACKOFF
            return ExitReason.RESTART

        finally:
            await self._cancel_verification()
            await browser.close()
            if self.state.state is not SessionState.TERMINATED:
                self._transition(SessionState.TERMINATED)
            if backoff:
                logger.info("Waiting %.0fs before next session", backoff)
                await self._sleep(backoff)

    async def _authenticate(self, browser: PortalBrowser) -> None:
        self._transition(SessionState.AUTHENTICATING)
        await browser.login(email=self.email, password=self.settings.primary.password)
        self.governor.record_login_success(self.email)

    async def _navigate(self, browser: PortalBrowser) -> None:
        self._transition(SessionState.NAVIGATING)
        await browser.navigate_to_appointment(self.settings.portal.city)

    async def _rotate(self, browser: PortalBrowser) -> None:
        """Scheduled cookie reset: same browser, full credential re-submission."""
        logger.info("Cookie reset - clearing cookies and re-logging in")
        self.notifier.notify(NotificationKind.COOKIE_RESET, email=self.email)
        self._transition(SessionState.UNAUTHENTICATED)
        try:
            await browser.clear_cookies()
            await self._authenticate(browser)
            await self._navigate(browser)
        except (AccountLocked, SystemBusy, AuthenticationFailed):
            raise
        except Exception as e:  # noqa: BLE001
            raise NavigationFailed(f"cookie reset failed: {e}") from e
        self._transition(SessionState.MONITORING)
        logger.info("Cookie reset complete - back to monitoring")

    async def _monitor(self, browser: PortalBrowser) -> ExitReason:
        poll = self.settings.poll
        window = self.settings.portal.window
        self._transition(SessionState.MONITORING)

        poller = PollDriver(browser, self.observer, target_cpm=poll.target_cpm, overhead_ms=poll.overhead_ms)
        booking = BookingCoordinator(
            page=browser,
            observer=self.observer,
            window=window,
            notifier=self.notifier,
            email=self.email,
        )
        self.verifier.reset_timer()

        started = self._clock()
        last_rotation = started
        rotation_every = poll.rotation_minutes * 60
        status_every = max(1, math.ceil(poll.target_cpm / 60))
        checks = 0
        consecutive_errors = 0

        while True:
            try:
                checks += 1
                self.state.checks_count += 1

                if self._clock() - last_rotation > rotation_every:
                    await self._rotate(browser)
                    last_rotation = self._clock()

                if checks % poll.liveness_every == 0:
                    await browser.ping()

                self._check_verification()
                if self._verify_task is None and self.verifier.is_due():
                    logger.info("Running stale data check")
                    self._verify_task = asyncio.create_task(self.verifier.verify(), name="freshness-verify")

                if checks % poll.page_check_every == 0:
                    await self._inspect_page(browser)

                await poller.tick()
                slot = await self.observer.wait_for_fresh_observation(self.fresh_wait)

                self._update_stats(poller, checks, started)
                if checks % status_every == 0:
                    self._log_status(poller)

                if slot is not None and booking.qualifies(slot):
                    # Проверка свежести, начатая до совпадения, должна дойти до вердикта
                    await self._await_verification()
                    logger.info("MATCH FOUND: %s - booking", slot.date)
                    self.notifier.notify(
                        NotificationKind.SLOT_DETECTED,
                        email=self.email,
                        city=self.settings.portal.city,
                        date=slot.date.isoformat(),
                        status="Attempting to book",
                    )
                    self._transition(SessionState.BOOKING)
                    result = await booking.book(slot)
                    if result.booked:
                        self._transition(SessionState.TERMINATED)
                        return ExitReason.BOOKED
                    self._transition(SessionState.MONITORING)
                elif slot is not None and checks % OUTSIDE_RANGE_EVERY == 0:
                    self.notifier.notify(
                        NotificationKind.SLOT_OUTSIDE_RANGE,
                        available=slot.date.isoformat(),
                        your_range=str(window),
                    )

                self._notify_status(checks)
                consecutive_errors = 0
                await self._sleep(poller.delay)

            except (SentryError, asyncio.CancelledError):
                raise
            except Exception as e:  # noqa: BLE001
                consecutive_errors += 1
                self.state.last_error = str(e)
                logger.error("Loop error (%s in a row): %s", consecutive_errors, e)
                if _looks_closed(e) or consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    raise ConnectivityLost(str(e)) from e
                await self._sleep(1.0)

    def _check_verification(self) -> None:
        task = self._verify_task
        if task is None or not task.done():
            return
        self._verify_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Verification task failed: %s", exc)
            return
        verdict = task.result()
        if not verdict.fresh:
            raise StaleData(f"main={verdict.primary_date} verify={verdict.secondary_date}")

    async def _await_verification(self) -> None:
        """Let a pending verification finish; raises StaleData on a stale verdict."""
        task = self._verify_task
        if task is None:
            return
        if not task.done():
            logger.info("Slot match while verifying - waiting for the verdict first")
            await asyncio.wait({task})
        self._check_verification()

    async def _cancel_verification(self) -> None:
        task, self._verify_task = self._verify_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:  # noqa: BLE001
            logger.debug("Verification task ended with %s", e)

    async def _inspect_page(self, browser: PortalBrowser) -> None:
        text = await browser.page_text()
        reason = lock_reason(text)
        if reason:
            raise AccountLocked(reason)
        if is_busy_text(text):
            pause = self.settings.poll.busy_pause_seconds
            logger.warning("System busy - pausing %.0fs", pause)
            self.notifier.notify(NotificationKind.SYSTEM_BUSY, email=self.email, action=f"Pausing {pause:.0f}s")
            await self._sleep(pause)
            return
        if await browser.signed_out():
            raise SessionExpired("portal returned to the sign-in page")

    def _update_stats(self, poller: PollDriver, checks: int, started: float) -> None:
        snapshot = self.observer.snapshot()
        closest = self.observer.tracker.closest
        self.state.current_slot = snapshot.slot.date if snapshot.slot else None
        self.state.closest_slot = closest.date if closest else None
        self.state.last_latency_ms = poller.latency_ms
        self.state.cpm = effective_cpm(checks, self._clock() - started)

    def _log_status(self, poller: PollDriver) -> None:
        st = self.state
        latency = f"{st.last_latency_ms}ms" if st.last_latency_ms is not None else "--"
        logger.info(
            "[%.1f CPM] #%s | Latency: %s | Slot: %s | Best: %s | Verify: %.0fm",
            st.cpm,
            st.checks_count,
            latency,
            st.current_slot or "SEARCHING",
            st.closest_slot or "N/A",
            self.verifier.seconds_until_due() / 60,
        )

    def _notify_status(self, checks: int) -> None:
        st = self.state
        self.notifier.notify(
            NotificationKind.STATUS,
            email=self.email,
            city=self.settings.portal.city,
            range=str(self.settings.portal.window),
            cpm=f"{st.cpm:.1f}",
            checks=checks,
            current=st.current_slot.isoformat() if st.current_slot else "SEARCHING",
            best=st.closest_slot.isoformat() if st.closest_slot else "N/A",
            next_verify=f"{self.verifier.seconds_until_due() / 60:.0f}m",
        )

    async def _debug_screenshot(self, browser: PortalBrowser, name: str) -> None:
        try:
            debug_dir = self.settings.logging.logs_dir
            debug_dir.mkdir(parents=True, exist_ok=True)
            path = debug_dir / f"{name}_{utcnow().strftime('%Y%m%d_%H%M%S')}.png"
            await browser.screenshot(path)
            logger.warning("Screenshot saved: %s", path)
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to save screenshot: %s", e)


__all__ = ["SessionSupervisor"]
