"""
Freshness verifier: second, independent session that cross-checks the primary.

Проверка "протухших" данных: раз в N минут логинимся вторым аккаунтом через
отдельную прокси-сессию и сравниваем ближайшую дату с основной сессией.
Ошибки проверки никогда не приводят к рестарту основной сессии.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from typing import Callable, Optional

from .browser import BrowserFactory
from .config import Credentials, ProxyConfig
from .errors import VerificationFailed
from .models import VerificationVerdict
from .notifier import NotificationKind, Notifier
from .observer import SlotList, SlotObserver, classify_response
from .utils import new_session_token

logger = logging.getLogger(__name__)


SETTLE_SECONDS = 3.0


def is_fresh(primary: Optional[dt.date], secondary: Optional[dt.date]) -> bool:
    """
    Decision rule.

    Stale only when the secondary has a date and the primary either has none
    or a different one. Absence on the secondary side proves nothing.
    """
    if secondary is None:
        return True
    return primary == secondary


class FreshnessVerifier:
    def __init__(
        self,
        *,
        credentials: Credentials,
        city: str,
        observer: SlotObserver,
        browser_factory: BrowserFactory,
        notifier: Notifier,
        interval: float = 300.0,
        proxy: Optional[ProxyConfig] = None,
        settle_seconds: float = SETTLE_SECONDS,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credentials = credentials
        self.city = city
        self.observer = observer
        self.browser_factory = browser_factory
        self.notifier = notifier
        self.interval = interval
        self.proxy = proxy
        self.settle_seconds = settle_seconds
        self.timeout = timeout
        self._clock = clock
        self._last_run = clock()
        self.last_verdict: Optional[VerificationVerdict] = None

    @property
    def configured(self) -> bool:
        return self.credentials.configured

    def reset_timer(self) -> None:
        self._last_run = self._clock()

    def is_due(self) -> bool:
        return self._clock() - self._last_run >= self.interval

    def seconds_until_due(self) -> float:
        return max(0.0, self.interval - (self._clock() - self._last_run))

    def _verify_proxy(self) -> Optional[ProxyConfig]:
        if self.proxy is None or not self.proxy.enabled:
            return None
        proxy = self.proxy.for_session(new_session_token())
        while proxy.username == self.proxy.username and "sessid-" in proxy.username:
            proxy = self.proxy.for_session(new_session_token())
        return proxy

    async def verify(self) -> VerificationVerdict:
        """Run one verification cycle. Never raises except on cancellation."""
        try:
            if not self.configured:
                logger.warning("No verification account configured, skipping freshness check")
                verdict = VerificationVerdict(fresh=True)
            else:
                verdict = await self._verify()
        finally:
            self.reset_timer()
        self.last_verdict = verdict
        return verdict

    async def _verify(self) -> VerificationVerdict:
        logger.info("Verifying data freshness with secondary account %s", self.credentials.email)
        try:
            secondary = await self._run_secondary()
        except VerificationFailed as e:
            primary = self._primary_date()
            message = str(e)
            logger.error("Verification error: %s", message)
            self.notifier.notify(NotificationKind.VERIFY_FAILED, error=message, status="Bot continues")
            return VerificationVerdict(primary_date=primary, fresh=True, error=message)

        primary = self._primary_date()
        fresh = is_fresh(primary, secondary)
        verdict = VerificationVerdict(primary_date=primary, secondary_date=secondary, fresh=fresh)
        logger.info("Comparison: main=%s verify=%s -> %s", primary, secondary, "fresh" if fresh else "STALE")

        if fresh:
            self.notifier.notify(
                NotificationKind.DATA_FRESH,
                both_accounts_see=(primary.isoformat() if primary else "no dates"),
            )
        else:
            self.notifier.notify(
                NotificationKind.STALE_DATA,
                main_account=(primary.isoformat() if primary else "No dates"),
                verify_account=secondary.isoformat() if secondary else None,
                action="Restarting main session",
            )
        return verdict

    def _primary_date(self) -> Optional[dt.date]:
        slot = self.observer.last_slot
        return slot.date if slot else None

    async def _run_secondary(self) -> Optional[dt.date]:
        try:
            return await asyncio.wait_for(self._observe_secondary(), timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            raise VerificationFailed(str(e) or type(e).__name__) from e

    async def _observe_secondary(self) -> Optional[dt.date]:
        captured: list[dt.date] = []

        def on_response(url: str, body: object) -> None:
            result = classify_response(url, body)
            if isinstance(result, SlotList):
                captured.append(result.slot.date)
                logger.info("Verify account sees: %s", result.slot.date.isoformat())

        proxy = self._verify_proxy()
        if proxy is not None:
            logger.info("Using separate proxy session for verify: %s", proxy.username)
        browser = self.browser_factory("verify", proxy, True)
        try:
            await browser.start()
            browser.on_response(on_response)
            await browser.login(email=self.credentials.email, password=self.credentials.password)
            await browser.navigate_to_appointment(self.city)
            await browser.settle(self.settle_seconds)
        finally:
            await browser.close()
        return captured[-1] if captured else None


__all__ = ["FreshnessVerifier", "SETTLE_SECONDS", "is_fresh"]
