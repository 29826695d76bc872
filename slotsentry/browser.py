"""
Playwright-based browser session for the visa appointment portal.

Browser-модуль на Playwright: один экземпляр = одна изолированная сессия
(свой браузер, свой контекст, своя прокси-сессия). Здесь живут селекторы
портала; движок работает только через публичные методы класса.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Response,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import ProxyConfig
from .errors import AccountLocked, AuthenticationFailed, ConnectivityLost, NavigationFailed, SystemBusy
from .utils import async_retry

logger = logging.getLogger(__name__)


FACILITY_SELECT = "#appointments_consulate_appointment_facility_id"
DATE_INPUT = "#appointments_consulate_appointment_date"
TIME_SELECT = "#appointments_consulate_appointment_time"
SUBMIT_BUTTON = "#appointments_submit"
CONTINUE_LINK = 'a.button.primary.small[href*="/niv/schedule/"]'
CONTINUE_SUBMIT = 'input[type="submit"][value="Continue"]'
CONFIRM_BUTTON = 'a.button.alert, a.button.primary, input[value="Confirm"]'

BUSY_MARKERS = ("system is busy", "too many requests")
LOCK_MARKERS = ("your account is locked", "too many login attempts")
_LOCKED_UNTIL_RE = re.compile(r"locked until (.*?)\.", re.IGNORECASE)


ResponseCallback = Callable[[str, Any], None]


def is_busy_text(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in BUSY_MARKERS)


def lock_reason(text: str) -> Optional[str]:
    """Return a ban reason if the page says the account is locked, else None."""
    lower = text.lower()
    if not any(marker in lower for marker in LOCK_MARKERS):
        return None
    match = _LOCKED_UNTIL_RE.search(text)
    return f"Locked until {match.group(1)}" if match else "Account Locked"


class PortalBrowser:
    """
    High-level wrapper around Playwright for one portal session.
    """

    def __init__(
        self,
        *,
        base_url: str,
        headless: bool = True,
        proxy: Optional[ProxyConfig] = None,
        label: str = "primary",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headless = headless
        self.proxy = proxy
        self.label = label
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._callbacks: list[ResponseCallback] = []

    @property
    def page(self) -> Page:
        if not self._page:
            raise RuntimeError("Browser not initialised")
        return self._page

    @property
    def sign_in_url(self) -> str:
        return f"{self.base_url}/users/sign_in"

    async def start(self) -> None:
        if self._browser:
            return
        logger.info("[%s] Starting Playwright browser (headless=%s)", self.label, self.headless)
        self._playwright = await async_playwright().start()
        launch_kwargs: dict[str, Any] = {"headless": self.headless, "args": ["--no-sandbox"]}
        proxy = self.proxy.playwright_proxy() if self.proxy else None
        if proxy:
            launch_kwargs["proxy"] = proxy
        self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        self._context = await self._browser.new_context(
            viewport={"width": 1920, "height": 1080},
            locale="en-CA",
        )
        self._page = await self._context.new_page()
        self._page.on("response", self._dispatch_response)

    async def close(self) -> None:
        """Close browser and Playwright. Never raises."""
        logger.info("[%s] Closing Playwright browser", self.label)
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:  # noqa: BLE001
                logger.debug("[%s] Close failed: %s", self.label, e)
        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:  # noqa: BLE001
                logger.debug("[%s] Playwright stop failed: %s", self.label, e)

        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    # region responses
    def on_response(self, callback: ResponseCallback) -> None:
        """Subscribe to (url, parsed JSON body or None) pairs."""
        self._callbacks.append(callback)

    async def _dispatch_response(self, response: Response) -> None:
        url = response.url
        body: Any = None
        if ".json" in url:
            try:
                body = await response.json()
            except Exception:  # noqa: BLE001
                body = None
        for callback in self._callbacks:
            try:
                callback(url, body)
            except Exception:  # noqa: BLE001
                logger.exception("[%s] Response callback failed for %s", self.label, url)

    # endregion

    @async_retry()
    async def open_sign_in(self) -> None:
        try:
            resp = await self.page.goto(self.sign_in_url, wait_until="domcontentloaded", timeout=60000)
        except PlaywrightError as e:
            raise NavigationFailed(f"sign-in page unreachable: {e}") from e
        if resp is not None and not resp.ok:
            raise NavigationFailed(f"sign-in page HTTP {resp.status}")

    async def login(self, *, email: str, password: str) -> None:
        """
        Submit credentials. Raises SystemBusy, AccountLocked or
        AuthenticationFailed; returns only when the sign-in page was left.
        """
        page = self.page
        logger.info("[%s] Attempting login as %s", self.label, email)
        await self.open_sign_in()
        try:
            await page.wait_for_selector("#user_email", timeout=30000)
        except PlaywrightTimeoutError as e:
            raise AuthenticationFailed("sign-in form did not appear") from e

        text = await self.page_text()
        if is_busy_text(text):
            raise SystemBusy("system busy on sign-in page")
        reason = lock_reason(text)
        if reason:
            raise AccountLocked(reason)

        await page.fill("#user_email", email)
        await page.fill("#user_password", password)
        try:
            await page.click('label[for="policy_confirmed"]', timeout=2000)
        except PlaywrightError:
            await self._force_click("#policy_confirmed")

        await page.click('input[type="submit"]')

        # Модалка с ошибкой чекбокса: жмём OK и повторяем
        ok_button = page.locator('button:has-text("OK"), a:has-text("OK")')
        try:
            await ok_button.first.wait_for(state="visible", timeout=3000)
            await ok_button.first.click()
            await self._force_click(".icheckbox")
            await page.click('input[type="submit"]')
        except PlaywrightError:
            pass

        try:
            await page.wait_for_url(lambda url: "sign_in" not in url, wait_until="domcontentloaded", timeout=30000)
        except PlaywrightTimeoutError:
            pass

        reason = lock_reason(await self.page_text())
        if reason:
            raise AccountLocked(reason)
        if "sign_in" in page.url:
            raise AuthenticationFailed("still on sign-in page after submit")
        logger.info("[%s] Login successful", self.label)

    async def navigate_to_appointment(self, city: str) -> str:
        """Open the reschedule page and select the facility. Returns its label."""
        page = self.page
        logger.info("[%s] Navigating to appointment page", self.label)
        try:
            await page.wait_for_selector(CONTINUE_LINK, timeout=20000)
            await page.click(CONTINUE_LINK)
            await page.wait_for_timeout(2000)

            appointment_url = re.sub(r"/[^/]+$", "/appointment", page.url)
            await page.goto(appointment_url, wait_until="domcontentloaded", timeout=60000)

            await page.wait_for_selector(FACILITY_SELECT, timeout=10000)
            options = await page.eval_on_selector_all(
                f"{FACILITY_SELECT} option",
                "opts => opts.map(o => ({text: o.innerText.trim(), value: o.value}))",
            )
        except PlaywrightError as e:
            raise NavigationFailed(f"appointment page: {e}") from e

        target = next(
            (o for o in options if o.get("value") and city.lower() in o.get("text", "").lower()),
            None,
        )
        if target is None:
            raise NavigationFailed(f"facility matching {city!r} not found")

        await page.select_option(FACILITY_SELECT, target["value"])
        logger.info("[%s] Selected city: %s", self.label, target["text"])

        try:
            await page.click(CONTINUE_SUBMIT, timeout=3000)
        except PlaywrightError:
            pass
        return target["text"]

    async def trigger_requery(self) -> None:
        """Re-fire the facility change event; the page re-fetches the date list."""
        await self.page.evaluate(
            """(selector) => {
                const sel = document.querySelector(selector);
                if (sel && sel.value) {
                    sel.dispatchEvent(new Event('change', { bubbles: true }));
                }
            }""",
            FACILITY_SELECT,
        )

    async def page_text(self) -> str:
        try:
            return await self.page.inner_text("body", timeout=5000)
        except PlaywrightError:
            return ""

    async def signed_out(self) -> bool:
        if "sign_in" in self.page.url:
            return True
        return await self.page.query_selector("#user_email") is not None

    async def ping(self) -> None:
        try:
            await self.page.evaluate("() => true")
        except PlaywrightError as e:
            raise ConnectivityLost(f"page not responding: {e}") from e

    async def clear_cookies(self) -> None:
        if self._context:
            await self._context.clear_cookies()

    async def settle(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    # region booking
    async def select_date(self, value: dt.date) -> None:
        await self.page.evaluate(
            """([selector, date]) => {
                const input = document.querySelector(selector);
                if (!input) return;
                input.value = date;
                if (window.jQuery) { window.jQuery(input).trigger('change'); }
                input.dispatchEvent(new Event('change', { bubbles: true }));
            }""",
            [DATE_INPUT, value.isoformat()],
        )

    async def dropdown_time(self) -> Optional[str]:
        el = await self.page.query_selector(f'{TIME_SELECT} option[value]:not([value=""])')
        if el is None:
            return None
        return await el.get_attribute("value")

    async def select_time_and_submit(self, value: str) -> None:
        await self._with_navigation(
            """([selector, submit, time]) => {
                const select = document.querySelector(selector);
                if (select) {
                    select.value = time;
                    if (window.jQuery) { window.jQuery(select).trigger('change'); }
                }
                const button = document.querySelector(submit);
                if (button) button.click();
            }""",
            [TIME_SELECT, SUBMIT_BUTTON, value],
        )

    async def confirm(self) -> None:
        await self._with_navigation(
            """(selector) => {
                const button = document.querySelector(selector);
                if (button) button.click();
            }""",
            CONFIRM_BUTTON,
        )

    async def form_present(self) -> bool:
        try:
            return await self.page.query_selector(SUBMIT_BUTTON) is not None
        except PlaywrightError as e:
            # страница в процессе навигации, формы уже нет
            logger.warning("[%s] Submit form not readable after booking step: %s", self.label, e)
            return False

    async def _with_navigation(self, script: str, arg: Any, timeout_ms: int = 15000) -> None:
        try:
            async with self.page.expect_navigation(wait_until="commit", timeout=timeout_ms):
                await self.page.evaluate(script, arg)
        except PlaywrightTimeoutError:
            logger.debug("[%s] No navigation after booking step", self.label)

    # endregion

    async def _force_click(self, selector: str) -> None:
        try:
            await self.page.click(selector, force=True, timeout=2000)
        except PlaywrightError:
            pass

    async def screenshot(self, path: Path) -> Path:
        """Capture screenshot of current page."""
        await self.page.screenshot(path=str(path), full_page=True)
        return path


BrowserFactory = Callable[[str, Optional[ProxyConfig], bool], PortalBrowser]


def browser_factory(base_url: str) -> BrowserFactory:
    """Factory producing isolated sessions against one portal."""

    def make(label: str, proxy: Optional[ProxyConfig], headless: bool) -> PortalBrowser:
        return PortalBrowser(base_url=base_url, headless=headless, proxy=proxy, label=label)

    return make


__all__ = ["BrowserFactory", "PortalBrowser", "browser_factory", "is_busy_text", "lock_reason"]
