from __future__ import annotations

import asyncio
import datetime as dt
from pathlib import Path
from typing import Any, Optional

import pytest

from slotsentry.config import LoggingConfig, ProxyConfig, Settings, load_settings
from slotsentry.notifier import NotificationKind, Notifier


DAYS_URL = "https://portal.test/en-ca/niv/schedule/1/appointment/days/94.json?appointments[expedite]=false"
TIMES_URL = "https://portal.test/en-ca/niv/schedule/1/appointment/times/94.json?date=2026-02-10&appointments[expedite]=false"


class RecordingNotifier(Notifier):
    """Notifier without a channel that remembers everything it was asked to send."""

    def __init__(self) -> None:
        super().__init__(None)
        self.events: list[tuple[NotificationKind, dict[str, Any]]] = []

    def notify(self, kind: NotificationKind, **fields: Any) -> bool:
        self.events.append((kind, fields))
        return super().notify(kind, **fields)

    def kinds(self) -> list[NotificationKind]:
        return [kind for kind, _ in self.events]


class FakeBrowser:
    """
    In-memory stand-in for PortalBrowser.

    ``dates`` is the sequence of earliest dates the portal reports: one per
    navigation or re-query, the last one repeating forever.
    ``login_errors`` holds exceptions (or None) raised by successive logins.
    """

    def __init__(
        self,
        label: str = "primary",
        *,
        dates: tuple[str, ...] = (),
        login_errors: tuple[Optional[BaseException], ...] = (),
        book_succeeds: bool = True,
        signed_out: bool = False,
        page_text: str = "",
        ping_error: Optional[BaseException] = None,
    ) -> None:
        self.label = label
        self._dates = list(dates)
        self._login_errors = list(login_errors)
        self.book_succeeds = book_succeeds
        self.signed_out_value = signed_out
        self.page_text_value = page_text
        self.ping_error = ping_error
        self.callbacks: list[Any] = []
        self.started = False
        self.closed = False
        self.logins = 0
        self.triggers = 0
        self.submits = 0
        self.cookie_clears = 0
        self.form = True
        self.selected: list[dt.date] = []

    def emit(self, url: str, body: Any) -> None:
        for callback in self.callbacks:
            callback(url, body)

    def _emit_date(self) -> None:
        if not self._dates:
            return
        value = self._dates.pop(0) if len(self._dates) > 1 else self._dates[0]
        self.emit(DAYS_URL, [{"date": value, "business_day": True}])

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    def on_response(self, callback: Any) -> None:
        self.callbacks.append(callback)

    async def login(self, *, email: str, password: str) -> None:
        self.logins += 1
        if self._login_errors:
            error = self._login_errors.pop(0)
            if error is not None:
                raise error

    async def navigate_to_appointment(self, city: str) -> str:
        self._emit_date()
        return city

    async def trigger_requery(self) -> None:
        self.triggers += 1
        self._emit_date()

    async def page_text(self) -> str:
        return self.page_text_value

    async def signed_out(self) -> bool:
        return self.signed_out_value

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def clear_cookies(self) -> None:
        self.cookie_clears += 1

    async def settle(self, seconds: float) -> None:
        pass

    async def select_date(self, value: dt.date) -> None:
        self.selected.append(value)
        self.emit(TIMES_URL, {"available_times": ["09:00", "09:15"], "business_times": []})

    async def dropdown_time(self) -> Optional[str]:
        return None

    async def select_time_and_submit(self, value: str) -> None:
        self.submits += 1

    async def confirm(self) -> None:
        if self.book_succeeds:
            self.form = False

    async def form_present(self) -> bool:
        return self.form

    async def screenshot(self, path: Path) -> Path:
        return path


class FakeFactory:
    def __init__(self, *browsers: FakeBrowser) -> None:
        self.browsers = list(browsers)
        self.calls: list[tuple[str, Optional[ProxyConfig], bool]] = []

    def __call__(self, label: str, proxy: Optional[ProxyConfig], headless: bool) -> FakeBrowser:
        self.calls.append((label, proxy, headless))
        return self.browsers.pop(0)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


BASE_ENV = {
    "VISA_EMAIL": "main@example.com",
    "VISA_PASSWORD": "secret",
    "VERIFY_EMAIL": "verify@example.com",
    "VERIFY_PASSWORD": "secret2",
    "START_DATE": "2026-01-01",
    "END_DATE": "2026-03-31",
    "PREFERRED_CITY": "Toronto",
}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    base = load_settings(dict(BASE_ENV))
    return base.model_copy(
        update={"data_dir": tmp_path, "logging": LoggingConfig(logs_dir=tmp_path / "logs")}
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
