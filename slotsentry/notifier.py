"""
Notification sink: components raise events, a worker delivers them to Telegram.

Уведомления best-effort: notify() никогда не блокирует и не бросает
исключений, ошибки доставки только логируются.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from .config import TelegramConfig

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    BOT_STARTED = "bot_started"
    LOGGED_IN = "logged_in"
    LOGIN_FAILED = "login_failed"
    SLOT_DETECTED = "slot_detected"
    SLOT_OUTSIDE_RANGE = "slot_outside_range"
    BOOKING_STARTED = "booking_started"
    BOOKING_SUCCEEDED = "booking_succeeded"
    BOOKING_FAILED = "booking_failed"
    STALE_DATA = "stale_data"
    DATA_FRESH = "data_fresh"
    VERIFY_FAILED = "verify_failed"
    SESSION_EXPIRED = "session_expired"
    CONNECTION_LOST = "connection_lost"
    COOKIE_RESET = "cookie_reset"
    ACCOUNT_BANNED = "account_banned"
    SYSTEM_BUSY = "system_busy"
    STATUS = "status"
    CRASHED = "crashed"
    BOT_STOPPED = "bot_stopped"


_TITLES = {
    NotificationKind.BOT_STARTED: "🚀 <b>Bot Started</b>",
    NotificationKind.LOGGED_IN: "✅ <b>Logged In</b>",
    NotificationKind.LOGIN_FAILED: "❌ <b>Login Failed</b>",
    NotificationKind.SLOT_DETECTED: "🎯 <b>SLOT DETECTED!</b>",
    NotificationKind.SLOT_OUTSIDE_RANGE: "📅 <b>Slot Available (Outside Range)</b>",
    NotificationKind.BOOKING_STARTED: "🚀 <b>BOOKING STARTED!</b>",
    NotificationKind.BOOKING_SUCCEEDED: "🎉 <b>BOOKED!</b>",
    NotificationKind.BOOKING_FAILED: "❌ <b>BOOKING FAILED</b>",
    NotificationKind.STALE_DATA: "🚨 <b>STALE DATA DETECTED!</b>",
    NotificationKind.DATA_FRESH: "✅ <b>Data Fresh</b>",
    NotificationKind.VERIFY_FAILED: "⚠️ <b>Verify Failed</b>",
    NotificationKind.SESSION_EXPIRED: "⚠️ <b>Session Expired</b>",
    NotificationKind.CONNECTION_LOST: "⚠️ <b>Connection Lost</b>",
    NotificationKind.COOKIE_RESET: "🍪 <b>Cookie Reset</b>",
    NotificationKind.ACCOUNT_BANNED: "🚫 <b>Account Banned</b>",
    NotificationKind.SYSTEM_BUSY: "⏳ <b>System Busy</b>",
    NotificationKind.STATUS: "📊 <b>Status</b>",
    NotificationKind.CRASHED: "🛑 <b>Error</b>",
    NotificationKind.BOT_STOPPED: "🛑 <b>Bot Stopped</b>",
}


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    fields: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        lines = [_TITLES[self.kind]]
        for key, value in self.fields.items():
            if value is None:
                continue
            label = key.replace("_", " ").capitalize()
            # Telegram обрезает длинные сообщения, ошибки укорачиваем
            text = html.escape(str(value))[:300]
            lines.append(f"<b>{label}:</b> {text}")
        return "\n".join(lines)


SendFunc = Callable[[str], Awaitable[None]]


class TelegramSender:
    """Thin wrapper around aiogram Bot.send_message for a single chat."""

    def __init__(self, cfg: TelegramConfig) -> None:
        self._chat_id = cfg.chat_id
        self._bot = Bot(
            cfg.token,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )

    async def __call__(self, text: str) -> None:
        await self._bot.send_message(chat_id=self._chat_id, text=text)

    async def close(self) -> None:
        await self._bot.session.close()


class Notifier:
    """Event sink with an asynchronous delivery worker."""

    def __init__(
        self,
        send: Optional[SendFunc] = None,
        *,
        status_interval: float = 60.0,
        max_pending: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send = send
        self._status_interval = status_interval
        self._clock = clock
        self._last_status: Optional[float] = None
        self._queue: asyncio.Queue[Optional[Notification]] = asyncio.Queue(maxsize=max_pending)
        self._worker: Optional[asyncio.Task[None]] = None
        self.dropped = 0

    def notify(self, kind: NotificationKind, **fields: Any) -> bool:
        """Queue a notification. Returns False if it was rate-limited or dropped."""
        if kind is NotificationKind.STATUS:
            now = self._clock()
            if self._last_status is not None and now - self._last_status < self._status_interval:
                return False
            self._last_status = now

        notification = Notification(kind, dict(fields))
        if self._send is None:
            logger.debug("Notification (no channel): %s", notification.render())
            return True
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full, dropping %s", kind.value)
            return False
        return True

    def start(self) -> None:
        if self._send is None or (self._worker and not self._worker.done()):
            return
        self._worker = asyncio.create_task(self._run(self._send), name="notifier-worker")

    async def stop(self, timeout: float = 10.0) -> None:
        """Deliver what is queued (bounded by timeout) and stop the worker."""
        if not self._worker:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._worker.cancel()
        try:
            await asyncio.wait_for(self._worker, timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            logger.warning("Notifier worker did not drain within timeout")
        self._worker = None

    async def _run(self, send: SendFunc) -> None:
        while True:
            notification = await self._queue.get()
            if notification is None:
                return
            try:
                await send(notification.render())
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to send %s notification: %s", notification.kind.value, e)


__all__ = ["Notification", "NotificationKind", "Notifier", "SendFunc", "TelegramSender"]
