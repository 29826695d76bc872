"""
Process entrypoint.

Точка входа: собираем зависимости, запускаем супервизор, код выхода
сообщает внешнему лаунчеру, что делать дальше (0 / 1 / 10 / 20).
"""

from __future__ import annotations

import asyncio
import logging
import sys

from pydantic import ValidationError

from .browser import browser_factory
from .config import Settings, get_settings
from .governor import AccountGovernor, JsonCredentialStore
from .models import ExitReason
from .notifier import NotificationKind, Notifier, TelegramSender
from .observer import SlotObserver
from .supervisor import SessionSupervisor
from .utils import setup_logging


logger = logging.getLogger(__name__)


def build_supervisor(settings: Settings, notifier: Notifier) -> SessionSupervisor:
    store = JsonCredentialStore(settings.data_dir)
    return SessionSupervisor(
        settings,
        observer=SlotObserver(),
        governor=AccountGovernor(store),
        notifier=notifier,
        browser_factory=browser_factory(settings.portal.base_url),
    )


async def run(settings: Settings) -> ExitReason:
    sender = TelegramSender(settings.telegram) if settings.telegram.enabled else None
    if sender is None:
        logger.info("Telegram is not configured, notifications go to the log only")
    notifier = Notifier(sender)
    notifier.start()

    supervisor = build_supervisor(settings, notifier)
    notifier.notify(
        NotificationKind.BOT_STARTED,
        email=settings.primary.email,
        city=settings.portal.city,
        range=str(settings.portal.window),
        target=f"{settings.poll.target_cpm} CPM",
        verify=settings.verify.credentials.email or "disabled",
        proxy="enabled" if settings.proxy.enabled else "disabled",
    )

    reason = ExitReason.FATAL
    try:
        reason = await supervisor.run()
    except asyncio.CancelledError:
        reason = ExitReason.SHUTDOWN
        raise
    except Exception as e:  # noqa: BLE001
        logger.exception("Fatal error: %s", e)
        notifier.notify(NotificationKind.CRASHED, error=str(e), action="Exiting")
    finally:
        st = supervisor.state
        notifier.notify(
            NotificationKind.BOT_STOPPED,
            reason=reason.value,
            checks=st.checks_count,
            restarts=st.restarts,
            closest=st.closest_slot.isoformat() if st.closest_slot else "none",
        )
        await notifier.stop()
        if sender is not None:
            await sender.close()
    return reason


def main() -> int:
    """Entry point for running the monitor. Returns the process exit code."""
    try:
        settings = get_settings()
    except (ValidationError, ValueError) as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", e)
        return ExitReason.FATAL.exit_code

    setup_logging(settings.logging)
    logger.info(
        "Starting monitor for %s (%s, %s)",
        settings.primary.email,
        settings.portal.city,
        settings.portal.window,
    )

    try:
        reason = asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return ExitReason.SHUTDOWN.exit_code

    logger.info("Exiting: %s (code %s)", reason.value, reason.exit_code)
    return reason.exit_code


if __name__ == "__main__":
    sys.exit(main())
