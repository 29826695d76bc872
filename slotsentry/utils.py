"""
Logging setup, navigation retries and proxy session tokens.

Логи пишутся в DATA_DIR/logs/slotsentry.log с ротацией и дублируются в консоль.
"""

from __future__ import annotations

import asyncio
import logging
import random
from functools import wraps
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, Callable, TypeVar

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import LoggingConfig
from .errors import NavigationFailed


T = TypeVar("T")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
NAVIGATION_ERRORS: tuple[type[BaseException], ...] = (NavigationFailed, PlaywrightTimeoutError)

# Библиотеки, которые на INFO пишут каждый HTTP-запрос
_NOISY_LOGGERS = ("aiogram", "asyncio", "urllib3")


def setup_logging(logging_cfg: LoggingConfig) -> None:
    logging_cfg.logs_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = RotatingFileHandler(
        logging_cfg.logs_dir / "slotsentry.log",
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers[:] = [file_handler, console_handler]
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def new_session_token() -> str:
    """Random 10-digit proxy session id (sessid-XXXXXXXXXX)."""
    return str(random.randint(0, 9_999_999_999)).zfill(10)


def async_retry(
    attempts: int = 3,
    base_delay: float = 3.0,
    max_delay: float = 10.0,
    exceptions: tuple[type[BaseException], ...] = NAVIGATION_ERRORS,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Retry a browser step on navigation errors with doubling backoff.

    Meant for methods of a session object: its ``label`` prefixes the log
    lines so primary and verify sessions can be told apart. Anything outside
    ``exceptions`` (locks, busy pages, bad credentials) goes straight up.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        log = logging.getLogger(func.__module__)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            label = getattr(args[0], "label", func.__qualname__) if args else func.__qualname__
            delay = base_delay
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:  # type: ignore[misc]
                    if attempt >= attempts:
                        log.error("[%s] %s gave up after %s attempts: %s", label, func.__name__, attempts, exc)
                        raise
                    log.warning(
                        "[%s] %s failed (%s/%s): %s - retry in %.0fs",
                        label,
                        func.__name__,
                        attempt,
                        attempts,
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(max_delay, delay * 2)
                    attempt += 1

        return wrapper

    return decorator


__all__ = ["NAVIGATION_ERRORS", "async_retry", "new_session_token", "setup_logging"]
