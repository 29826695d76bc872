"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации из .env и базовая валидация.
"""

from __future__ import annotations

from datetime import date
from functools import lru_cache
import os
from pathlib import Path
import re
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, computed_field, model_validator

from .models import DateWindow


BASE_DIR = Path(__file__).resolve().parent.parent
# В Docker можно задать DATA_DIR=/app/data и смонтировать volume: баны и кулдауны сохранятся
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR)))
ENV_PATH = BASE_DIR / ".env"

# Явно загружаем переменные окружения из .env, если файл существует
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


DEFAULT_BASE_URL = "https://ais.usvisa-info.com/en-ca/niv"
_SESSION_TOKEN_RE = re.compile(r"sessid-\d+")


class Credentials(BaseModel):
    email: str
    password: str

    @property
    def configured(self) -> bool:
        return bool(self.email) and bool(self.password)


class VerifyConfig(BaseModel):
    credentials: Credentials
    interval_minutes: int = Field(default=5, ge=1)

    @computed_field  # type: ignore[misc]
    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0


class PortalConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    city: str = "Toronto"
    window: DateWindow

    @property
    def sign_in_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/users/sign_in"


class ProxyConfig(BaseModel):
    enabled: bool = False
    server: str = ""
    username: str = ""
    password: str = ""

    @model_validator(mode="after")
    def _check_server(self) -> "ProxyConfig":
        if self.enabled and not self.server:
            raise ValueError("PROXY_SERVER is required when PROXY_ENABLED is set")
        return self

    def for_session(self, token: str) -> "ProxyConfig":
        """Return a copy routed through a different proxy session (sessid-<token>)."""
        if not _SESSION_TOKEN_RE.search(self.username):
            return self.model_copy()
        username = _SESSION_TOKEN_RE.sub(f"sessid-{token}", self.username)
        return self.model_copy(update={"username": username})

    def playwright_proxy(self) -> Optional[dict[str, str]]:
        if not self.enabled:
            return None
        return {
            "server": f"http://{self.server}",
            "username": self.username,
            "password": self.password,
        }


class PollConfig(BaseModel):
    target_cpm: int = Field(default=240, ge=1, le=240)
    overhead_ms: int = Field(default=100, ge=0)
    headless: bool = True
    # Сколько поллинг-циклов между проверками живости страницы / текста страницы
    liveness_every: int = Field(default=100, ge=1)
    page_check_every: int = Field(default=50, ge=1)
    rotation_minutes: int = Field(default=15, ge=1)
    busy_pause_seconds: float = Field(default=60.0, ge=0)


class TelegramConfig(BaseModel):
    token: str = ""
    chat_id: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.token) and bool(self.chat_id)


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: DATA_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    primary: Credentials
    verify: VerifyConfig
    portal: PortalConfig
    proxy: ProxyConfig = ProxyConfig()
    poll: PollConfig = PollConfig()
    telegram: TelegramConfig = TelegramConfig()
    logging: LoggingConfig = LoggingConfig()
    data_dir: Path = DATA_DIR


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _date(value: str | None, default: date | None = None) -> date:
    if not value:
        if default is None:
            raise ValueError("date value is required")
        return default
    return date.fromisoformat(value.strip())


def load_settings(env: Optional[dict[str, str]] = None) -> Settings:
    """
    Build settings from an environment mapping (defaults to ``os.environ``).

    Raises ValidationError / ValueError if values are missing or invalid.
    """
    env = dict(os.environ) if env is None else env

    primary = Credentials(
        email=env.get("VISA_EMAIL", ""),
        password=env.get("VISA_PASSWORD", ""),
    )
    if not primary.configured:
        raise ValueError("VISA_EMAIL and VISA_PASSWORD are required")

    window = DateWindow(
        start=_date(env.get("START_DATE"), date.today()),
        end=_date(env.get("END_DATE")),
    )

    return Settings(
        primary=primary,
        verify=VerifyConfig(
            credentials=Credentials(
                email=env.get("VERIFY_EMAIL", ""),
                password=env.get("VERIFY_PASSWORD", ""),
            ),
            interval_minutes=int(env.get("VERIFY_INTERVAL_MINS") or "5"),
        ),
        portal=PortalConfig(
            base_url=env.get("VISA_BASE_URL") or DEFAULT_BASE_URL,
            city=env.get("PREFERRED_CITY") or "Toronto",
            window=window,
        ),
        proxy=ProxyConfig(
            enabled=_flag(env.get("PROXY_ENABLED"), False),
            server=env.get("PROXY_SERVER", ""),
            username=env.get("PROXY_USERNAME", ""),
            password=env.get("PROXY_PASSWORD", ""),
        ),
        poll=PollConfig(
            target_cpm=int(env.get("TARGET_CPM") or "240"),
            headless=_flag(env.get("HEADLESS"), True),
        ),
        telegram=TelegramConfig(
            token=env.get("TELEGRAM_BOT_TOKEN", ""),
            chat_id=env.get("TELEGRAM_CHAT_ID", ""),
        ),
        logging=LoggingConfig(log_level=env.get("LOG_LEVEL") or "INFO"),
    )


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError (or ValueError) if .env is incomplete or invalid;
    app.main reports it and exits with code 1.
    """
    return load_settings()


__all__ = [
    "Credentials",
    "PollConfig",
    "PortalConfig",
    "ProxyConfig",
    "Settings",
    "get_settings",
    "load_settings",
    "BASE_DIR",
    "DATA_DIR",
]
