"""
Pydantic models for the slot monitoring domain.

Pydantic-модели для слотов, вердиктов проверки и состояния сессий.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class SlotCandidate(BaseModel):
    """Earliest appointment date reported by one availability response."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    time: Optional[str] = None
    facility_id: Optional[str] = None
    observed_at: dt.datetime = Field(default_factory=utcnow)


class DateWindow(BaseModel):
    """Operator-supplied acceptance range, inclusive on both ends."""

    model_config = ConfigDict(frozen=True)

    start: dt.date
    end: dt.date

    @model_validator(mode="after")
    def _ordered(self) -> "DateWindow":
        if self.start > self.end:
            raise ValueError(f"START_DATE {self.start} is after END_DATE {self.end}")
        return self

    def contains(self, value: dt.date) -> bool:
        return self.start <= value <= self.end

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


class VerificationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_date: Optional[dt.date] = None
    secondary_date: Optional[dt.date] = None
    fresh: bool
    compared_at: dt.datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    NAVIGATING = "navigating"
    MONITORING = "monitoring"
    BOOKING = "booking"
    TERMINATED = "terminated"


class ExitReason(str, Enum):
    """Why a primary session ended."""

    BOOKED = "booked"
    RESTART = "restart"
    BANNED = "banned"
    COOLDOWN = "cooldown"
    FATAL = "fatal"
    SHUTDOWN = "shutdown"

    @property
    def terminal(self) -> bool:
        return self is not ExitReason.RESTART

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    ExitReason.BOOKED: 0,
    ExitReason.SHUTDOWN: 0,
    ExitReason.RESTART: 0,
    ExitReason.FATAL: 1,
    ExitReason.BANNED: 10,
    ExitReason.COOLDOWN: 20,
}


class CredentialBanRecord(BaseModel):
    email: str
    reason: str
    banned_at: dt.datetime = Field(default_factory=utcnow)


class CooldownRecord(BaseModel):
    email: str
    reason: str
    until: dt.datetime


class MonitorState(BaseModel):
    """State of the supervisor loop, used for status lines and digests."""

    state: SessionState = SessionState.UNAUTHENTICATED
    started_at: dt.datetime = Field(default_factory=utcnow)
    checks_count: int = 0
    restarts: int = 0
    last_error: Optional[str] = None
    current_slot: Optional[dt.date] = None
    closest_slot: Optional[dt.date] = None
    last_latency_ms: Optional[int] = None
    cpm: float = 0.0


__all__ = [
    "CooldownRecord",
    "CredentialBanRecord",
    "DateWindow",
    "ExitReason",
    "MonitorState",
    "SessionState",
    "SlotCandidate",
    "VerificationVerdict",
    "utcnow",
]
