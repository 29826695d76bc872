"""
Error taxonomy for the session engine.

Все условия, требующие перезапуска сессии, поднимаются как исключения и
обрабатываются в одном месте (SessionSupervisor.run_once).
"""

from __future__ import annotations


class SentryError(Exception):
    """Base class for engine errors."""


class AuthenticationFailed(SentryError):
    """Login did not leave the sign-in page. Counted towards the ban threshold."""


class AccountLocked(SentryError):
    """Portal reports the account as locked. Non-retriable."""


class SystemBusy(SentryError):
    """'System is busy' / 'too many requests'. A backoff signal, not a failure."""


class NavigationFailed(SentryError):
    pass


class ConnectivityLost(SentryError):
    pass


class SessionExpired(SentryError):
    """Portal bounced the monitored page back to the sign-in form."""


class StaleData(SentryError):
    """Verification session disagrees with the primary session."""


class BookingAttemptFailed(SentryError):
    pass


class VerificationFailed(SentryError):
    """Secondary session could not produce a comparison. Swallowed as fresh."""


class CredentialBanned(SentryError):
    def __init__(self, email: str, reason: str = "") -> None:
        super().__init__(f"{email} is banned" + (f": {reason}" if reason else ""))
        self.email = email
        self.reason = reason


__all__ = [
    "AccountLocked",
    "AuthenticationFailed",
    "BookingAttemptFailed",
    "ConnectivityLost",
    "CredentialBanned",
    "NavigationFailed",
    "SentryError",
    "SessionExpired",
    "StaleData",
    "SystemBusy",
    "VerificationFailed",
]
