"""
Credential bans and cooldowns.

Учёт забаненных аккаунтов и кулдаунов:
- хранилище (в памяти или JSON-файлы в DATA_DIR)
- AccountGovernor: счётчик неудачных логинов и бан после порога
"""

from __future__ import annotations

import abc
import datetime as dt
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .errors import CredentialBanned
from .models import CooldownRecord, CredentialBanRecord, utcnow

logger = logging.getLogger(__name__)


LOGIN_FAILURE_THRESHOLD = 3
COOLDOWN_MINUTES = 5


class CredentialStore(abc.ABC):
    """Process-wide ban and cooldown state. Append-only during a run."""

    @abc.abstractmethod
    def bans(self) -> dict[str, CredentialBanRecord]: ...

    @abc.abstractmethod
    def ban(self, email: str, reason: str) -> CredentialBanRecord: ...

    @abc.abstractmethod
    def cooldown(self, email: str) -> Optional[CooldownRecord]: ...

    @abc.abstractmethod
    def set_cooldown(self, email: str, reason: str, until: dt.datetime) -> CooldownRecord: ...

    def is_banned(self, email: str) -> bool:
        return email.lower() in self.bans()

    def cooldown_until(self, email: str, now: Optional[dt.datetime] = None) -> Optional[dt.datetime]:
        record = self.cooldown(email)
        if record is None or record.until <= (now or utcnow()):
            return None
        return record.until


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._bans: dict[str, CredentialBanRecord] = {}
        self._cooldowns: dict[str, CooldownRecord] = {}

    def bans(self) -> dict[str, CredentialBanRecord]:
        return dict(self._bans)

    def ban(self, email: str, reason: str) -> CredentialBanRecord:
        key = email.lower()
        if key not in self._bans:
            self._bans[key] = CredentialBanRecord(email=email, reason=reason)
        return self._bans[key]

    def cooldown(self, email: str) -> Optional[CooldownRecord]:
        return self._cooldowns.get(email.lower())

    def set_cooldown(self, email: str, reason: str, until: dt.datetime) -> CooldownRecord:
        record = CooldownRecord(email=email, reason=reason, until=until)
        self._cooldowns[email.lower()] = record
        return record


def _atomic_write(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", delete=False, encoding="utf-8", dir=path.parent, suffix=".tmp"
    ) as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name
    os.replace(tmp_name, path)


class JsonCredentialStore(MemoryCredentialStore):
    """
    Memory store mirrored to disk so bans survive restarts.

    Layout:
        <data_dir>/banned_accounts.json
        <data_dir>/cooldowns/<email>.json   (read by an external launcher)
    """

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self.bans_path = data_dir / "banned_accounts.json"
        self.cooldown_dir = data_dir / "cooldowns"
        self._load()

    def _cooldown_path(self, email: str) -> Path:
        return self.cooldown_dir / f"{re.sub(r'[^a-zA-Z0-9]', '_', email)}.json"

    def _load(self) -> None:
        if not self.bans_path.exists():
            return
        try:
            data = json.loads(self.bans_path.read_text(encoding="utf-8"))
            for item in data.get("banned", []):
                record = CredentialBanRecord.model_validate(item)
                self._bans[record.email.lower()] = record
            logger.info("Loaded %s banned credentials", len(self._bans))
        except (OSError, ValueError, ValidationError) as e:
            # Битый файл не должен ронять процесс; начинаем с пустого списка
            logger.warning("Failed to load ban list %s: %s", self.bans_path, e)

    def ban(self, email: str, reason: str) -> CredentialBanRecord:
        record = super().ban(email, reason)
        try:
            _atomic_write(
                self.bans_path,
                {"banned": [r.model_dump(mode="json") for r in self._bans.values()]},
            )
        except OSError as e:
            logger.warning("Failed to persist ban list: %s", e)
        return record

    def cooldown(self, email: str) -> Optional[CooldownRecord]:
        record = super().cooldown(email)
        if record is not None:
            return record
        path = self._cooldown_path(email)
        if not path.exists():
            return None
        try:
            return CooldownRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read cooldown %s: %s", path, e)
            return None

    def set_cooldown(self, email: str, reason: str, until: dt.datetime) -> CooldownRecord:
        record = super().set_cooldown(email, reason, until)
        try:
            _atomic_write(self._cooldown_path(email), record.model_dump(mode="json"))
        except OSError as e:
            logger.warning("Failed to persist cooldown for %s: %s", email, e)
        return record


class AccountGovernor:
    """Retires credentials after repeated login failures or a lockout."""

    def __init__(self, store: CredentialStore, threshold: int = LOGIN_FAILURE_THRESHOLD) -> None:
        self.store = store
        self.threshold = threshold
        self._failures: dict[str, int] = {}

    def failures(self, email: str) -> int:
        return self._failures.get(email.lower(), 0)

    def ensure_usable(self, email: str) -> None:
        record = self.store.bans().get(email.lower())
        if record is not None:
            raise CredentialBanned(email, record.reason)

    def record_login_success(self, email: str) -> None:
        self._failures.pop(email.lower(), None)

    def record_login_failure(self, email: str, reason: str) -> bool:
        """Count one failed login. Returns True when the credential got banned."""
        key = email.lower()
        self._failures[key] = self._failures.get(key, 0) + 1
        count = self._failures[key]
        logger.error("Login attempt #%s/%s failed for %s: %s", count, self.threshold, email, reason)
        if count < self.threshold:
            return False
        self.store.ban(email, f"Max login attempts reached ({count} failures)")
        logger.critical("Credential %s banned after %s consecutive login failures", email, count)
        return True

    def lock(self, email: str, reason: str) -> None:
        self.store.ban(email, reason)
        logger.critical("Credential %s banned: %s", email, reason)

    def cool_down(self, email: str, reason: str, minutes: int = COOLDOWN_MINUTES) -> CooldownRecord:
        until = utcnow() + dt.timedelta(minutes=minutes)
        logger.warning("Cooldown for %s until %s (%s)", email, until.isoformat(), reason)
        return self.store.set_cooldown(email, reason, until)


__all__ = [
    "AccountGovernor",
    "CredentialStore",
    "JsonCredentialStore",
    "LOGIN_FAILURE_THRESHOLD",
    "MemoryCredentialStore",
]
