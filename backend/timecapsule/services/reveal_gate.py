"""
Reveal gate: decides whether a capsule's message may be shown.

The passphrase gate dominates the time gate: a locked capsule is never
revealed by time alone, and a correct passphrase unlocks it for that one
response only. Nothing here touches storage.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from timecapsule.core.security import PassphraseVerifier
from timecapsule.models.capsule import Capsule


class RevealStatus(str, Enum):
    NOT_FOUND = "not_found"
    LOCKED = "locked"
    NOT_REVEALED = "not_revealed"
    AVAILABLE = "available"
    INVALID_PASSPHRASE = "invalid_passphrase"
    UNLOCKED = "unlocked"

    @property
    def message_visible(self) -> bool:
        return self in (RevealStatus.AVAILABLE, RevealStatus.UNLOCKED)


@dataclass(frozen=True)
class RevealDecision:
    status: RevealStatus
    capsule: Optional[Capsule] = None

    @property
    def message_visible(self) -> bool:
        return self.status.message_visible


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reveal_reached(capsule: Capsule, now: datetime) -> bool:
    return as_utc(capsule.reveal_at) <= as_utc(now)


class RevealGate:
    def __init__(self, verifier: PassphraseVerifier):
        self._verifier = verifier

    def status(self, capsule: Optional[Capsule], now: datetime) -> RevealDecision:
        if capsule is None:
            return RevealDecision(RevealStatus.NOT_FOUND)
        if capsule.is_locked:
            return RevealDecision(RevealStatus.LOCKED, capsule)
        if not reveal_reached(capsule, now):
            return RevealDecision(RevealStatus.NOT_REVEALED, capsule)
        return RevealDecision(RevealStatus.AVAILABLE, capsule)

    def unlock(self, capsule: Optional[Capsule], passphrase: str, now: datetime) -> RevealDecision:
        """
        Check ``passphrase`` against a locked capsule.

        Unlocked capsules fall through to ``status``. A match yields
        ``UNLOCKED`` without changing the capsule; the next request must
        supply the passphrase again. Blocking: runs a slow hash.
        """
        if capsule is None:
            return RevealDecision(RevealStatus.NOT_FOUND)
        if not capsule.is_locked:
            return self.status(capsule, now)
        if not self._verifier.verify(passphrase, capsule.passphrase_digest):
            return RevealDecision(RevealStatus.INVALID_PASSPHRASE, capsule)
        return RevealDecision(RevealStatus.UNLOCKED, capsule)
