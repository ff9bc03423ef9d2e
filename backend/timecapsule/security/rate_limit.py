"""
Throttle for capsule unlock attempts.
Every passphrase check is counted per key (owner + capsule) before it runs;
after ``max_attempts`` failures each further try waits out an exponential
backoff.
"""
import time
from collections import defaultdict
from threading import Lock
from typing import Callable

from timecapsule.core.config import settings


class UnlockThrottle:
    """
    In-memory throttle with exponential backoff.

    ``acquire`` checks and counts in one step under the lock, so concurrent
    guesses cannot all slip past the check while the slow hash runs.
    The outcome then either clears the key (``succeed``), keeps the count
    (a wrong passphrase) or gives the reservation back (``release``).
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._attempts = defaultdict(lambda: {"count": 0, "last_time": 0.0})
        self._lock = Lock()
        self._clock = clock

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def _required_delay(self, count: int) -> float:
        if count < self.max_attempts:
            return 0.0
        return min(self.base_delay * (2 ** (count - self.max_attempts)), self.max_delay)

    def _pending_delay(self, key: str, now: float) -> float:
        if key not in self._attempts:
            return 0.0
        entry = self._attempts[key]
        elapsed = now - entry["last_time"]

        # Forget stale keys entirely
        if elapsed > self.max_delay * 2:
            del self._attempts[key]
            return 0.0

        return max(0.0, self._required_delay(entry["count"]) - elapsed)

    def acquire(self, key: str) -> float:
        """
        Reserve one attempt for ``key``.
        Returns 0 when the attempt may go ahead (and counts it), otherwise
        the seconds left to wait; a refused attempt is not counted.
        """
        with self._lock:
            now = self._clock()
            delay = self._pending_delay(key, now)
            if delay > 0:
                return delay
            entry = self._attempts[key]
            entry["count"] += 1
            entry["last_time"] = now
            return 0.0

    def succeed(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def release(self, key: str) -> None:
        """Give back a reservation whose request never checked a passphrase."""
        with self._lock:
            entry = self._attempts.get(key)
            if entry is None:
                return
            entry["count"] -= 1
            if entry["count"] <= 0:
                del self._attempts[key]


_throttle = UnlockThrottle(
    max_attempts=settings.unlock_max_attempts,
    base_delay=settings.unlock_base_delay,
    max_delay=settings.unlock_max_delay,
)


def get_unlock_throttle() -> UnlockThrottle:
    return _throttle


def unlock_key(owner_id: str, capsule_id: str) -> str:
    return f"unlock:{owner_id}:{capsule_id}"
