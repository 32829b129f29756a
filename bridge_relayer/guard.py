"""
Idempotency guard for inbound transfer notifications.

Webhook delivery is at-least-once, so the same source transaction can show
up twice, sometimes in two batches being processed at the same time. The
guard records every source tx id that has a payout in flight or done.

Expiry is wholesale: once the window elapses, the next operation drops the
whole set. The guard only has to suppress immediate redelivery; it is not a
ledger and does not survive restarts.
"""

import threading
import time
from typing import Callable, ContextManager, Optional

import structlog

logger = structlog.get_logger()


class IdempotencyGuard:
    """Process-wide set of claimed source transaction ids."""

    def __init__(
        self,
        expiry_seconds: Optional[float] = 3600.0,
        lock: Optional[ContextManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            expiry_seconds: Window length before the set is cleared wholesale.
                            None disables expiry.
            lock: Mutual exclusion for the record set. Any context manager
                  works; defaults to a threading.Lock.
            clock: Monotonic time source, injectable for tests.
        """
        self.expiry_seconds = expiry_seconds
        self._lock = lock if lock is not None else threading.Lock()
        self._clock = clock
        self._claimed: set[str] = set()
        self._window_started = clock()

    @staticmethod
    def _key(tx_id: str) -> str:
        return tx_id.lower()

    def _expire_if_due(self) -> None:
        # Caller holds the lock.
        if self.expiry_seconds is None:
            return
        now = self._clock()
        if now - self._window_started >= self.expiry_seconds:
            if self._claimed:
                logger.info("guard_expired", cleared=len(self._claimed))
            self._claimed.clear()
            self._window_started = now

    def claim(self, tx_id: str) -> bool:
        """Record `tx_id`. Returns False if it was already claimed."""
        key = self._key(tx_id)
        with self._lock:
            self._expire_if_due()
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def release(self, tx_id: str) -> None:
        """Forget `tx_id` so a redelivered notification can be processed again."""
        with self._lock:
            self._claimed.discard(self._key(tx_id))

    def is_claimed(self, tx_id: str) -> bool:
        with self._lock:
            self._expire_if_due()
            return self._key(tx_id) in self._claimed

    def clear(self) -> None:
        """Drop every claim and start a new expiry window."""
        with self._lock:
            self._claimed.clear()
            self._window_started = self._clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)
