"""Durable retry queue for records that failed to send.

One store entry per record. Keys start with a zero-padded nanosecond
timestamp. Entries left by the shell installer start with epoch seconds
instead; both are ordered by their timestamp, oldest first. The queue is
bounded; on overflow the oldest records are evicted.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ccmetrics.store import KeyValueStore
    from ccmetrics.submission import Submitter

logger = logging.getLogger(__name__)

# Legacy keys carry `date +%s` seconds; nanosecond keys are 20 digits.
LEGACY_SECONDS_DIGITS = 12


def new_queue_key() -> str:
    """Time-ordered unique key for a queued record."""
    return f"{time.time_ns():020d}_{uuid.uuid4().hex[:8]}"


def queue_timestamp_ns(key: str) -> int:
    """Enqueue time of a key in nanoseconds, 0 if it has no timestamp prefix."""
    prefix = key.partition("_")[0]
    if not prefix.isdigit():
        return 0
    value = int(prefix)
    if len(prefix) <= LEGACY_SECONDS_DIGITS:
        return value * 1_000_000_000
    return value


@dataclass
class DrainResult:
    """Outcome of a drain pass."""

    sent: int = 0
    remaining: int = 0
    stopped_on_failure: bool = False


class RetryQueue:
    """Bounded FIFO of serialized records awaiting resend."""

    def __init__(
        self,
        store: KeyValueStore,
        submitter: Submitter,
        max_size: int = 100,
        pause: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        key_factory: Callable[[], str] = new_queue_key,
    ):
        self.store = store
        self.submitter = submitter
        self.max_size = max_size
        self.pause = pause
        self._sleep = sleep
        self._key_factory = key_factory

    def keys(self) -> list[str]:
        """Queued keys, oldest first."""
        return sorted(self.store.keys(), key=lambda k: (queue_timestamp_ns(k), k))

    def count(self) -> int:
        return len(self.store.keys())

    def enqueue(self, payload: bytes) -> str:
        """Persist a record, evicting the oldest entries beyond max_size.

        Returns:
            The key the record was stored under.
        """
        key = self._key_factory()
        self.store.put(key, payload)
        logger.info(f"Queued failed submission as {key}")

        keys = self.keys()
        overflow = len(keys) - self.max_size
        if overflow > 0:
            for old_key in keys[:overflow]:
                self.store.delete(old_key)
            logger.warning(f"Queue full, dropped {overflow} oldest submissions")
        return key

    def drain_up_to(self, limit: int = 10) -> DrainResult:
        """Resend queued records oldest first.

        Stops at the first failure so the queue keeps its order and a down
        endpoint is not hammered.

        Args:
            limit: Maximum number of records to attempt.

        Returns:
            DrainResult with counts.
        """
        result = DrainResult()
        keys = self.keys()
        if not keys:
            return result

        logger.info(f"Processing {min(len(keys), limit)} of {len(keys)} queued submissions")

        for key in keys[:limit]:
            payload = self.store.get(key)
            if payload is None:
                continue

            if not self.submitter.submit(payload):
                result.stopped_on_failure = True
                logger.info(f"Stopping queue drain at {key}, remote store still failing")
                break

            self.store.delete(key)
            result.sent += 1
            if self.pause > 0:
                self._sleep(self.pause)

        result.remaining = self.count()
        logger.info(f"Queue drain sent {result.sent}, {result.remaining} remaining")
        return result
