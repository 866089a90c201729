"""
Per-position advisory leases.

At most one exit decision may be in flight per position. A lease is a
short-lived token keyed by position id; it expires after its TTL so a crashed
holder cannot block a position forever. A holder whose lease expired and was
taken over detects the loss through ``is_held`` and must abandon its work.
"""

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from risk_engine.core.logger import get_module_logger


class LockError(Exception):
    """Raised for invalid lease requests."""


@dataclass(frozen=True)
class LockLease:
    """Proof of ownership for one key until ``expires_at`` (monotonic seconds)."""

    key: str
    token: str
    expires_at: float


class PositionLockRegistry:
    """
    Registry of advisory leases keyed by position id.

    Thread-safe; the async ``acquire`` polls with a bounded wait so no caller
    blocks indefinitely.
    """

    def __init__(
        self,
        default_ttl: float = 30.0,
        poll_interval: float = 0.02,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise LockError("default_ttl must be positive")
        self._default_ttl = default_ttl
        self._poll_interval = poll_interval
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._logger = get_module_logger("locks")

    def try_acquire(self, key: str, ttl: Optional[float] = None) -> Optional[LockLease]:
        """
        Take the lease for ``key`` if it is free or expired.

        Args:
            key: Position id
            ttl: Lease lifetime in seconds

        Returns:
            Optional[LockLease]: The lease, or None when another holder owns it
        """
        if not key:
            raise LockError("Lock key cannot be empty")
        lifetime = self._default_ttl if ttl is None else ttl
        if lifetime <= 0:
            raise LockError("ttl must be positive")

        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return None
            if current is not None:
                self._logger.warning(f"Lease on {key} expired; taking over")

            token = uuid.uuid4().hex
            expires_at = now + lifetime
            self._leases[key] = (token, expires_at)
            return LockLease(key=key, token=token, expires_at=expires_at)

    async def acquire(
        self, key: str, ttl: Optional[float] = None, timeout: float = 0.0
    ) -> Optional[LockLease]:
        """
        Wait up to ``timeout`` seconds for the lease on ``key``.

        Returns:
            Optional[LockLease]: The lease, or None if still contended
        """
        deadline = self._clock() + max(0.0, timeout)
        while True:
            lease = self.try_acquire(key, ttl)
            if lease is not None:
                return lease
            if self._clock() >= deadline:
                self._logger.debug(f"Lease on {key} still contended after {timeout}s")
                return None
            await asyncio.sleep(self._poll_interval)

    def is_held(self, lease: LockLease) -> bool:
        """True while ``lease`` is the current, unexpired owner of its key."""
        with self._lock:
            current = self._leases.get(lease.key)
            return (
                current is not None
                and current[0] == lease.token
                and current[1] > self._clock()
            )

    def release(self, lease: LockLease) -> bool:
        """
        Release ``lease``. A stale lease never releases a newer holder's lock.

        Returns:
            bool: True if this lease was the owner and has been removed
        """
        with self._lock:
            current = self._leases.get(lease.key)
            if current is None or current[0] != lease.token:
                return False
            del self._leases[lease.key]
            return True

    def held_keys(self) -> Tuple[str, ...]:
        now = self._clock()
        with self._lock:
            return tuple(k for k, (_, exp) in self._leases.items() if exp > now)
