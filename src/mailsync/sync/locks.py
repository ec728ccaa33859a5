"""Per-account run locks.

At most one pass (or standalone repair) may hold an account's mailbox
session at a time, whether it was started by the timer or by a manual
request.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class RunLocks:
    """Registry of one non-reentrant lock per account."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def acquire(self, account_id: str, *, blocking: bool = False, timeout: Optional[float] = None) -> bool:
        lock = self._lock_for(account_id)
        if not blocking:
            return lock.acquire(blocking=False)
        return lock.acquire(timeout=-1 if timeout is None else timeout)

    def release(self, account_id: str) -> None:
        self._lock_for(account_id).release()

    def is_locked(self, account_id: str) -> bool:
        return self._lock_for(account_id).locked()

    @contextmanager
    def hold(self, account_id: str, *, timeout: Optional[float] = None) -> Iterator[None]:
        """Block until the account's lock is free and hold it for the block."""
        if not self.acquire(account_id, blocking=True, timeout=timeout):
            raise TimeoutError(f"Run lock for {account_id} not acquired within {timeout}s")
        try:
            yield
        finally:
            self.release(account_id)


__all__ = ["RunLocks"]
