"""
Per-account mutual exclusion for reconciliation passes.

Passes for different accounts run in parallel; passes for the same account
are strictly serialized, because the resolver's read-then-rename step is not
safe under concurrent execution on one account.
"""

import threading
from contextlib import contextmanager
from typing import Iterator

from loguru import logger


class AccountLockRegistry:
    """Lazily created lock per account id.

    Usage:
        locks = AccountLockRegistry()
        with locks.hold("2958"):
            ...  # exclusive for account 2958
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._timeout = timeout_seconds

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def is_held(self, account_id: str) -> bool:
        return self._lock_for(account_id).locked()

    @contextmanager
    def hold(self, account_id: str) -> Iterator[None]:
        """Exclusive section for one account; released on every exit path.

        Raises:
            TimeoutError: The lock was not acquired within timeout_seconds.
        """
        lock = self._lock_for(account_id)
        acquired = lock.acquire(timeout=-1 if self._timeout is None else self._timeout)
        if not acquired:
            raise TimeoutError(f"Account {account_id} is busy with another pass")
        logger.trace("Account lock acquired: {}", account_id)
        try:
            yield
        finally:
            lock.release()
            logger.trace("Account lock released: {}", account_id)
