"""
Account Locking Module

Per-account mutual exclusion for read-validate-write sequences, plus the
bounded retry policy used for transient conflicts.

Locks for several accounts are always taken in ascending identifier order,
whatever order the caller names them in, so two transfers moving money in
opposite directions between the same pair of accounts cannot deadlock.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from .errors import ConflictError, LockTimeoutError
from .logging_config import get_logger


logger = get_logger("retail_ledger.locking")

T = TypeVar("T")


class AccountLockManager:
    """
    Thread-safe lock manager with one lock per account

    Accounts that are not named together never contend with each other.
    Every acquisition is bounded by a timeout.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_ids: Iterable[int], timeout: Optional[float] = None):
        """
        Hold the locks of several accounts for the duration of the block

        Args:
            account_ids: Accounts to lock; duplicates are ignored
            timeout: Total time budget in seconds (defaults to the manager's)

        Raises:
            LockTimeoutError: If any lock is not acquired in time; locks
                already taken are released before raising
        """
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        acquired: List[threading.Lock] = []

        try:
            for account_id in sorted(set(account_ids)):
                lock = self._lock_for(account_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    logger.warning(f"Lock timeout on account {account_id} after {budget}s")
                    raise LockTimeoutError(account_id, budget)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, account_id: int) -> bool:
        """Check if an account is currently locked"""
        with self._registry_lock:
            lock = self._locks.get(account_id)
        return lock is not None and lock.locked()


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff for transient conflicts

    Only ConflictError (including lock timeouts) is retried; every other
    failure propagates on the first attempt.
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.05
    max_backoff_seconds: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Sleep before the given retry (attempt 1 is the first retry)"""
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))

    def run(self, operation: Callable[[], T], description: str = "operation",
            sleep: Callable[[float], None] = time.sleep) -> T:
        """Run an operation, retrying transient conflicts up to the bound"""
        attempt = 0
        while True:
            try:
                return operation()
            except ConflictError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(f"{description} gave up after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.info(f"{description} conflicted ({e}); retry {attempt} in {delay:.3f}s")
                sleep(delay)
