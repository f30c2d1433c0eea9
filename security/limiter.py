"""
security/limiter.py -- In-process counters for API rate limiting and login lockout.

  ApiRateLimiter      -- fixed window per (ip, path) on the limits library,
                         the same backend slowapi uses for the login routes.
                         A full window is checked with test() before hit(),
                         so a burst past the limit is not counted twice.
  LockoutTracker      -- failed logins per ip. Reaching the threshold sets
                         lockout_until; while locked, every login is refused.
                         A dict of records guarded by a threading.Lock: sync
                         route handlers run in Starlette's worker threadpool,
                         so every read-modify-write happens inside the lock.

Neither class touches the database or the audit log -- callers log the
decisions they act on. LockoutTracker.reap() drops records whose deadline
has passed; it runs from the lifespan reaper task in api/main.py.

The lockout clock is injectable so tests can advance time without sleeping.
The limits memory storage reads time.time() itself; tests patch that module.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger("gatehouse.limiter")

Clock = Callable[[], float]


@dataclass
class LockoutRecord:
    failed_attempts: int = 0
    lockout_until: float = 0.0
    last_failure_at: float = 0.0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after: int


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    failed_attempts: int
    retry_after: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.retry_after / 60) if self.retry_after else 0


class ApiRateLimiter:
    """Fixed-window request counter keyed by (ip, route), backed by limits.

    The window length is fixed at construction; the threshold comes from the
    runtime security policy on every call, so each call builds its own
    RateLimitItem. Windows expire inside the storage; there is nothing to reap.
    """

    def __init__(
        self, window_seconds: int = 3600, storage: MemoryStorage | None = None, clock: Clock = time.time
    ) -> None:
        self.window_seconds = window_seconds
        self._storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)
        # Only used to turn the storage's absolute reset time into Retry-After.
        self._clock = clock

    def _item(self, limit: int) -> RateLimitItemPerSecond:
        return RateLimitItemPerSecond(limit, self.window_seconds)

    def hit(self, ip: str, route: str, limit: int) -> RateLimitResult:
        """Count one request. Refuses without incrementing once the window is full."""
        item = self._item(limit)
        allowed = self._strategy.test(item, ip, route) and self._strategy.hit(item, ip, route)
        stats = self._strategy.get_window_stats(item, ip, route)
        retry_after = max(1, math.ceil(stats.reset_time - self._clock()))
        return RateLimitResult(allowed=allowed, count=limit - stats.remaining, limit=limit, retry_after=retry_after)

    def remaining(self, ip: str, route: str, limit: int) -> int:
        return self._strategy.get_window_stats(self._item(limit), ip, route).remaining


class LockoutTracker:
    """Failed-login counter and lockout deadline per client IP.

    Records for IPs that failed a few times but never reached the threshold
    are kept for idle_seconds after their last failure, then reaped.
    """

    def __init__(self, clock: Clock = time.time, idle_seconds: int = 3600) -> None:
        self._clock = clock
        self._idle_seconds = idle_seconds
        self._lock = threading.Lock()
        self._records: dict[str, LockoutRecord] = {}

    def status(self, ip: str) -> LockoutStatus:
        """Return the lockout state for ip. A lapsed lockout is cleared here."""
        with self._lock:
            record = self._records.get(ip)
            if record is None:
                return LockoutStatus(locked=False, failed_attempts=0)
            now = self._clock()
            if record.lockout_until and now < record.lockout_until:
                return LockoutStatus(
                    locked=True,
                    failed_attempts=record.failed_attempts,
                    retry_after=max(1, math.ceil(record.lockout_until - now)),
                )
            if record.lockout_until:
                del self._records[ip]
                return LockoutStatus(locked=False, failed_attempts=0)
            return LockoutStatus(locked=False, failed_attempts=record.failed_attempts)

    def record_failure(self, ip: str, threshold: int, duration_seconds: int) -> LockoutStatus:
        """Count a failed login. Returns locked=True only on the failure that trips the lockout."""
        with self._lock:
            now = self._clock()
            record = self._records.get(ip)
            if record is None or (record.lockout_until and now >= record.lockout_until):
                record = LockoutRecord()
                self._records[ip] = record
            record.failed_attempts += 1
            record.last_failure_at = now
            if record.failed_attempts >= threshold and not record.lockout_until:
                record.lockout_until = now + duration_seconds
                logger.warning("Locking out %s after %d failed logins", ip, record.failed_attempts)
                return LockoutStatus(locked=True, failed_attempts=record.failed_attempts, retry_after=duration_seconds)
            return LockoutStatus(locked=False, failed_attempts=record.failed_attempts)

    def clear(self, ip: str) -> None:
        with self._lock:
            self._records.pop(ip, None)

    def failed_attempts(self, ip: str) -> int:
        with self._lock:
            record = self._records.get(ip)
            return record.failed_attempts if record else 0

    def reap(self) -> int:
        """Drop lapsed lockouts and idle partial records."""
        with self._lock:
            now = self._clock()
            expired = [
                ip
                for ip, r in self._records.items()
                if (r.lockout_until and now >= r.lockout_until)
                or (not r.lockout_until and now - r.last_failure_at >= self._idle_seconds)
            ]
            for ip in expired:
                del self._records[ip]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
