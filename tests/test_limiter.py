"""
tests/test_limiter.py -- ApiRateLimiter and LockoutTracker.

Covers:
  - Fixed window: the request at the threshold is refused without counting
  - Window reset, Retry-After from the window stats
  - Lockout trips exactly at the threshold, lapses after the duration
  - Remaining minutes round up
  - Concurrent hits from many threads never exceed the limit
"""

from __future__ import annotations

import threading

from conftest import FakeClock

from security.limiter import ApiRateLimiter, LockoutTracker


def test_rate_limiter_allows_up_to_limit_then_refuses(limits_clock):
    limiter = ApiRateLimiter(window_seconds=60, clock=limits_clock)

    results = [limiter.hit("10.0.0.5", "/api/x", 3) for _ in range(5)]

    assert [r.allowed for r in results] == [True, True, True, False, False]
    assert results[-1].count == 3
    assert limiter.remaining("10.0.0.5", "/api/x", 3) == 0
    assert results[-1].retry_after == 60


def test_rate_limiter_retry_after_counts_down(limits_clock):
    limiter = ApiRateLimiter(window_seconds=60, clock=limits_clock)
    limiter.hit("10.0.0.5", "/a", 1)
    limits_clock.advance(45)
    assert limiter.hit("10.0.0.5", "/a", 1).retry_after == 15


def test_rate_limiter_keys_by_ip_and_route(limits_clock):
    limiter = ApiRateLimiter(window_seconds=60, clock=limits_clock)
    assert limiter.hit("10.0.0.5", "/a", 1).allowed
    assert limiter.hit("10.0.0.5", "/b", 1).allowed
    assert limiter.hit("10.0.0.6", "/a", 1).allowed
    assert not limiter.hit("10.0.0.5", "/a", 1).allowed


def test_rate_limiter_window_resets(limits_clock):
    limiter = ApiRateLimiter(window_seconds=60, clock=limits_clock)
    limiter.hit("10.0.0.5", "/a", 1)
    assert not limiter.hit("10.0.0.5", "/a", 1).allowed

    limits_clock.advance(60)
    result = limiter.hit("10.0.0.5", "/a", 1)
    assert result.allowed
    assert result.count == 1


def test_rate_limiter_is_atomic_under_threads():
    limiter = ApiRateLimiter(window_seconds=3600)
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(50):
            if limiter.hit("10.0.0.5", "/api/x", 100).allowed:
                with lock:
                    allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(allowed) == 100
    assert limiter.remaining("10.0.0.5", "/api/x", 100) == 0


def test_lockout_trips_at_threshold():
    tracker = LockoutTracker(clock=FakeClock(0.0))
    statuses = [tracker.record_failure("10.0.0.5", 5, 900) for _ in range(5)]

    assert [s.locked for s in statuses] == [False, False, False, False, True]
    status = tracker.status("10.0.0.5")
    assert status.locked
    assert status.failed_attempts == 5
    assert status.remaining_minutes == 15


def test_lockout_remaining_minutes_round_up():
    clock = FakeClock(0.0)
    tracker = LockoutTracker(clock=clock)
    for _ in range(3):
        tracker.record_failure("10.0.0.5", 3, 900)
    clock.advance(60 * 14 + 1)

    status = tracker.status("10.0.0.5")
    assert status.retry_after == 59
    assert status.remaining_minutes == 1


def test_lockout_lapses_and_clears_record():
    clock = FakeClock(0.0)
    tracker = LockoutTracker(clock=clock)
    for _ in range(5):
        tracker.record_failure("10.0.0.5", 5, 900)
    clock.advance(900)

    status = tracker.status("10.0.0.5")
    assert not status.locked
    assert tracker.failed_attempts("10.0.0.5") == 0


def test_lockout_does_not_rearm_while_locked():
    tracker = LockoutTracker(clock=FakeClock(0.0))
    for _ in range(5):
        tracker.record_failure("10.0.0.5", 5, 900)
    assert not tracker.record_failure("10.0.0.5", 5, 900).locked
    assert tracker.status("10.0.0.5").retry_after == 900


def test_clear_resets_failures():
    tracker = LockoutTracker(clock=FakeClock(0.0))
    tracker.record_failure("10.0.0.5", 5, 900)
    tracker.clear("10.0.0.5")
    assert tracker.failed_attempts("10.0.0.5") == 0
    assert len(tracker) == 0


def test_lockout_reap():
    clock = FakeClock(0.0)
    tracker = LockoutTracker(clock=clock, idle_seconds=600)
    for _ in range(5):
        tracker.record_failure("10.0.0.5", 5, 900)
    tracker.record_failure("10.0.0.6", 5, 900)
    clock.advance(600)
    assert tracker.reap() == 1  # idle partial record
    clock.advance(300)
    assert tracker.reap() == 1  # lapsed lockout
    assert len(tracker) == 0
