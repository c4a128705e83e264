#!/usr/bin/env python3
"""Tests for the in-process request rate limiter"""

from datetime import datetime, timedelta

from rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=3, clock=clock)

    assert [limiter.check('admin')[0] for _ in range(3)] == [True, True, True]
    assert limiter.check('admin') == (False, 60)


def test_block_lasts_block_seconds():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=1, block_seconds=60, clock=clock)
    limiter.check('ip')
    limiter.check('ip')

    clock.advance(30)
    allowed, retry_after = limiter.check('ip')
    assert not allowed
    assert retry_after == 30

    clock.advance(31)
    assert limiter.check('ip') == (True, 0)


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=2, clock=clock)
    limiter.check('ip')
    clock.advance(40)
    limiter.check('ip')
    clock.advance(21)

    # The first request has left the window
    assert limiter.check('ip') == (True, 0)


def test_identifiers_are_independent():
    limiter = RateLimiter(requests_per_minute=1, clock=FakeClock())
    assert limiter.check('a')[0]
    assert limiter.check('b')[0]
    assert not limiter.check('a')[0]


def test_per_call_limit_override():
    limiter = RateLimiter(requests_per_minute=1, clock=FakeClock())
    assert limiter.check('a', requests_per_minute=2)[0]
    assert limiter.check('a', requests_per_minute=2)[0]
    assert not limiter.check('a', requests_per_minute=2)[0]


def test_reset_and_cleanup():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=1, clock=clock)
    limiter.check('a')
    limiter.check('b')
    limiter.check('b')

    limiter.reset('b')
    assert limiter.check('b')[0]

    clock.advance(2 * 3600)
    assert limiter.cleanup() == 2
    assert limiter.check('a')[0]


def test_maybe_cleanup_is_throttled():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=5, clock=clock)
    limiter.check('a')

    clock.advance(4 * 60)
    assert limiter.maybe_cleanup() == 0

    clock.advance(2 * 3600)
    assert limiter.maybe_cleanup() == 1
    # Just ran, so a call within the next five minutes is skipped
    clock.advance(60)
    assert limiter.maybe_cleanup() == 0


def test_app_requests_drop_stale_entries(app, client):
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=30, clock=clock)
    app.extensions['rate_limiter'] = limiter
    limiter.check('10.0.0.1:confirm_payment')
    limiter.check('10.0.0.2:confirm_payment')

    clock.advance(2 * 3600)
    client.get('/api/pricing/quote?pages=1')

    assert limiter._entries == {}
    assert limiter.check('10.0.0.1:confirm_payment') == (True, 0)
