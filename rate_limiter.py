"""
Request rate limiting

The limiter is an explicit object owned by the app (app.extensions['rate_limiter'])
rather than module-level state, so each app instance and each test gets its own
counters.
"""
import threading
from datetime import datetime, timedelta
from functools import wraps
from typing import Tuple

from flask import current_app, jsonify, request


class RateLimiter:
    """Sliding one-minute window per identifier, with a 60 second block once exceeded"""

    def __init__(self, requests_per_minute=60, block_seconds=60, clock=None):
        self.requests_per_minute = requests_per_minute
        self.block_seconds = block_seconds
        self.clock = clock or datetime.utcnow
        self._entries = {}
        self._lock = threading.Lock()
        self._last_cleanup = self.clock()

    def check(self, identifier, requests_per_minute=None) -> Tuple[bool, int]:
        """
        Record a request for identifier and decide whether it may proceed.

        Returns:
            tuple: (allowed, retry_after_seconds)
        """
        limit = requests_per_minute or self.requests_per_minute
        current_time = self.clock()

        with self._lock:
            entry = self._entries.setdefault(identifier, {'requests': [], 'blocked_until': None})

            if entry['blocked_until'] and current_time < entry['blocked_until']:
                remaining = int((entry['blocked_until'] - current_time).total_seconds())
                return False, max(1, remaining)

            one_minute_ago = current_time - timedelta(minutes=1)
            entry['requests'] = [t for t in entry['requests'] if t > one_minute_ago]

            if len(entry['requests']) >= limit:
                entry['blocked_until'] = current_time + timedelta(seconds=self.block_seconds)
                return False, self.block_seconds

            entry['requests'].append(current_time)
            return True, 0

    def reset(self, identifier):
        with self._lock:
            self._entries.pop(identifier, None)

    def cleanup(self, max_age=timedelta(hours=1)):
        """Remove stale entries; returns how many were dropped"""
        current_time = self.clock()
        cutoff = current_time - max_age

        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if (not entry['requests'] or max(entry['requests']) < cutoff)
                and (entry['blocked_until'] is None or entry['blocked_until'] < current_time)
            ]
            for key in stale:
                del self._entries[key]
            self._last_cleanup = current_time
        return len(stale)

    def maybe_cleanup(self, interval=timedelta(minutes=5), max_age=timedelta(hours=1)):
        """Run cleanup at most once per interval; returns entries dropped (0 when skipped)"""
        if self.clock() - self._last_cleanup <= interval:
            return 0
        return self.cleanup(max_age)


def rate_limited(requests_per_minute=None):
    """Rate limit a route using the app's RateLimiter, keyed by client address and endpoint"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            limiter = current_app.extensions.get('rate_limiter')
            if limiter is None:
                return f(*args, **kwargs)

            identifier = f"{request.remote_addr}:{f.__name__}"
            allowed, retry_after = limiter.check(identifier, requests_per_minute)
            if not allowed:
                response = jsonify({'error': f'Rate limit exceeded. Try again in {retry_after} seconds'})
                response.headers['Retry-After'] = str(retry_after)
                return response, 429

            return f(*args, **kwargs)
        return wrapped
    return decorator
