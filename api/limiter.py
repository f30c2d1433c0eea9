"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is a coarse per-route cap on the login endpoints, on top of the
in-process ApiRateLimiter and LockoutTracker (security/limiter.py) that the
request gate and login state machine use. Keyed by the same client_ip() so
all of them agree on who the client is.
"""

from slowapi import Limiter

from api.request_info import client_ip

limiter = Limiter(key_func=client_ip, storage_uri="memory://")
