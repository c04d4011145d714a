"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware through app.state.limiter) and
by api/routes/v1/auth.py (per-route limits with @limiter.limit()).

One shared instance means every route shares the same in-memory counter
store. A limiter per module would keep isolated counters and the
login/signup limits would never trigger.

Limits are read through callables so LOGIN_RATE_LIMIT / SIGNUP_RATE_LIMIT
are resolved from settings at request time, not at import time.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def signup_limit() -> str:
    return get_settings().signup_rate_limit
