"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

One shared instance means every route counts against the same in-memory
store. Per-module instances would each keep their own counters and the
login limit would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Applied to credential-bearing routes: login, register, provisioning.
LOGIN_LIMIT = get_settings().login_rate_limit
