"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to limit POST /auth/login with @limiter.limit()).

One shared instance means every route uses the same in-memory counter store.
Per-module instances would each keep an isolated counter and the limits would
never trigger. The login limit itself comes from LOGIN_RATE_LIMIT in
core/config.py.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
