"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and by the route modules that
apply per-route limits with @limiter.limit(). The web and SSO clients use it
for their login and signup form posts as well.

One shared instance means one in-memory counter store. Per-module instances
would each count separately and the limits would never trigger.

RATE_LIMIT_ENABLED=false turns every limit into a no-op (tests run with it off).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
