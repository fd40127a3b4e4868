"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware via app.state.limiter) and by
the routers that apply per-route limits with @limiter.limit(): login,
registration, checkout, the PayOS webhook, support-plan purchase and
notifications.

A single shared instance keeps one in-memory counter store for every route.
Separate instances per module would each count in isolation.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
