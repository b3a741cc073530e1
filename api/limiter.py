"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limit on login). One shared instance means one counter store; a
limiter per module would give each its own counters and limits would never
trigger.

Keyed by client IP. Counters are in-process memory, so limits are per worker.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
