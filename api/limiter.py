"""
api/limiter.py -- The one slowapi Limiter shared by every Lattice route module.

api/main.py mounts it as middleware (app.state.limiter); the modules under
api/routes/v1/ decorate handlers with @limiter.limit("N/minute") placed below
the @router decorator, so the router registers the limited wrapper. Counters
are keyed by client address and kept in process memory, so limits apply per
API worker.

Tests switch enforcement off with `limiter.enabled = False`.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", headers_enabled=False)
