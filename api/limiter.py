"""
api/limiter.py -- The one slowapi Limiter shared by the app and the auth routes.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware) and
api/routes/v1/auth.py decorates credential endpoints with it. Both must hold
the same instance, otherwise each would count attempts in its own storage.

Attempts are keyed by client address and counted in process memory, so limits
are per worker process.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# login, create-admin, register, forgot-password, resend-verification
credential_rate_limit: str = get_settings().login_rate_limit
