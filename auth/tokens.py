"""
auth/tokens.py -- JWT issue and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role, and expiry. Verification returns None on any
       failure -- the dependency layer turns that into a 401.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup: dev mode (DEBUG=true) auto-generates a
       random key with a warning; production mode refuses to start without one.

Layer rule: no imports from api/, cmdb/, graph/, cache/, or audit/. Import
from core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings

_settings = get_settings()

_ALGORITHM = "HS256"


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity and expiry.

    expire_seconds of 0 (default) uses Settings.token_expire_seconds. The
    CLI passes a longer value when issuing tokens for automation.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None
