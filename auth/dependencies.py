"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an "Authorization: Bearer <jwt>" header. The
token is verified, then the user is re-read from the UserStore so a
deactivated user loses access before the token expires.

get_current_user() raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.
get_principal() turns the caller into the cmdb Principal that mutations
record in the audit trail (user id, client IP, user agent).

Layer rule: no imports from core/, graph/, cache/, or audit/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.tokens import decode_access_token
from cmdb.models import Principal


def try_get_current_user(request: Request) -> User | None:
    """Authenticate via the Bearer header. Returns None on any failure; never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if not payload:
        return None
    user = request.app.state.user_store.get_by_id(payload["user_id"])
    if user and user.is_active:
        return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def get_principal(request: Request, user: User = Depends(get_current_user)) -> Principal:
    """The authenticated caller as recorded on mutations and audit entries."""
    return Principal(
        id=str(user.id),
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("User-Agent", ""),
    )
