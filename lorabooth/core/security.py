"""
lorabooth — core/security.py
─────────────────────────────────────────────────────────────────
JWT helpers and the auth dependency every router uses.

Identity is issued elsewhere; this service only needs the opaque
user id carried in `sub`.

Usage:
    from lorabooth.core.security import get_current_user

    @router.post("/ai/generate")
    async def generate(user_id: str = Depends(get_current_user)): ...
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from lorabooth.core.config import cfg

logger = logging.getLogger("lorabooth.security")

SESSION_COOKIE = "lorabooth_session"
SESSION_DAYS   = 7


# ─────────────────────────────────────────────
# JWT
# ─────────────────────────────────────────────
def make_jwt(payload: dict, days: int = SESSION_DAYS, secret: Optional[str] = None) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=days)
    return jwt.encode({**payload, "exp": expires}, secret or cfg.JWT_SECRET, algorithm=cfg.ALGORITHM)


def decode_jwt(token: str, secret: Optional[str] = None) -> dict:
    """Raises JWTError if invalid or expired."""
    return jwt.decode(token, secret or cfg.JWT_SECRET, algorithms=[cfg.ALGORITHM])


# ─────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────
def get_token_from_request(request: Request) -> Optional[str]:
    """Authorization: Bearer <token> first, then the session cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return request.cookies.get(SESSION_COOKIE) or None


async def get_current_user(request: Request) -> str:
    """
    FastAPI dependency — returns user_id from the JWT.
    401 when the token is missing, invalid, expired or has no `sub`.
    """
    config = getattr(request.app.state, "config", cfg)
    token  = get_token_from_request(request)
    if not token:
        raise HTTPException(401, "Not authenticated. Please log in.")

    try:
        payload = decode_jwt(token, config.JWT_SECRET)
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise HTTPException(401, "Session expired. Please log in again.")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token payload.")
    return str(user_id)
