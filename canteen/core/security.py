"""
Canteen Core — JWT verification and role checks

Tokens are minted by the campus identity service; this service shares the
secret and only decodes them. Claims used here: ``sub`` (user id), ``role``
and optionally ``reg_number``.
"""
from typing import Any, Callable

from fastapi import HTTPException, Request, status
from jose import jwt

from canteen.core.config import get_settings

settings = get_settings()

ADMIN_ROLES = ("admin", "it")
KITCHEN_ROLES = ("canteen", "admin", "it")
INVENTORY_ROLES = ("admin", "inventory")


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def current_user(request: Request) -> dict[str, Any]:
    claims = getattr(request.state, "user", None)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
    return claims


def require_roles(*roles: str) -> Callable[[Request], dict[str, Any]]:
    """FastAPI dependency factory: the caller's ``role`` claim must be one of ``roles``."""

    def dependency(request: Request) -> dict[str, Any]:
        claims = current_user(request)
        role = str(claims.get("role") or "").lower()
        if role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden (insufficient role).")
        return claims

    return dependency
