"""Simple JWT authentication helpers."""
from __future__ import annotations

from typing import Any, Dict, Optional

import jwt
from fastapi import Header

from src.core.config import settings
from src.core.exceptions import AuthenticationError


def _claim(payload: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def require_auth(
    authorization: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    """Validate a bearer token and return the caller's tenant and user."""

    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALG],
        )
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc

    tenant_id = _claim(payload, "tenant_id", "tenantId")
    if tenant_id is None:
        raise AuthenticationError("Tenant missing in token")

    user_id = _claim(payload, "user_id", "userId", "sub")
    if user_id is None:
        raise AuthenticationError("User missing in token")

    return {"tenant_id": tenant_id, "user_id": user_id, "claims": payload}
