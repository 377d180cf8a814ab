"""Helpers for bearer token handling."""

from __future__ import annotations

from typing import Any, Dict

import jwt

from app.config import get_settings
from app.services.errors import Unauthenticated

settings = get_settings()


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT access token."""

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthenticated() from exc
    return payload
