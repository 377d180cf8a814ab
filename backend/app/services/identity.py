"""Resolve bearer credentials to active users."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.models import AccountStatus, User
from app.services.errors import Unauthenticated


@dataclass(slots=True, frozen=True)
class UserIdentity:
    """Authenticated caller as seen by the domain services."""

    user_id: int
    status: AccountStatus


class IdentityGate:
    """Verify a JWT bearer token and look up the user it names.

    The token's ``sub`` claim must be the integer id of an ``active`` user.
    Anything else (missing or malformed token, bad signature, expiry, unknown,
    suspended or deleted user) is reported as :class:`Unauthenticated`.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def authenticate(self, credential: str | None) -> UserIdentity:
        if not credential:
            raise Unauthenticated("Not authenticated")
        payload = decode_access_token(credential)
        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise Unauthenticated() from None

        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise Unauthenticated()
        return UserIdentity(user_id=user.id, status=user.status)
