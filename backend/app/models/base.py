from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every model."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
