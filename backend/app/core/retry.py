"""Bounded retries for transient database failures."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.monitoring.metrics import db_retries_total
from app.services.errors import TransientFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    *,
    name: str,
    retry_on: Sequence[type[BaseException]] = (OperationalError,),
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run *operation* inside its own transaction, retrying transient failures.

    The session is rolled back after every failed attempt so a retry never
    observes partially applied work. When all attempts fail the caller gets a
    :class:`TransientFailure` and nothing has been committed.
    """

    settings = get_settings()
    max_attempts = attempts if attempts is not None else settings.db_retry_attempts
    delay = base_delay if base_delay is not None else settings.db_retry_base_delay_seconds
    errors = tuple(retry_on)

    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
        except errors as exc:
            db.rollback()
            if attempt >= max_attempts:
                db_retries_total.labels(name, "exhausted").inc()
                logger.error(
                    "Database operation %s failed after %d attempts",
                    name,
                    attempt,
                    extra={"operation": name, "attempts": attempt},
                )
                raise TransientFailure(operation=name) from exc
            db_retries_total.labels(name, "retried").inc()
            logger.warning(
                "Transient failure in %s (attempt %d/%d): %s",
                name,
                attempt,
                max_attempts,
                exc.__class__.__name__,
                extra={"operation": name, "attempt": attempt},
            )
            await asyncio.sleep(delay * (2 ** (attempt - 1)))
        else:
            if attempt > 1:
                db_retries_total.labels(name, "recovered").inc()
            return result

    raise TransientFailure(operation=name)  # pragma: no cover - loop always returns or raises
