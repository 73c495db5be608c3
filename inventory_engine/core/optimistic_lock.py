"""
Inventory Engine — Optimistic locking retry decorator

Uses exponential backoff + jitter to handle SQLAlchemy StaleDataError.
StaleDataError occurs when the version_id of a Material or Order row was
incremented by another concurrent transaction between our read and write.
"""
import functools
import logging
import random
import time

from sqlalchemy.orm.exc import StaleDataError

from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import ConcurrencyConflict

settings = get_settings()
logger = logging.getLogger(__name__)


def backoff_delay(attempt: int) -> float:
    """Exponential backoff: base * 2^attempt, capped, plus jitter (seconds)."""
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for functions that run one unit of work with optimistic-lock writes.
    The wrapped function must roll back its session before the StaleDataError
    escapes, so every attempt starts from a clean transaction.

    Usage:
        @with_optimistic_retry()
        def consume_stock(db, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return func(*args, **kwargs)
                except StaleDataError as exc:
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        raise ConcurrencyConflict(
                            f"{func.__name__}: concurrent update not resolved after {_max} attempts"
                        ) from exc
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "StaleDataError on attempt %d/%d for %s, retrying in %.3fs",
                        attempt, _max, func.__name__, delay,
                    )
                    time.sleep(delay)
        return wrapper
    return decorator
