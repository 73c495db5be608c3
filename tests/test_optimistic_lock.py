"""
Optimistic locking tests

  1. A stale Material write surfaces as StaleDataError
  2. The retry decorator re-runs the unit and gives up with ConcurrencyConflict
  3. Backoff stays within its cap
"""
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from inventory_engine.core import optimistic_lock
from inventory_engine.core.errors import ConcurrencyConflict
from inventory_engine.core.optimistic_lock import backoff_delay, with_optimistic_retry
from inventory_engine.models import Material

D = Decimal


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(optimistic_lock.time, "sleep", lambda seconds: None)


def test_concurrent_material_write_is_detected(db, session_factory, make_material):
    flour = make_material("Flour", quantity="10")
    db.commit()

    with session_factory() as other:
        theirs = other.get(Material, flour.id)
        theirs.quantity = D("8")
        other.commit()

    flour.quantity = D("9")
    with pytest.raises(StaleDataError):
        db.commit()
    db.rollback()

    db.refresh(flour)
    assert flour.quantity == D("8")
    assert flour.version_id == 2


def test_retry_reruns_until_success():
    attempts = []

    @with_optimistic_retry(max_retries=3)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise StaleDataError("version mismatch")
        return "done"

    assert flaky() == "done"
    assert len(attempts) == 3


def test_retry_gives_up_with_concurrency_conflict():
    attempts = []

    @with_optimistic_retry(max_retries=2)
    def always_stale():
        attempts.append(1)
        raise StaleDataError("version mismatch")

    with pytest.raises(ConcurrencyConflict):
        always_stale()
    assert len(attempts) == 2


def test_other_errors_are_not_retried():
    attempts = []

    @with_optimistic_retry(max_retries=3)
    def broken():
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        broken()
    assert len(attempts) == 1


def test_backoff_is_capped(monkeypatch):
    monkeypatch.setattr(optimistic_lock.random, "uniform", lambda a, b: 0.0)

    assert backoff_delay(1) == pytest.approx(0.1)
    assert backoff_delay(2) == pytest.approx(0.2)
    assert backoff_delay(10) == pytest.approx(1.0)
