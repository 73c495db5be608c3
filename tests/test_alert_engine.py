"""
Alert engine tests

  1. Material thresholds and their priority
  2. Auto-resolution once the condition clears
  3. Idempotent re-evaluation and the unique open-alert guard
  4. Expiry buckets per batch
  5. Manual resolution
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from inventory_engine.core.errors import NotFound
from inventory_engine.engine.alert_engine import AlertEngine
from inventory_engine.engine.events import AlertTriggered, pending_events
from inventory_engine.models import AlertSeverity, AlertType, StockAlert

D = Decimal


def open_alerts(db, material_id):
    return db.execute(
        select(StockAlert).where(StockAlert.material_id == material_id, StockAlert.is_resolved.is_(False))
    ).scalars().all()


# ─── Stock levels ──────────────────────────────────────────────────────────────
def test_low_stock_opens_then_resolves_after_replenishment(db, make_material):
    """quantity=5, minimum=10 -> low_stock; quantity=12 -> resolved by the system."""
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)

    changes = engine.evaluate_material(cream)
    db.commit()

    assert [(c.action, c.alert.alert_type) for c in changes] == [("created", "low_stock")]
    alert = changes[0].alert
    assert alert.severity == AlertSeverity.HIGH.value
    assert alert.threshold_value == D("10")
    assert alert.current_value == D("5")

    cream.quantity = D("12")
    changes = engine.evaluate_material(cream)
    db.commit()

    assert [(c.action, c.alert.id) for c in changes] == [("resolved", alert.id)]
    assert alert.is_resolved is True
    assert alert.resolved_by is None
    assert alert.resolved_at is not None
    assert open_alerts(db, cream.id) == []


def test_low_stock_above_half_minimum_is_medium(db, make_material):
    butter = make_material("Butter", quantity="8", minimum_stock_level=D("10"))
    changes = AlertEngine(db).evaluate_material(butter)
    assert changes[0].alert.severity == AlertSeverity.MEDIUM.value


def test_out_of_stock_takes_priority_over_low_stock(db, make_material):
    yeast = make_material("Yeast", quantity="0", minimum_stock_level=D("10"))

    changes = AlertEngine(db).evaluate_material(yeast)

    assert [c.alert.alert_type for c in changes] == [AlertType.OUT_OF_STOCK.value]
    assert changes[0].alert.severity == AlertSeverity.CRITICAL.value


def test_recovering_from_out_of_stock_into_low_stock(db, make_material):
    yeast = make_material("Yeast", quantity="0", minimum_stock_level=D("10"))
    engine = AlertEngine(db)
    engine.evaluate_material(yeast)

    yeast.quantity = D("4")
    changes = engine.evaluate_material(yeast)

    assert [(c.action, c.alert.alert_type) for c in changes] == [
        ("resolved", "out_of_stock"),
        ("created", "low_stock"),
    ]


def test_overstock_opens_and_resolves(db, make_material):
    rice = make_material("Rice", quantity="60", minimum_stock_level=D("10"), maximum_stock_level=D("50"))
    engine = AlertEngine(db)

    created = engine.evaluate_material(rice)
    assert created[0].alert.alert_type == AlertType.OVERSTOCK.value
    assert created[0].alert.severity == AlertSeverity.LOW.value

    rice.quantity = D("40")
    resolved = engine.evaluate_material(rice)
    assert [(c.action, c.alert.alert_type) for c in resolved] == [("resolved", "overstock")]


def test_material_without_thresholds_raises_nothing_while_stocked(db, make_material):
    water = make_material("Water", quantity="3")
    assert AlertEngine(db).evaluate_material(water) == []


# ─── Dedup guard ───────────────────────────────────────────────────────────────
def test_re_evaluation_is_idempotent(db, make_material):
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)

    engine.evaluate_material(cream)
    db.commit()
    cream.quantity = D("4")
    again = engine.evaluate_material(cream)
    db.commit()

    assert again == []
    alerts = open_alerts(db, cream.id)
    assert len(alerts) == 1
    assert alerts[0].current_value == D("4")


def test_database_rejects_second_open_alert(db, make_material):
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    AlertEngine(db).evaluate_material(cream)
    db.commit()

    with pytest.raises(IntegrityError):
        with db.begin_nested():
            db.add(StockAlert(
                material_id=cream.id, alert_type="low_stock", severity="medium", message="dup",
            ))
    db.rollback()


def test_lost_insert_race_is_a_no_op(db, make_material, monkeypatch):
    """Another transaction opened the alert between our read and our insert."""
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)
    engine.evaluate_material(cream)
    db.commit()
    winner = open_alerts(db, cream.id)[0]

    real_open_alert = engine.open_alert
    reads = []

    def stale_first_read(material_id, alert_type):
        reads.append(alert_type)
        if len(reads) == 1:
            return None
        return real_open_alert(material_id, alert_type)

    monkeypatch.setattr(engine, "open_alert", stale_first_read)
    changes = engine.evaluate_material(cream)
    db.commit()

    assert changes == []
    assert [a.id for a in open_alerts(db, cream.id)] == [winner.id]
    total = db.execute(select(func.count(StockAlert.id))).scalar_one()
    assert total == 1


# ─── Expiry ────────────────────────────────────────────────────────────────────
def test_expiry_buckets_track_most_urgent_batch(db, make_material, make_batch, today):
    fish = make_material("Fish")
    expired = make_batch(fish, 1, expires_in=-2)
    critical = make_batch(fish, 1, expires_in=1)
    make_batch(fish, 1, expires_in=2)
    warning = make_batch(fish, 1, expires_in=5)
    make_batch(fish, 1, expires_in=12)

    changes = AlertEngine(db).evaluate_batches(fish, today)
    db.commit()

    by_type = {c.alert.alert_type: c.alert for c in changes}
    assert set(by_type) == {"expired_batch", "expiry_critical", "expiry_warning"}
    assert by_type["expired_batch"].batch_id == expired.id
    assert by_type["expiry_critical"].batch_id == critical.id
    assert by_type["expiry_warning"].batch_id == warning.id
    assert by_type["expiry_warning"].severity == AlertSeverity.MEDIUM.value
    assert by_type["expiry_critical"].severity == AlertSeverity.CRITICAL.value
    assert by_type["expiry_critical"].current_value == D("1")


def test_expiry_alert_resolves_once_no_batch_qualifies(db, make_material, make_batch, today):
    fish = make_material("Fish")
    critical = make_batch(fish, 1, expires_in=1)
    engine = AlertEngine(db)
    engine.evaluate_batches(fish, today)
    db.commit()

    critical.remaining_quantity = D("0")
    changes = engine.evaluate_batches(fish, today)
    db.commit()

    assert [(c.action, c.alert.alert_type) for c in changes] == [("resolved", "expiry_critical")]


def test_batch_alerts_are_independent_of_stock_alerts(db, make_material, make_batch, today):
    fish = make_material("Fish", minimum_stock_level=D("5"))
    make_batch(fish, 2, expires_in=1)

    changes = AlertEngine(db).evaluate(fish, today)

    assert {c.alert.alert_type for c in changes} == {"low_stock", "expiry_critical"}


def test_transitions_are_recorded_as_events(db, make_material):
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)
    engine.evaluate_material(cream)
    cream.quantity = D("4")
    engine.evaluate_material(cream)

    events = [e for e in pending_events(db) if isinstance(e, AlertTriggered)]
    assert len(events) == 1
    assert events[0].alert_type == "low_stock"
    assert events[0].is_resolved is False


# ─── Manual resolution ─────────────────────────────────────────────────────────
def test_manual_resolution_records_resolver(db, make_material):
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)
    alert = engine.evaluate_material(cream)[0].alert
    db.commit()

    engine.resolve(alert.id, resolved_by="manager-7")
    first_resolved_at = alert.resolved_at
    engine.resolve(alert.id, resolved_by="someone-else")
    db.commit()

    assert alert.is_resolved is True
    assert alert.resolved_by == "manager-7"
    assert alert.resolved_at == first_resolved_at


def test_resolving_unknown_alert(db):
    with pytest.raises(NotFound):
        AlertEngine(db).resolve("missing", resolved_by="x")
