"""
Event outbox and broadcast tests

  1. Events reach handlers only after the outermost commit
  2. Rolled back work publishes nothing
  3. Handler and transport failures never reach the caller
  4. Payload schema and channel naming per event kind
  5. Redis / HTTP transports and the stock cache
"""
import json
import logging
from decimal import Decimal

import httpx
import pytest
import redis

from inventory_engine.core.errors import BroadcastFailure, InsufficientStock
from inventory_engine.engine import broadcast
from inventory_engine.engine.alert_engine import AlertEngine
from inventory_engine.engine.batch_ledger import BatchLedger
from inventory_engine.engine.broadcast import (
    BroadcastDispatcher, HttpPublisher, NullPublisher, RedisPublisher, StockCache,
    build_payload, build_publisher,
)
from inventory_engine.engine.events import (
    DashboardChanged, EventBus, InventoryChanged, pending_events, record_event,
)

D = Decimal


def inventory_changed(material_id="m-1", new_quantity="5"):
    return InventoryChanged(
        material_id=material_id,
        material_name="Tomato",
        change_type="receipt",
        previous_quantity=D("0"),
        new_quantity=D(new_quantity),
        stock_unit="kg",
    )


class FailingPublisher:
    def __init__(self):
        self.attempts = 0

    def publish(self, channel_name, payload):
        self.attempts += 1
        raise BroadcastFailure("hub down")


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []
        self.stored = []

    def publish(self, channel_name, message):
        if self.fail:
            raise redis.ConnectionError("connection refused")
        self.published.append((channel_name, message))

    def setex(self, key, ttl, value):
        if self.fail:
            raise redis.ConnectionError("connection refused")
        self.stored.append((key, ttl, value))


# ─── Outbox ────────────────────────────────────────────────────────────────────
def test_events_dispatch_on_commit(db, make_material, publisher, stock_cache):
    tomato = make_material("Tomato")
    tomato.quantity = D("5")
    record_event(db, inventory_changed(tomato.id))

    assert publisher.messages == []
    db.commit()

    assert [name for name, _ in publisher.messages] == [
        "inventory", f"inventory.material.{tomato.id}",
    ]
    assert stock_cache.values == {tomato.id: "5"}
    assert pending_events(db) == []


def test_rollback_discards_events(db, make_material, publisher):
    tomato = make_material("Tomato")
    tomato.quantity = D("5")
    record_event(db, inventory_changed(tomato.id))

    db.rollback()
    db.commit()

    assert publisher.messages == []
    assert pending_events(db) == []


def test_savepoint_release_does_not_publish(db, make_material, publisher):
    tomato = make_material("Tomato")
    with db.begin_nested():
        tomato.quantity = D("2")
        record_event(db, inventory_changed(tomato.id, "2"))

    assert publisher.messages == []
    assert len(pending_events(db)) == 1

    db.commit()
    assert len(publisher.on("inventory")) == 1


def test_consumption_broadcasts_after_commit(db, make_material, make_batch, publisher):
    tomato = make_material("Tomato", stock_unit="kg")
    make_batch(tomato, 5, expires_in=1)
    make_batch(tomato, 10, expires_in=10)

    BatchLedger(db).consume(tomato.id, 12, reference="order-9")
    assert publisher.messages == []
    db.commit()

    updates = publisher.on("inventory")
    assert [u["change_type"] for u in updates] == ["consumption", "consumption"]
    assert [D(u["data"]["change_data"]["consumed_quantity"]) for u in updates] == [D("5"), D("7")]
    assert D(updates[-1]["data"]["new_quantity"]) == D("3")
    assert updates[-1]["data"]["stock_unit"] == "kg"
    assert len(publisher.on(f"inventory.material.{tomato.id}")) == 2


def test_failed_consumption_publishes_nothing(db, make_material, make_batch, publisher):
    tomato = make_material("Tomato")
    make_batch(tomato, 1, expires_in=1)

    with pytest.raises(InsufficientStock):
        BatchLedger(db).consume(tomato.id, 3)
    db.rollback()

    assert publisher.messages == []


# ─── Failure isolation ─────────────────────────────────────────────────────────
def test_handler_failure_does_not_stop_other_handlers(caplog):
    bus = EventBus()
    received = []

    def boom(ev):
        raise RuntimeError("handler bug")

    bus.subscribe(InventoryChanged, boom)
    bus.subscribe(InventoryChanged, received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(inventory_changed())

    assert len(received) == 1
    assert "failed" in caplog.text


def test_subscribe_is_idempotent():
    bus = EventBus()
    received = []
    bus.subscribe(InventoryChanged, received.append)
    bus.subscribe(InventoryChanged, received.append)

    bus.publish(inventory_changed())

    assert len(received) == 1


def test_transport_failure_is_logged_not_raised(caplog):
    failing = FailingPublisher()
    bus = EventBus()
    BroadcastDispatcher(failing).register(bus)

    with caplog.at_level(logging.WARNING):
        bus.publish(inventory_changed())

    assert failing.attempts == 2
    assert "dropped" in caplog.text


def test_commit_succeeds_when_transport_is_down(db, make_material, bus):
    BroadcastDispatcher(FailingPublisher()).register(bus)
    tomato = make_material("Tomato")
    tomato.quantity = D("4")
    record_event(db, inventory_changed(tomato.id, "4"))

    db.commit()

    db.refresh(tomato)
    assert tomato.quantity == D("4")


# ─── Payloads and channels ─────────────────────────────────────────────────────
def test_payload_schema():
    ev = inventory_changed()
    payload = build_payload(ev, change_type="receipt", material_id="m-1")

    assert set(payload) == {
        "event", "kind", "change_type", "material_id", "alert_id",
        "recipe_id", "order_id", "data", "timestamp",
    }
    assert payload["event"] == "inventory.updated"
    assert payload["kind"] == "InventoryChanged"
    assert payload["data"]["new_quantity"] == "5"
    assert "occurred_at" not in payload["data"]
    assert payload["timestamp"] == ev.occurred_at.isoformat()


def test_alert_transitions_go_to_stock_alerts(db, make_material, publisher):
    cream = make_material("Cream", quantity="5", minimum_stock_level=D("10"))
    engine = AlertEngine(db)
    alert = engine.evaluate_material(cream)[0].alert
    db.commit()
    cream.quantity = D("20")
    engine.evaluate_material(cream)
    db.commit()

    alerts = publisher.on("stock-alerts")
    assert [a["change_type"] for a in alerts] == ["low_stock", "resolved"]
    assert {a["alert_id"] for a in alerts} == {alert.id}
    assert len(publisher.on(f"inventory.material.{cream.id}")) == 2


def test_dashboard_channel(bus, publisher):
    bus.publish(DashboardChanged(update_type="alerts", dashboard_data={"active_alerts": 3}))

    (payload,) = publisher.on("inventory-dashboard")
    assert payload["change_type"] == "alerts"
    assert payload["data"]["dashboard_data"] == {"active_alerts": 3}


def test_channel_prefix(monkeypatch):
    monkeypatch.setattr(broadcast.settings, "CHANNEL_PREFIX", "eu1:")
    assert broadcast.channel("inventory") == "eu1:inventory"


# ─── Transports ────────────────────────────────────────────────────────────────
def test_redis_publisher_serialises_payload():
    client = FakeRedis()
    RedisPublisher(client).publish("inventory", {"event": "inventory.updated", "n": 1})

    assert client.published == [("inventory", '{"event": "inventory.updated", "n": 1}')]


def test_redis_publisher_wraps_errors():
    with pytest.raises(BroadcastFailure):
        RedisPublisher(FakeRedis(fail=True)).publish("inventory", {"event": "x"})


def test_stock_cache_sets_expiring_key():
    client = FakeRedis()
    StockCache(client, ttl_seconds=30).set_quantity("m-1", D("2.500"))

    assert client.stored == [("stock:m-1", 30, "2.500")]


def test_stock_cache_wraps_errors():
    with pytest.raises(BroadcastFailure):
        StockCache(FakeRedis(fail=True)).set_quantity("m-1", 1)


def test_http_publisher_posts_to_hub(monkeypatch):
    seen = []

    def handler(request):
        seen.append((request.url.path, request.read()))
        return httpx.Response(200, json={"ok": True})

    real_client = httpx.Client
    monkeypatch.setattr(
        httpx, "Client",
        lambda timeout=None: real_client(transport=httpx.MockTransport(handler), timeout=timeout),
    )

    HttpPublisher("http://hub:8005/").publish("orders", {"event": "order.inventory-processed"})

    assert [(path, json.loads(body)) for path, body in seen] == [(
        "/notifications/publish",
        {"channel": "orders", "payload": {"event": "order.inventory-processed"}},
    )]


def test_http_publisher_raises_broadcast_failure_on_error_status(monkeypatch):
    real_client = httpx.Client
    monkeypatch.setattr(
        httpx, "Client",
        lambda timeout=None: real_client(
            transport=httpx.MockTransport(lambda request: httpx.Response(503)), timeout=timeout,
        ),
    )

    with pytest.raises(BroadcastFailure):
        HttpPublisher("http://hub:8005").publish("orders", {"event": "x"})


def test_http_publisher_unreachable_hub():
    with pytest.raises(BroadcastFailure):
        HttpPublisher("http://127.0.0.1:1", timeout=0.5).publish("orders", {"event": "x"})


def test_null_publisher_drops_quietly():
    NullPublisher().publish("inventory", {"event": "x"})


def test_build_publisher():
    assert isinstance(build_publisher("none"), NullPublisher)
    assert isinstance(build_publisher("redis"), RedisPublisher)
    assert isinstance(build_publisher("HTTP"), HttpPublisher)
    with pytest.raises(ValueError):
        build_publisher("carrier-pigeon")
