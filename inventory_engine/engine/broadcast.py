"""
Inventory Engine — Broadcast dispatcher (best-effort pub/sub fan-out)

Registered on the event bus, so it only ever sees events of committed
transactions. Each domain event becomes one JSON payload published to one or
more channels:

    {"event": "inventory.updated", "kind": "InventoryChanged",
     "change_type": "consumption", "material_id": "...", "alert_id": null,
     "recipe_id": null, "order_id": null, "data": {...},
     "timestamp": "2025-08-19T10:00:00+00:00"}

Transport failures are logged and dropped (at-most-once delivery).
"""
import json
import logging
from typing import Protocol

import httpx
import redis

from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import BroadcastFailure
from inventory_engine.core.redis_client import get_redis
from inventory_engine.engine.events import (
    AlertTriggered,
    BatchConsumed,
    BatchExpiryWarning,
    DashboardChanged,
    DomainEvent,
    EventBus,
    InventoryChanged,
    OrderInventoryProcessed,
    RecipeCostChanged,
    get_event_bus,
)

settings = get_settings()
logger = logging.getLogger(__name__)


def channel(name: str) -> str:
    return f"{settings.CHANNEL_PREFIX}{name}"


# ── Transports ───────────────────────────────────────────────────────────────
class Publisher(Protocol):
    def publish(self, channel_name: str, payload: dict) -> None: ...


class RedisPublisher:
    """Redis PUBLISH; subscribers listen on the channel names directly."""

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_redis()

    def publish(self, channel_name: str, payload: dict) -> None:
        try:
            self.client.publish(channel_name, json.dumps(payload))
        except redis.RedisError as exc:
            raise BroadcastFailure(f"Redis publish to '{channel_name}' failed: {exc}") from exc


class HttpPublisher:
    """POSTs to the notification hub, which republishes on its own pub/sub."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.url = f"{(base_url or settings.NOTIFICATION_HUB_URL).rstrip('/')}/notifications/publish"
        self.timeout = timeout or settings.BROADCAST_TIMEOUT_SECONDS

    def publish(self, channel_name: str, payload: dict) -> None:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json={"channel": channel_name, "payload": payload})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BroadcastFailure(f"Notification hub publish to '{channel_name}' failed: {exc}") from exc


class NullPublisher:
    def publish(self, channel_name: str, payload: dict) -> None:
        logger.debug("Broadcasting disabled, dropped %s on %s", payload.get("event"), channel_name)


class StockCache:
    """stock:<material_id> -> current quantity, refreshed after every inventory change."""

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None):
        self._client = client
        self.ttl = ttl_seconds or settings.STOCK_CACHE_TTL_SECONDS

    def set_quantity(self, material_id: str, quantity) -> None:
        try:
            (self._client or get_redis()).setex(f"stock:{material_id}", self.ttl, str(quantity))
        except redis.RedisError as exc:
            raise BroadcastFailure(f"Stock cache update for '{material_id}' failed: {exc}") from exc


def build_publisher(transport: str | None = None) -> Publisher:
    transport = (transport or settings.BROADCAST_TRANSPORT).lower()
    if transport == "redis":
        return RedisPublisher()
    if transport == "http":
        return HttpPublisher()
    if transport == "none":
        return NullPublisher()
    raise ValueError(f"Unknown BROADCAST_TRANSPORT '{transport}'")


# ── Dispatcher ───────────────────────────────────────────────────────────────
class BroadcastDispatcher:
    def __init__(self, publisher: Publisher, stock_cache: StockCache | None = None):
        self.publisher = publisher
        self.stock_cache = stock_cache

    def register(self, bus: EventBus) -> "BroadcastDispatcher":
        bus.subscribe(InventoryChanged, self.on_inventory_changed)
        bus.subscribe(BatchConsumed, self.on_batch_consumed)
        bus.subscribe(AlertTriggered, self.on_alert_triggered)
        bus.subscribe(DashboardChanged, self.on_dashboard_changed)
        bus.subscribe(RecipeCostChanged, self.on_recipe_cost_changed)
        bus.subscribe(OrderInventoryProcessed, self.on_order_inventory_processed)
        bus.subscribe(BatchExpiryWarning, self.on_batch_expiry_warning)
        return self

    # ── Handlers ─────────────────────────────────────────────────────────────
    def on_inventory_changed(self, ev: InventoryChanged) -> None:
        self._send(
            [channel("inventory"), channel(f"inventory.material.{ev.material_id}")],
            build_payload(ev, change_type=ev.change_type, material_id=ev.material_id),
        )
        self._cache(ev.material_id, ev.new_quantity)

    def on_batch_consumed(self, ev: BatchConsumed) -> None:
        # Consumption facts go out as inventory updates.
        changed = InventoryChanged(
            occurred_at=ev.occurred_at,
            material_id=ev.material_id,
            material_name=ev.material_name,
            change_type="consumption",
            previous_quantity=ev.material_quantity + ev.quantity,
            new_quantity=ev.material_quantity,
            stock_unit=ev.stock_unit,
            change_data={
                "batch_id": ev.batch_id,
                "batch_number": ev.batch_number,
                "consumed_quantity": str(ev.quantity),
                "batch_remaining_quantity": str(ev.remaining_quantity),
                "unit_cost": str(ev.unit_cost),
                "reference": ev.reference,
            },
        )
        self.on_inventory_changed(changed)

    def on_alert_triggered(self, ev: AlertTriggered) -> None:
        self._send(
            [channel("stock-alerts"), channel(f"inventory.material.{ev.material_id}")],
            build_payload(
                ev,
                change_type="resolved" if ev.is_resolved else ev.alert_type,
                material_id=ev.material_id,
                alert_id=ev.alert_id,
            ),
        )

    def on_dashboard_changed(self, ev: DashboardChanged) -> None:
        self._send([channel("inventory-dashboard")], build_payload(ev, change_type=ev.update_type))

    def on_recipe_cost_changed(self, ev: RecipeCostChanged) -> None:
        self._send(
            [channel("recipe-costs"), channel(f"recipe-costs.recipe.{ev.recipe_id}")],
            build_payload(ev, change_type="cost_update", recipe_id=ev.recipe_id),
        )

    def on_order_inventory_processed(self, ev: OrderInventoryProcessed) -> None:
        self._send(
            [channel("orders"), channel(f"order.{ev.order_id}")],
            build_payload(ev, change_type=ev.inventory_status, order_id=ev.order_id),
        )

    def on_batch_expiry_warning(self, ev: BatchExpiryWarning) -> None:
        self._send(
            [channel("inventory"), channel("stock-alerts"), channel(f"inventory.material.{ev.material_id}")],
            build_payload(ev, change_type="expiry_warning", material_id=ev.material_id),
        )

    # ── Delivery ─────────────────────────────────────────────────────────────
    def _send(self, channels: list[str], payload: dict) -> None:
        for name in channels:
            try:
                self.publisher.publish(name, payload)
            except BroadcastFailure as exc:
                logger.warning("Broadcast of %s dropped: %s", payload["event"], exc)

    def _cache(self, material_id: str, quantity) -> None:
        if self.stock_cache is None:
            return
        try:
            self.stock_cache.set_quantity(material_id, quantity)
        except BroadcastFailure as exc:
            logger.warning("Stock cache not refreshed: %s", exc)


def build_payload(
    ev: DomainEvent,
    change_type: str | None = None,
    material_id: str | None = None,
    alert_id: str | None = None,
    recipe_id: str | None = None,
    order_id: str | None = None,
) -> dict:
    return {
        "event": ev.name,
        "kind": type(ev).__name__,
        "change_type": change_type,
        "material_id": material_id,
        "alert_id": alert_id,
        "recipe_id": recipe_id,
        "order_id": order_id,
        "data": ev.model_dump(mode="json", exclude={"occurred_at"}),
        "timestamp": ev.occurred_at.isoformat(),
    }


_dispatcher: BroadcastDispatcher | None = None


def configure_broadcasting(bus: EventBus | None = None, transport: str | None = None) -> BroadcastDispatcher:
    """Wire the process-wide dispatcher onto the bus once per process."""
    global _dispatcher
    if _dispatcher is None:
        publisher = build_publisher(transport)
        cache = StockCache() if isinstance(publisher, RedisPublisher) else None
        _dispatcher = BroadcastDispatcher(publisher, cache)
        logger.info("Broadcasting via %s", type(publisher).__name__)
    _dispatcher.register(bus or get_event_bus())
    return _dispatcher
