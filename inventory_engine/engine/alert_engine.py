"""
Inventory Engine — Alert engine (deduplicated stock alert state machine)

Per (material_id, alert_type): None -> Unresolved -> Resolved.

Opening an alert is an INSERT inside a SAVEPOINT. The partial unique index
uq_stock_alerts_open rejects a second unresolved row for the same key, so a
concurrent evaluation that loses the race gets an IntegrityError, re-reads the
winner's row and carries on.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import NotFound
from inventory_engine.engine.events import AlertTriggered, record_event
from inventory_engine.models import AlertSeverity, AlertType, Material, StockAlert, StockBatch

settings = get_settings()
logger = logging.getLogger(__name__)

BATCH_ALERT_TYPES = (AlertType.EXPIRED_BATCH, AlertType.EXPIRY_CRITICAL, AlertType.EXPIRY_WARNING)


class AlertTransition(NamedTuple):
    alert: StockAlert
    action: str            # "created" | "resolved"


def severity_for(alert_type: AlertType, material: Material) -> AlertSeverity:
    if alert_type in (AlertType.OUT_OF_STOCK, AlertType.EXPIRY_CRITICAL, AlertType.EXPIRED_BATCH):
        return AlertSeverity.CRITICAL
    if alert_type == AlertType.LOW_STOCK:
        if material.quantity <= material.minimum_stock_level / 2:
            return AlertSeverity.HIGH
        return AlertSeverity.MEDIUM
    if alert_type == AlertType.EXPIRY_WARNING:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


class AlertEngine:
    def __init__(
        self,
        db: Session,
        warning_days: int | None = None,
        critical_days: int | None = None,
    ):
        self.db = db
        self.warning_days = warning_days if warning_days is not None else settings.EXPIRY_WARNING_DAYS
        self.critical_days = critical_days if critical_days is not None else settings.EXPIRY_CRITICAL_DAYS

    def open_alert(self, material_id: str, alert_type: AlertType) -> StockAlert | None:
        return self.db.execute(
            select(StockAlert).where(
                StockAlert.material_id == material_id,
                StockAlert.alert_type == alert_type.value,
                StockAlert.is_resolved.is_(False),
            )
        ).scalar_one_or_none()

    # ── Evaluation ───────────────────────────────────────────────────────────
    def evaluate(self, material: Material, today: date | None = None) -> list[AlertTransition]:
        return self.evaluate_material(material) + self.evaluate_batches(material, today)

    def evaluate_material(self, material: Material) -> list[AlertTransition]:
        """
        Threshold alerts, first match wins:
          out_of_stock  quantity <= 0
          low_stock     min > 0 and quantity <= min
          overstock     max > 0 and quantity > max
        A higher-priority alert whose condition no longer holds is cleared;
        lower-priority alerts are left alone while a higher one matches.
        """
        qty = material.quantity
        minimum = material.minimum_stock_level
        maximum = material.maximum_stock_level
        changes: list[AlertTransition] = []

        if qty <= 0:
            self._raise(changes, material, AlertType.OUT_OF_STOCK, Decimal("0"), qty,
                        f"{material.name} is out of stock.")
        elif minimum > 0 and qty <= minimum:
            self._clear(changes, material, AlertType.OUT_OF_STOCK)
            self._raise(changes, material, AlertType.LOW_STOCK, minimum, qty,
                        f"Low stock alert: {material.name} has {qty} {material.stock_unit} "
                        f"remaining (minimum {minimum}).")
        elif maximum > 0 and qty > maximum:
            self._clear(changes, material, AlertType.OUT_OF_STOCK)
            self._clear(changes, material, AlertType.LOW_STOCK)
            self._raise(changes, material, AlertType.OVERSTOCK, maximum, qty,
                        f"Overstock alert: {material.name} has {qty} {material.stock_unit} "
                        f"(maximum {maximum}).")
        else:
            if qty > minimum:
                self._clear(changes, material, AlertType.OUT_OF_STOCK)
                self._clear(changes, material, AlertType.LOW_STOCK)
            if qty <= maximum or maximum <= 0:
                self._clear(changes, material, AlertType.OVERSTOCK)
        return changes

    def evaluate_batches(self, material: Material, today: date | None = None) -> list[AlertTransition]:
        """
        Expiry alerts. Each batch falls in at most one bucket:
          expired_batch    expiry_date < today
          expiry_critical  0 <= days <= critical_days
          expiry_warning   critical_days < days <= warning_days
        The alert for a bucket points at its most urgent batch and resolves once
        no available batch of the material qualifies.
        """
        today = today or date.today()
        batches = self.db.execute(
            select(StockBatch)
            .where(
                StockBatch.material_id == material.id,
                StockBatch.remaining_quantity > 0,
                StockBatch.expiry_date.is_not(None),
                StockBatch.expiry_date <= today + timedelta(days=self.warning_days),
            )
            .order_by(StockBatch.expiry_date.asc(), StockBatch.received_date.asc())
        ).scalars().all()

        buckets: dict[AlertType, list[StockBatch]] = {t: [] for t in BATCH_ALERT_TYPES}
        for batch in batches:
            buckets[self._bucket(batch.days_until_expiry(today))].append(batch)

        changes: list[AlertTransition] = []
        for alert_type, qualifying in buckets.items():
            if not qualifying:
                self._clear(changes, material, alert_type)
                continue
            batch = qualifying[0]
            days = batch.days_until_expiry(today)
            if alert_type == AlertType.EXPIRED_BATCH:
                threshold = Decimal("0")
                message = (f"Batch {batch.batch_number} of {material.name} expired "
                           f"{-days} day(s) ago ({len(qualifying)} expired batch(es) in stock).")
            else:
                threshold = Decimal(self.critical_days if alert_type == AlertType.EXPIRY_CRITICAL
                                    else self.warning_days)
                message = (f"Batch {batch.batch_number} of {material.name} expires in {days} day(s) "
                           f"({batch.remaining_quantity} {material.stock_unit} remaining).")
            self._raise(changes, material, alert_type, threshold, Decimal(days), message, batch_id=batch.id)
        return changes

    def _bucket(self, days: int) -> AlertType:
        if days < 0:
            return AlertType.EXPIRED_BATCH
        if days <= self.critical_days:
            return AlertType.EXPIRY_CRITICAL
        return AlertType.EXPIRY_WARNING

    # ── Transitions ──────────────────────────────────────────────────────────
    def _raise(
        self,
        changes: list[AlertTransition],
        material: Material,
        alert_type: AlertType,
        threshold: Decimal,
        current: Decimal,
        message: str,
        batch_id: str | None = None,
    ) -> StockAlert:
        severity = severity_for(alert_type, material).value
        alert = self.open_alert(material.id, alert_type)
        if alert is not None:
            # Still open: refresh the observed values only.
            alert.severity = severity
            alert.current_value = current
            alert.threshold_value = threshold
            alert.message = message
            alert.batch_id = batch_id
            return alert

        alert = StockAlert(
            material_id=material.id,
            batch_id=batch_id,
            alert_type=alert_type.value,
            severity=severity,
            threshold_value=threshold,
            current_value=current,
            message=message,
        )
        try:
            with self.db.begin_nested():
                self.db.add(alert)
        except IntegrityError:
            logger.info(
                "Concurrent %s alert for material %s already open, keeping it",
                alert_type.value, material.id,
            )
            return self.open_alert(material.id, alert_type)

        logger.info("Opened %s alert for %s (%s)", alert_type.value, material.name, severity)
        self._record(alert, material)
        changes.append(AlertTransition(alert, "created"))
        return alert

    def _clear(self, changes: list[AlertTransition], material: Material, alert_type: AlertType) -> None:
        alert = self.open_alert(material.id, alert_type)
        if alert is None:
            return
        self._mark_resolved(alert, resolved_by=None)
        self.db.flush()
        logger.info("Resolved %s alert for %s", alert_type.value, material.name)
        self._record(alert, material)
        changes.append(AlertTransition(alert, "resolved"))

    def resolve(self, alert_id: str, resolved_by: str | None) -> StockAlert:
        """Manual resolution. Resolving an already resolved alert is a no-op."""
        alert = self.db.get(StockAlert, alert_id)
        if alert is None:
            raise NotFound("StockAlert", alert_id)
        if alert.is_resolved:
            return alert
        self._mark_resolved(alert, resolved_by=resolved_by)
        self.db.flush()
        self._record(alert, alert.material)
        return alert

    @staticmethod
    def _mark_resolved(alert: StockAlert, resolved_by: str | None) -> None:
        alert.is_resolved = True
        alert.resolved_at = datetime.now(timezone.utc)
        alert.resolved_by = resolved_by

    def _record(self, alert: StockAlert, material: Material) -> None:
        record_event(self.db, AlertTriggered(
            alert_id=alert.id,
            material_id=material.id,
            material_name=material.name,
            batch_id=alert.batch_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            threshold_value=alert.threshold_value,
            current_value=alert.current_value,
            message=alert.message,
            is_resolved=alert.is_resolved,
        ))
