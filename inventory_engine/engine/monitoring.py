"""
Inventory Engine — Monitoring coordinator (scheduled sweeps)

Every sweep treats each material as an independent unit of work with its own
session and transaction. Units run on a thread pool; a failing unit is logged
and counted and never stops the others.

SweepSummary counts:
  processed  units attempted
  updated    units that changed state (alert opened/resolved, row written)
  skipped    units with nothing to do
  errored    units that raised
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from inventory_engine.core.config import get_settings
from inventory_engine.core.optimistic_lock import with_optimistic_retry
from inventory_engine.db.database import SessionLocal, unit_of_work
from inventory_engine.engine.alert_engine import BATCH_ALERT_TYPES, AlertEngine
from inventory_engine.engine.batch_ledger import BatchLedger
from inventory_engine.engine.events import BatchExpiryWarning, DashboardChanged, record_event
from inventory_engine.models import (
    AlertSeverity, Material, MaterialStockHistory, StockAlert, StockBatch,
)

settings = get_settings()
logger = logging.getLogger(__name__)

UPDATED, SKIPPED, UNCHANGED = "updated", "skipped", "unchanged"


class SweepSummary(BaseModel):
    name: str
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    errors: list[str] = Field(default_factory=list)

    def count(self, outcome: str) -> None:
        self.processed += 1
        if outcome == UPDATED:
            self.updated += 1
        elif outcome == SKIPPED:
            self.skipped += 1

    def fail(self, unit: str, exc: Exception) -> None:
        self.processed += 1
        self.errored += 1
        self.errors.append(f"{unit}: {exc}")

    def merge(self, other: "SweepSummary") -> "SweepSummary":
        self.processed += other.processed
        self.updated += other.updated
        self.skipped += other.skipped
        self.errored += other.errored
        self.errors.extend(f"{other.name}/{e}" for e in other.errors)
        return self


def previous_period(today: date) -> date:
    """First day of the month before today's month."""
    return (today.replace(day=1) - timedelta(days=1)).replace(day=1)


class MonitoringCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] = SessionLocal,
        max_workers: int | None = None,
    ):
        self.session_factory = session_factory
        self.max_workers = max_workers or settings.MONITOR_MAX_WORKERS

    # ── Sweep runner ─────────────────────────────────────────────────────────
    def _sweep(self, name: str, unit_ids: list[str], unit: Callable[[Session, str], str]) -> SweepSummary:
        summary = SweepSummary(name=name)

        def run(unit_id: str) -> str:
            with self.session_factory() as db:
                return unit(db, unit_id)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name) as pool:
            futures = {unit_id: pool.submit(run, unit_id) for unit_id in unit_ids}
            for unit_id, future in futures.items():
                try:
                    summary.count(future.result())
                except Exception as exc:
                    logger.exception("%s failed for %s", name, unit_id)
                    summary.fail(unit_id, exc)

        logger.info(
            "%s: processed=%d updated=%d skipped=%d errored=%d",
            name, summary.processed, summary.updated, summary.skipped, summary.errored,
        )
        return summary

    def _material_ids(self, stmt=None) -> list[str]:
        with self.session_factory() as db:
            ids = list(db.execute(stmt if stmt is not None else select(Material.id).order_by(Material.id)).scalars())
        return ids

    # ── Stock levels ─────────────────────────────────────────────────────────
    def check_stock_levels(self) -> SweepSummary:
        return self._sweep("check_stock_levels", self._material_ids(), self._stock_level_unit)

    @staticmethod
    def _stock_level_unit(db: Session, material_id: str) -> str:
        with unit_of_work(db):
            material = db.get(Material, material_id)
            if material is None:
                return SKIPPED
            # Untracked materials (no thresholds) that never held stock raise nothing.
            if material.quantity <= 0 and not material.has_thresholds:
                return SKIPPED
            changes = AlertEngine(db).evaluate_material(material)
        return UPDATED if changes else UNCHANGED

    # ── Expiry ───────────────────────────────────────────────────────────────
    def check_expiring_batches(self, window_days: int | None = None, today: date | None = None) -> SweepSummary:
        window = window_days if window_days is not None else settings.EXPIRY_WARNING_DAYS
        today = today or date.today()
        horizon = today + timedelta(days=window)

        with_batches = (
            select(StockBatch.material_id)
            .where(
                StockBatch.remaining_quantity > 0,
                StockBatch.expiry_date.is_not(None),
                StockBatch.expiry_date <= horizon,
            )
        )
        with_open_alerts = (
            select(StockAlert.material_id)
            .where(
                StockAlert.is_resolved.is_(False),
                StockAlert.alert_type.in_([t.value for t in BATCH_ALERT_TYPES]),
            )
        )
        ids = self._material_ids(with_batches.union(with_open_alerts))

        def unit(db: Session, material_id: str) -> str:
            return self._expiry_unit(db, material_id, window, today)

        return self._sweep("check_expiring_batches", sorted(ids), unit)

    @staticmethod
    def _expiry_unit(db: Session, material_id: str, window: int, today: date) -> str:
        with unit_of_work(db):
            material = db.get(Material, material_id)
            if material is None:
                return SKIPPED
            changes = AlertEngine(db).evaluate_batches(material, today)

            expiring = BatchLedger(db).classify_expiring(window, today, material_id=material_id)
            if expiring:
                record_event(db, BatchExpiryWarning(
                    material_id=material.id,
                    material_name=material.name,
                    batches=[
                        {
                            "batch_id": b.id,
                            "batch_number": b.batch_number,
                            "expiry_date": b.expiry_date.isoformat(),
                            "days_until_expiry": b.days_until_expiry(today),
                            "remaining_quantity": str(b.remaining_quantity),
                            "total_value": str(b.total_value),
                        }
                        for b in expiring
                    ],
                    total_expiring_quantity=sum((b.remaining_quantity for b in expiring), Decimal("0")),
                ))
        return UPDATED if changes else UNCHANGED

    # ── Dashboard ────────────────────────────────────────────────────────────
    def dashboard_snapshot(self, db: Session, today: date | None = None) -> dict:
        today = today or date.today()
        ledger = BatchLedger(db)

        materials = db.execute(select(Material).order_by(Material.name)).scalars().all()
        open_alerts = select(func.count(StockAlert.id)).where(StockAlert.is_resolved.is_(False))
        recent = db.execute(
            select(StockAlert)
            .where(StockAlert.is_resolved.is_(False))
            .order_by(StockAlert.created_at.desc())
            .limit(settings.DASHBOARD_RECENT_ALERTS)
        ).scalars().all()

        return {
            "total_materials": len(materials),
            "total_value": str(ledger.stock_value()),
            "low_stock_count": sum(
                1 for m in materials if 0 < m.quantity <= m.minimum_stock_level and m.minimum_stock_level > 0
            ),
            "out_of_stock_count": sum(1 for m in materials if m.quantity <= 0),
            "active_alerts": db.execute(open_alerts).scalar_one(),
            "critical_alerts": db.execute(
                open_alerts.where(StockAlert.severity == AlertSeverity.CRITICAL.value)
            ).scalar_one(),
            "expiring_batches": len(ledger.classify_expiring(settings.EXPIRY_WARNING_DAYS, today)),
            "expired_batches": len(ledger.classify_expired(today)),
            "recent_alerts": [
                {
                    "id": a.id,
                    "material_id": a.material_id,
                    "alert_type": a.alert_type,
                    "severity": a.severity,
                    "message": a.message,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in recent
            ],
            "reorder_suggestions": [
                {
                    "material_id": m.id,
                    "name": m.name,
                    "quantity": str(m.quantity),
                    "reorder_point": str(m.reorder_point),
                    "reorder_quantity": str(m.reorder_quantity),
                    "stock_unit": m.stock_unit,
                }
                for m in materials
                if m.reorder_point > 0 and m.quantity <= m.reorder_point
            ],
        }

    def broadcast_dashboard(self, update_type: str = "general", today: date | None = None) -> SweepSummary:
        summary = SweepSummary(name="broadcast_dashboard")
        try:
            with self.session_factory() as db:
                with unit_of_work(db):
                    snapshot = self.dashboard_snapshot(db, today)
                    record_event(db, DashboardChanged(update_type=update_type, dashboard_data=snapshot))
            summary.count(UPDATED)
        except Exception as exc:
            logger.exception("Dashboard broadcast failed")
            summary.fail("dashboard", exc)
        return summary

    # ── Stock history ────────────────────────────────────────────────────────
    def generate_stock_history(self, period: date | None = None) -> SweepSummary:
        """
        Close the books for one month: write start/end stock per material and
        open the next month at the current quantity. Re-running a period is a no-op.
        """
        period = (period or previous_period(date.today())).replace(day=1)

        def unit(db: Session, material_id: str) -> str:
            return self._history_unit(db, material_id, period)

        return self._sweep("generate_stock_history", self._material_ids(), unit)

    @staticmethod
    @with_optimistic_retry()
    def _history_unit(db: Session, material_id: str, period: date) -> str:
        try:
            with unit_of_work(db):
                exists = db.execute(
                    select(MaterialStockHistory.id).where(
                        MaterialStockHistory.material_id == material_id,
                        MaterialStockHistory.period_date == period,
                    )
                ).first()
                if exists:
                    return SKIPPED
                material = db.get(Material, material_id)
                if material is None:
                    return SKIPPED
                db.add(MaterialStockHistory(
                    material_id=material.id,
                    period_date=period,
                    start_stock=material.start_month_stock,
                    end_stock=material.quantity,
                ))
                material.start_month_stock = material.quantity
        except IntegrityError:
            logger.info("Stock history for %s/%s written concurrently", material_id, period)
            return SKIPPED
        return UPDATED

    # ── Everything ───────────────────────────────────────────────────────────
    def run_monitoring(self, today: date | None = None) -> SweepSummary:
        summary = SweepSummary(name="monitor")
        summary.merge(self.check_stock_levels())
        summary.merge(self.check_expiring_batches(today=today))
        summary.merge(self.broadcast_dashboard("monitoring", today=today))
        return summary
