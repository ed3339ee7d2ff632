"""
Réconciliation : écarts de comptage, historiques, vérification de la trace.

Lecture seule : ce module ne modifie jamais une unité ni un transfert.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from unitrack.app.core.config import Settings
from unitrack.app.core.logging_config import get_logger
from unitrack.app.db.models.core_types import ItemCondition, OperationStatus, ScanOperation
from unitrack.app.db.models.models_v1 import (
    AuditLog,
    InventoryTransfer,
    ScanRecord,
    TransferReceipt,
)
from unitrack.services.errors import InvalidTransitionError, NotFoundError
from unitrack.services.transitions import QUANTITY_STEP, compute_record_hash, fold_scan_history
from unitrack.services.unit_registry import UnitRegistry

logger = get_logger("services.reconciliation")

TRANSFER_ENTITY = "inventory_transfer"


def _as_utc(value: datetime) -> datetime:
    # SQLite rend des datetimes naïfs (UTC)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class VarianceResult:
    expected: Decimal
    actual: Decimal
    delta: Decimal
    tolerance: Decimal
    is_discrepancy: bool


def variance(expected: Decimal, actual: Decimal, tolerance: Decimal | None = None) -> VarianceResult:
    """delta = actual - expected ; écart si |delta| > tolérance."""
    expected = Decimal(expected).quantize(QUANTITY_STEP)
    actual = Decimal(actual).quantize(QUANTITY_STEP)
    tolerance = Decimal(tolerance or 0)
    delta = actual - expected
    return VarianceResult(
        expected=expected,
        actual=actual,
        delta=delta,
        tolerance=tolerance,
        is_discrepancy=abs(delta) > tolerance,
    )


@dataclass
class ChainVerification:
    qr_code: str
    record_count: int
    head_hash: str | None
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class ReconciliationEngine:
    def __init__(self, registry: UnitRegistry, settings: Settings):
        self.registry = registry
        self.settings = settings

    def variance(self, expected: Decimal, actual: Decimal, tolerance: Decimal | None = None) -> VarianceResult:
        if tolerance is None:
            tolerance = self.settings.audit_variance_tolerance
        return variance(expected, actual, tolerance)

    # ---------- Unités ----------
    def unit_history(self, db: Session, qr_code: str, store_id: uuid.UUID | None = None) -> list[ScanRecord]:
        unit = self.registry.lookup(db, qr_code, store_id)
        return self.registry.history(db, unit)

    def verify_unit(self, db: Session, qr_code: str, store_id: uuid.UUID | None = None) -> ChainVerification:
        """
        Recalcule la chaîne de hachage et rejoue l'historique.

        Détecte : trou de séquence, lien prev_hash rompu, empreinte altérée,
        transition illégale, projection ``inventory_units`` divergente.
        """
        unit = self.registry.lookup(db, qr_code, store_id)
        records = self.registry.history(db, unit)
        result = ChainVerification(
            qr_code=unit.qr_code,
            record_count=len(records),
            head_hash=records[-1].record_hash if records else None,
        )

        prev_hash = None
        for expected_sequence, record in enumerate(records, start=1):
            if record.sequence != expected_sequence:
                result.errors.append(f"sequence gap: expected #{expected_sequence}, found #{record.sequence}")
            if record.prev_hash != prev_hash:
                result.errors.append(f"scan #{record.sequence}: prev_hash does not link to scan #{record.sequence - 1}")
            if compute_record_hash(record, record.prev_hash) != record.record_hash:
                result.errors.append(f"scan #{record.sequence}: record_hash mismatch")
            prev_hash = record.record_hash

        try:
            state = fold_scan_history(records)
        except InvalidTransitionError as exc:
            result.errors.append(f"history replay failed: {exc.message}")
            state = None

        if state is not None:
            if state.status != unit.status:
                result.errors.append(f"projected status {unit.status.value} != replayed {state.status.value}")
            if state.location_id != unit.current_location_id:
                result.errors.append("projected location differs from replayed location")
            if state.bin_location != unit.bin_location:
                result.errors.append("projected bin differs from replayed bin")
            if state.quantity != Decimal(unit.quantity).quantize(QUANTITY_STEP):
                result.errors.append(f"projected quantity {unit.quantity} != replayed {state.quantity}")
        elif not records:
            result.errors.append("unit has no scan history")

        if not result.valid:
            logger.warning("unit_chain_invalid", extra={"qr_code": unit.qr_code, "errors": result.errors})
        return result

    def audit_report(
        self,
        db: Session,
        store_id: uuid.UUID,
        location_id: uuid.UUID | None = None,
        since: datetime | None = None,
        discrepancies_only: bool = False,
    ) -> list[ScanRecord]:
        stmt = (
            select(ScanRecord)
            .where(ScanRecord.store_id == store_id)
            .where(ScanRecord.operation == ScanOperation.audit)
        )
        if location_id is not None:
            stmt = stmt.where(ScanRecord.location_id == location_id)
        if since is not None:
            stmt = stmt.where(ScanRecord.scanned_at >= since)
        if discrepancies_only:
            stmt = stmt.where(ScanRecord.operation_status == OperationStatus.discrepancy)
        stmt = stmt.order_by(ScanRecord.scanned_at.asc(), ScanRecord.sequence.asc())
        return list(db.execute(stmt).scalars().all())

    # ---------- Transferts ----------
    def _transfer(self, db: Session, transfer_id: uuid.UUID) -> InventoryTransfer:
        transfer = db.get(InventoryTransfer, transfer_id)
        if not transfer:
            raise NotFoundError("InventoryTransfer", transfer_id)
        return transfer

    def transfer_history(self, db: Session, transfer_id: uuid.UUID) -> list[dict[str, Any]]:
        """Cycle de vie (audit_log) + lots reçus, ordonnés dans le temps."""
        transfer = self._transfer(db, transfer_id)

        events: list[dict[str, Any]] = []
        logs = db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == TRANSFER_ENTITY)
            .where(AuditLog.entity_id == str(transfer.id))
            .order_by(AuditLog.created_at.asc())
        ).scalars()
        for log in logs:
            events.append(
                {
                    "at": log.created_at,
                    "kind": "lifecycle",
                    "action": log.action,
                    "actor_id": log.actor_id,
                    "details": json.loads(log.meta) if log.meta else {},
                }
            )

        receipts = db.execute(
            select(TransferReceipt)
            .where(TransferReceipt.transfer_id == transfer.id)
            .order_by(TransferReceipt.received_at.asc())
        ).scalars()
        for receipt in receipts:
            events.append(
                {
                    "at": receipt.received_at,
                    "kind": "receipt",
                    "action": "received",
                    "actor_id": receipt.received_by_user_id,
                    "details": {
                        "item_id": str(receipt.item_id),
                        "quantity": str(receipt.quantity),
                        "condition": receipt.condition.value,
                        "notes": receipt.notes,
                    },
                }
            )

        # à horodatage égal, les lots précèdent le cycle de vie (la clôture suit le dernier lot)
        events.sort(key=lambda e: (_as_utc(e["at"]), 0 if e["kind"] == "receipt" else 1))
        return events

    def transfer_discrepancies(self, db: Session, transfer_id: uuid.UUID) -> list[dict[str, Any]]:
        transfer = self._transfer(db, transfer_id)
        rows = []
        for item in transfer.items:
            by_condition: dict[str, Decimal] = {c.value: Decimal("0") for c in ItemCondition}
            for receipt in item.receipts:
                by_condition[receipt.condition.value] += Decimal(receipt.quantity)
            requested = Decimal(item.quantity)
            received = Decimal(item.received_quantity or 0)
            non_good = sum(
                (qty for cond, qty in by_condition.items() if cond != ItemCondition.good.value),
                Decimal("0"),
            )
            rows.append(
                {
                    "item_id": item.id,
                    "product_id": item.product_id,
                    "requested": requested,
                    "received": received,
                    "pending": item.pending_quantity,
                    "over_received": max(Decimal("0"), received - requested),
                    "non_good": non_good,
                    "by_condition": by_condition,
                    "condition": item.condition.value if item.condition else None,
                    "has_discrepancy": received != requested or non_good > 0,
                }
            )
        return rows
