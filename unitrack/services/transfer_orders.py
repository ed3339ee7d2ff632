"""
Transferts inter-emplacements (niveau lot, plusieurs lignes produit).

Cycle de vie :
    draft -> approved -> in_transit -> completed
       \\________\\___________\\-> cancelled

Réception partielle et incrémentale : chaque lot reçu est un TransferReceipt
(quantité + état) ; le transfert passe à ``completed`` dès que toutes les
lignes sont intégralement reçues.

Chaque lot reçu déplace aussi le stock agrégé (StockLevel) de la source
vers la destination et journalise les deux mouvements (StockTransaction).

Le manager flush mais ne commit jamais : l'appelant possède la transaction.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from unitrack.app.core.config import Settings
from unitrack.app.core.logging_config import get_logger
from unitrack.app.db.models.core_types import ItemCondition, TransferStatus
from unitrack.app.db.models.models_v1 import (
    IDEMPOTENCY_KEY_LENGTH,
    AuditLog,
    InventoryTransfer,
    InventoryTransferItem,
    Location,
    StockLevel,
    StockTransaction,
    TransferReceipt,
    TransferSequence,
    utcnow,
)
from unitrack.services.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

logger = get_logger("services.transfer_orders")

TRANSFER_ENTITY = "inventory_transfer"
TRANSFER_QR_PREFIX = "P"

# plus grave = plus grand ; l'état d'une ligne est le pire lot reçu
CONDITION_SEVERITY = {
    ItemCondition.good: 0,
    ItemCondition.damaged: 1,
    ItemCondition.expired: 2,
    ItemCondition.rejected: 3,
}

OPEN_STATUSES = frozenset({TransferStatus.draft, TransferStatus.approved, TransferStatus.in_transit})


@dataclass(frozen=True)
class TransferLine:
    product_id: uuid.UUID
    quantity: Decimal


@dataclass(frozen=True)
class ReceiptLine:
    item_id: uuid.UUID
    quantity: Decimal
    condition: ItemCondition = ItemCondition.good
    notes: str | None = None
    idempotency_key: str | None = None


def worst_condition(current: ItemCondition | None, new: ItemCondition) -> ItemCondition:
    if current is None:
        return new
    return new if CONDITION_SEVERITY[new] > CONDITION_SEVERITY[current] else current


def _same_request(
    transfer: InventoryTransfer,
    store_id: uuid.UUID,
    source_location_id: uuid.UUID,
    destination_location_id: uuid.UUID,
    lines: list[TransferLine],
) -> bool:
    if (
        transfer.store_id != store_id
        or transfer.source_location_id != source_location_id
        or transfer.destination_location_id != destination_location_id
    ):
        return False
    stored = sorted((str(i.product_id), Decimal(i.quantity)) for i in transfer.items)
    asked = sorted((str(l.product_id), Decimal(l.quantity)) for l in lines)
    return stored == asked


class TransferOrderManager:
    def __init__(self, settings: Settings):
        self.settings = settings

    # ---------- Lecture ----------
    def get(self, db: Session, transfer_id: uuid.UUID, *, for_update: bool = False) -> InventoryTransfer:
        stmt = select(InventoryTransfer).where(InventoryTransfer.id == transfer_id)
        if for_update:
            stmt = stmt.with_for_update()
        transfer = db.execute(stmt).scalar_one_or_none()
        if not transfer:
            raise NotFoundError("InventoryTransfer", transfer_id)
        return transfer

    def lookup_by_qr(self, db: Session, code: str) -> InventoryTransfer:
        """Étiquette de transfert : ``P<uuid>``."""
        code = (code or "").strip()
        if not code.startswith(TRANSFER_QR_PREFIX):
            raise ValidationError(f"Not a transfer QR code: {code!r}")
        try:
            transfer_id = uuid.UUID(code[len(TRANSFER_QR_PREFIX):])
        except ValueError as exc:
            raise ValidationError(f"Malformed transfer QR code: {code!r}") from exc
        return self.get(db, transfer_id)

    def list_transfers(
        self,
        db: Session,
        store_id: uuid.UUID,
        *,
        status: TransferStatus | None = None,
        location_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[InventoryTransfer]:
        stmt = select(InventoryTransfer).where(InventoryTransfer.store_id == store_id)
        if status is not None:
            stmt = stmt.where(InventoryTransfer.status == status)
        if location_id is not None:
            stmt = stmt.where(
                (InventoryTransfer.source_location_id == location_id)
                | (InventoryTransfer.destination_location_id == location_id)
            )
        stmt = stmt.order_by(InventoryTransfer.created_at.desc()).limit(limit)
        return list(db.execute(stmt).scalars().all())

    # ---------- Création ----------
    def next_transfer_number(self, db: Session, store_id: uuid.UUID) -> str:
        seq = db.execute(
            select(TransferSequence).where(TransferSequence.store_id == store_id).with_for_update()
        ).scalar_one_or_none()
        if seq is None:
            seq = TransferSequence(store_id=store_id, current_value=0)
            db.add(seq)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(f"Transfer sequence for store {store_id} created concurrently") from exc
        seq.current_value += 1
        db.flush()
        return f"{self.settings.transfer_number_prefix}-{seq.current_value:06d}"

    def _location(self, db: Session, location_id: uuid.UUID, store_id: uuid.UUID) -> Location:
        location = db.get(Location, location_id)
        if not location or location.store_id != store_id:
            raise NotFoundError("Location", location_id)
        return location

    def create(
        self,
        db: Session,
        *,
        store_id: uuid.UUID,
        source_location_id: uuid.UUID,
        destination_location_id: uuid.UUID,
        items: Iterable[TransferLine],
        notes: str | None = None,
        created_by_user_id: uuid.UUID | None = None,
        idempotency_key: str | None = None,
    ) -> InventoryTransfer:
        lines = list(items)
        if idempotency_key:
            if len(idempotency_key) > IDEMPOTENCY_KEY_LENGTH:
                raise ValidationError(f"Idempotency-Key longer than {IDEMPOTENCY_KEY_LENGTH} characters")
            existing = db.execute(
                select(InventoryTransfer).where(InventoryTransfer.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if existing:
                if not _same_request(existing, store_id, source_location_id, destination_location_id, lines):
                    raise ValidationError(f"Idempotency-Key {idempotency_key} was already used for another transfer")
                return existing

        if source_location_id == destination_location_id:
            raise ValidationError("source and destination locations must differ")
        self._location(db, source_location_id, store_id)
        self._location(db, destination_location_id, store_id)

        if not lines:
            raise ValidationError("A transfer needs at least one item")
        seen: set[uuid.UUID] = set()
        for line in lines:
            if Decimal(line.quantity) <= 0:
                raise ValidationError(f"Item quantity must be positive (product {line.product_id})")
            if line.product_id in seen:
                raise ValidationError(f"Duplicate product in transfer: {line.product_id}")
            seen.add(line.product_id)

        transfer = InventoryTransfer(
            store_id=store_id,
            transfer_number=self.next_transfer_number(db, store_id),
            source_location_id=source_location_id,
            destination_location_id=destination_location_id,
            status=TransferStatus.draft,
            notes=notes,
            idempotency_key=idempotency_key,
            created_by_user_id=created_by_user_id,
        )
        for line in lines:
            transfer.items.append(
                InventoryTransferItem(
                    product_id=line.product_id,
                    quantity=Decimal(line.quantity),
                    received_quantity=Decimal("0"),
                )
            )
        db.add(transfer)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError("Transfer created concurrently with the same key or number") from exc

        self._audit(db, created_by_user_id, "created", transfer, items=len(lines))
        logger.info(
            "transfer_created",
            extra={"transfer_id": transfer.id, "transfer_number": transfer.transfer_number, "items": len(lines)},
        )
        return transfer

    # ---------- Cycle de vie ----------
    def _move(
        self,
        db: Session,
        transfer_id: uuid.UUID,
        *,
        allowed_from: frozenset[TransferStatus],
        target: TransferStatus,
    ) -> tuple[InventoryTransfer, bool]:
        """Retourne (transfert, changé?). Déjà dans l'état cible = rejeu sans effet."""
        transfer = self.get(db, transfer_id, for_update=True)
        if transfer.status == target:
            return transfer, False
        if transfer.status not in allowed_from:
            raise InvalidTransitionError(
                f"Transfer {transfer.transfer_number} is {transfer.status.value}; cannot become {target.value}",
                from_status=transfer.status.value,
                to_status=target.value,
            )
        transfer.status = target
        return transfer, True

    def approve(self, db: Session, transfer_id: uuid.UUID, user_id: uuid.UUID | None) -> InventoryTransfer:
        transfer, changed = self._move(
            db, transfer_id, allowed_from=frozenset({TransferStatus.draft}), target=TransferStatus.approved
        )
        if changed:
            transfer.approved_at = utcnow()
            transfer.approved_by_user_id = user_id
            self._audit(db, user_id, "approved", transfer)
            db.flush()
        return transfer

    def ship(
        self,
        db: Session,
        transfer_id: uuid.UUID,
        user_id: uuid.UUID | None,
        tracking_number: str | None = None,
    ) -> InventoryTransfer:
        transfer, changed = self._move(
            db, transfer_id, allowed_from=frozenset({TransferStatus.approved}), target=TransferStatus.in_transit
        )
        if changed:
            transfer.shipped_at = utcnow()
            if tracking_number:
                transfer.tracking_number = tracking_number
            self._audit(db, user_id, "shipped", transfer, tracking_number=tracking_number)
            db.flush()
        return transfer

    def cancel(
        self,
        db: Session,
        transfer_id: uuid.UUID,
        user_id: uuid.UUID | None,
        reason: str | None = None,
    ) -> InventoryTransfer:
        transfer, changed = self._move(db, transfer_id, allowed_from=OPEN_STATUSES, target=TransferStatus.cancelled)
        if changed:
            transfer.cancelled_at = utcnow()
            transfer.cancelled_by_user_id = user_id
            if reason:
                transfer.notes = f"{transfer.notes}\n{reason}" if transfer.notes else reason
            self._audit(db, user_id, "cancelled", transfer, reason=reason)
            db.flush()
            logger.info("transfer_cancelled", extra={"transfer_id": transfer.id})
        return transfer

    # ---------- Réception ----------
    def receive_item(
        self,
        db: Session,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
        quantity: Decimal,
        condition: ItemCondition = ItemCondition.good,
        notes: str | None = None,
        user_id: uuid.UUID | None = None,
        idempotency_key: str | None = None,
    ) -> InventoryTransferItem:
        transfer = self.get(db, transfer_id, for_update=True)
        item = self._receive_line(
            db,
            transfer,
            ReceiptLine(
                item_id=item_id,
                quantity=quantity,
                condition=condition,
                notes=notes,
                idempotency_key=idempotency_key,
            ),
            user_id,
        )
        self._complete_if_received(db, transfer, user_id)
        return item

    def receive_items(
        self,
        db: Session,
        transfer_id: uuid.UUID,
        lines: Iterable[ReceiptLine],
        user_id: uuid.UUID | None = None,
    ) -> InventoryTransfer:
        """Plusieurs lots dans la même transaction ; un lot refusé annule tout (rollback appelant)."""
        transfer = self.get(db, transfer_id, for_update=True)
        lines = list(lines)
        if not lines:
            raise ValidationError("No receipt lines given")
        for line in lines:
            self._receive_line(db, transfer, line, user_id)
        self._complete_if_received(db, transfer, user_id)
        return transfer

    def _receive_line(
        self,
        db: Session,
        transfer: InventoryTransfer,
        line: ReceiptLine,
        user_id: uuid.UUID | None,
    ) -> InventoryTransferItem:
        item = next((i for i in transfer.items if i.id == line.item_id), None)
        if item is None:
            raise NotFoundError("InventoryTransferItem", line.item_id)
        try:
            condition = ItemCondition(line.condition)
        except ValueError as exc:
            raise ValidationError(f"Unknown item condition: {line.condition!r}") from exc
        if line.idempotency_key and len(line.idempotency_key) > IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(f"Idempotency-Key longer than {IDEMPOTENCY_KEY_LENGTH} characters")

        if line.idempotency_key:
            existing = db.execute(
                select(TransferReceipt).where(TransferReceipt.idempotency_key == line.idempotency_key)
            ).scalar_one_or_none()
            if existing:
                if (
                    existing.transfer_id != transfer.id
                    or existing.item_id != item.id
                    or Decimal(existing.quantity) != Decimal(line.quantity)
                    or existing.condition != condition
                ):
                    raise ValidationError(
                        f"Idempotency-Key {line.idempotency_key} was already used for a different receipt"
                    )
                return item

        if transfer.status != TransferStatus.in_transit:
            raise InvalidTransitionError(
                f"Transfer {transfer.transfer_number} is {transfer.status.value}; only in_transit transfers receive",
                from_status=transfer.status.value,
            )

        quantity = Decimal(line.quantity)
        if quantity <= 0:
            raise ValidationError(f"Received quantity must be positive ({quantity})")

        received = Decimal(item.received_quantity or 0) + quantity
        if received > Decimal(item.quantity) and not self.settings.allow_over_receipt:
            raise ValidationError(
                f"Over-receipt on item {item.id}: {received} > {item.quantity}",
                item_id=str(item.id),
                pending=str(item.pending_quantity),
            )

        receipt = TransferReceipt(
            transfer_id=transfer.id,
            quantity=quantity,
            condition=condition,
            notes=line.notes,
            received_by_user_id=user_id,
            idempotency_key=line.idempotency_key,
        )
        item.receipts.append(receipt)
        item.received_quantity = received
        item.condition = worst_condition(item.condition, condition)
        if line.notes:
            item.condition_notes = f"{item.condition_notes}\n{line.notes}" if item.condition_notes else line.notes
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(f"Receipt {line.idempotency_key} recorded concurrently") from exc
        self._move_stock(db, transfer, item.product_id, receipt, user_id)

        logger.info(
            "transfer_item_received",
            extra={
                "transfer_id": transfer.id,
                "item_id": item.id,
                "quantity": quantity,
                "condition": condition,
                "received_quantity": received,
            },
        )
        return item

    # ---------- Stock agrégé ----------
    def _stock_level(
        self,
        db: Session,
        store_id: uuid.UUID,
        product_id: uuid.UUID,
        location_id: uuid.UUID,
        *,
        create: bool,
    ) -> StockLevel | None:
        level = (
            db.execute(
                select(StockLevel)
                .where(StockLevel.product_id == product_id)
                .where(StockLevel.location_id == location_id)
                .with_for_update()
            )
            .scalar_one_or_none()
        )
        if level is None and create:
            level = StockLevel(product_id=product_id, location_id=location_id, store_id=store_id, qty_on_hand=Decimal("0"))
            db.add(level)
            db.flush()
        return level

    def _move_stock(
        self,
        db: Session,
        transfer: InventoryTransfer,
        product_id: uuid.UUID,
        receipt: TransferReceipt,
        user_id: uuid.UUID | None,
    ) -> None:
        """
        Un lot reçu sort du stock source et entre au stock destination.

        Source sans ligne de stock : rien à déduire (produit non suivi en
        agrégé à la source). La source ne descend jamais sous zéro ; le
        journal enregistre la variation réellement appliquée.
        """
        quantity = Decimal(receipt.quantity)
        source = self._stock_level(db, transfer.store_id, product_id, transfer.source_location_id, create=False)
        if source is not None:
            before = Decimal(source.qty_on_hand)
            source.qty_on_hand = max(Decimal("0"), before - quantity)
            self._log_stock(
                db, transfer, source, "transfer_out", before, receipt, user_id, "Transfer to destination"
            )

        destination = self._stock_level(
            db, transfer.store_id, product_id, transfer.destination_location_id, create=True
        )
        before = Decimal(destination.qty_on_hand)
        destination.qty_on_hand = before + quantity
        self._log_stock(
            db, transfer, destination, "transfer_in", before, receipt, user_id, "Transfer from source"
        )
        db.flush()

    def _log_stock(
        self,
        db: Session,
        transfer: InventoryTransfer,
        level: StockLevel,
        transaction_type: str,
        before: Decimal,
        receipt: TransferReceipt,
        user_id: uuid.UUID | None,
        reason: str,
    ) -> None:
        after = Decimal(level.qty_on_hand)
        db.add(
            StockTransaction(
                store_id=transfer.store_id,
                location_id=level.location_id,
                product_id=level.product_id,
                transaction_type=transaction_type,
                quantity_before=before,
                quantity_change=after - before,
                quantity_after=after,
                reason=reason,
                reference_type=TRANSFER_ENTITY,
                reference_id=str(transfer.id),
                receipt_id=receipt.id,
                performed_by_user_id=user_id,
            )
        )

    def stock_on_hand(self, db: Session, product_id: uuid.UUID, location_id: uuid.UUID) -> Decimal:
        level = db.get(StockLevel, (product_id, location_id))
        return Decimal(level.qty_on_hand) if level else Decimal("0")

    def stock_transactions(self, db: Session, transfer_id: uuid.UUID) -> list[StockTransaction]:
        transfer = self.get(db, transfer_id)
        return list(
            db.execute(
                select(StockTransaction)
                .where(StockTransaction.reference_type == TRANSFER_ENTITY)
                .where(StockTransaction.reference_id == str(transfer.id))
                .order_by(StockTransaction.created_at.asc(), StockTransaction.transaction_type.desc())
            )
            .scalars()
            .all()
        )

    def _complete_if_received(self, db: Session, transfer: InventoryTransfer, user_id: uuid.UUID | None) -> None:
        if transfer.status != TransferStatus.in_transit or not transfer.is_fully_received:
            return
        transfer.status = TransferStatus.completed
        transfer.received_at = utcnow()
        transfer.received_by_user_id = user_id
        self._audit(db, user_id, "completed", transfer)
        db.flush()
        logger.info(
            "transfer_completed",
            extra={"transfer_id": transfer.id, "transfer_number": transfer.transfer_number},
        )

    def _audit(
        self,
        db: Session,
        actor_id: uuid.UUID | None,
        action: str,
        transfer: InventoryTransfer,
        **meta: Any,
    ) -> None:
        meta = {"status": transfer.status.value, **{k: v for k, v in meta.items() if v is not None}}
        db.add(
            AuditLog(
                actor_id=actor_id,
                action=action,
                entity_type=TRANSFER_ENTITY,
                entity_id=str(transfer.id),
                meta=json.dumps(meta, default=str),
            )
        )
        db.flush()
