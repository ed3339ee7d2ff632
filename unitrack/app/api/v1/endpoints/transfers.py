from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_db, get_transfer_manager
from unitrack.app.db.models.core_types import ItemCondition, TransferStatus
from unitrack.app.db.models.models_v1 import IDEMPOTENCY_KEY_LENGTH
from unitrack.app.schemas.transfers import StockTransactionRead, TransferItemRead, TransferRead
from unitrack.services.transfer_orders import ReceiptLine, TransferLine, TransferOrderManager

router = APIRouter(prefix="/transfers")


# ---------- Schemas ----------
class TransferItemCreate(BaseModel):
    product_id: UUID
    quantity: Decimal = Field(gt=0)


class TransferCreate(BaseModel):
    store_id: UUID
    source_location_id: UUID
    destination_location_id: UUID
    items: list[TransferItemCreate] = Field(min_length=1)
    notes: str | None = None
    created_by_user_id: UUID | None = None


class TransferAction(BaseModel):
    user_id: UUID | None = None


class TransferShip(TransferAction):
    tracking_number: str | None = None


class TransferCancel(TransferAction):
    reason: str | None = None


class ReceiptCreate(BaseModel):
    item_id: UUID
    quantity: Decimal = Field(gt=0)
    condition: ItemCondition = ItemCondition.good
    notes: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=IDEMPOTENCY_KEY_LENGTH)


class TransferReceive(TransferAction):
    lines: list[ReceiptCreate] = Field(min_length=1)


# ---------- Endpoints ----------
@router.post("", status_code=201)
def create_transfer(
    payload: TransferCreate,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=IDEMPOTENCY_KEY_LENGTH),
):
    transfer = manager.create(
        db,
        store_id=payload.store_id,
        source_location_id=payload.source_location_id,
        destination_location_id=payload.destination_location_id,
        items=[TransferLine(product_id=i.product_id, quantity=i.quantity) for i in payload.items],
        notes=payload.notes,
        created_by_user_id=payload.created_by_user_id,
        idempotency_key=idempotency_key.strip() if idempotency_key else None,
    )
    db.commit()
    return TransferRead.model_validate(transfer)


@router.get("")
def list_transfers(
    store_id: UUID,
    status: TransferStatus | None = None,
    location_id: UUID | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    rows = manager.list_transfers(db, store_id, status=status, location_id=location_id, limit=limit)
    return [TransferRead.model_validate(t) for t in rows]


@router.get("/qr/{code}")
def get_transfer_by_qr(
    code: str,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    return TransferRead.model_validate(manager.lookup_by_qr(db, code))


@router.get("/{transfer_id}")
def get_transfer(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    return TransferRead.model_validate(manager.get(db, transfer_id))


@router.get("/{transfer_id}/stock-transactions")
def list_stock_transactions(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    return [StockTransactionRead.model_validate(t) for t in manager.stock_transactions(db, transfer_id)]


@router.post("/{transfer_id}/approve")
def approve_transfer(
    transfer_id: UUID,
    payload: TransferAction,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    transfer = manager.approve(db, transfer_id, payload.user_id)
    db.commit()
    return TransferRead.model_validate(transfer)


@router.post("/{transfer_id}/ship")
def ship_transfer(
    transfer_id: UUID,
    payload: TransferShip,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    transfer = manager.ship(db, transfer_id, payload.user_id, tracking_number=payload.tracking_number)
    db.commit()
    return TransferRead.model_validate(transfer)


@router.post("/{transfer_id}/receive")
def receive_transfer(
    transfer_id: UUID,
    payload: TransferReceive,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    transfer = manager.receive_items(
        db,
        transfer_id,
        [
            ReceiptLine(
                item_id=line.item_id,
                quantity=line.quantity,
                condition=line.condition,
                notes=line.notes,
                idempotency_key=line.idempotency_key,
            )
            for line in payload.lines
        ],
        user_id=payload.user_id,
    )
    db.commit()
    return {
        "transfer": TransferRead.model_validate(transfer),
        "items": [TransferItemRead.model_validate(i) for i in transfer.items],
    }


@router.post("/{transfer_id}/cancel")
def cancel_transfer(
    transfer_id: UUID,
    payload: TransferCancel,
    db: Session = Depends(get_db),
    manager: TransferOrderManager = Depends(get_transfer_manager),
):
    transfer = manager.cancel(db, transfer_id, payload.user_id, reason=payload.reason)
    db.commit()
    return TransferRead.model_validate(transfer)
