from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_catalog, get_db, get_registry, get_settings
from unitrack.app.core.config import Settings
from unitrack.app.db.models.models_v1 import IDEMPOTENCY_KEY_LENGTH, Location, StaffUser
from unitrack.app.schemas.units import ScanRecordRead, UnitRead
from unitrack.services.tier_catalog import TierCatalog, tracking_url
from unitrack.services.unit_registry import MAX_BULK_UNITS, ScanContext, UnitRegistry, label_data

router = APIRouter(prefix="/units")


# ---------- Schemas ----------
class UnitCreate(BaseModel):
    store_id: UUID
    template_id: UUID
    tier_id: str = Field(min_length=1)
    product_id: UUID
    location_id: UUID
    user_id: UUID
    quantity: Decimal | None = Field(default=None, gt=0)
    batch_number: str | None = Field(default=None, max_length=64)
    bin_location: str | None = Field(default=None, max_length=64)
    notes: str | None = None


class UnitBulkCreate(UnitCreate):
    count: int = Field(ge=1, le=MAX_BULK_UNITS)


def _register(
    payload: UnitCreate,
    count: int,
    idempotency_key: str | None,
    db: Session,
    catalog: TierCatalog,
    registry: UnitRegistry,
):
    location = db.get(Location, payload.location_id)
    if not location or location.store_id != payload.store_id:
        raise HTTPException(status_code=404, detail="Location not found")
    user = db.get(StaffUser, payload.user_id)
    if not user or user.store_id != payload.store_id:
        raise HTTPException(status_code=404, detail="User not found")

    template = catalog.get_template(db, payload.template_id)
    units, replayed = registry.register(
        db,
        template=template,
        tier=template.tier(payload.tier_id),
        product_id=payload.product_id,
        ctx=ScanContext(location=location, user=user, notes=payload.notes),
        count=count,
        quantity=payload.quantity,
        batch_number=payload.batch_number,
        bin_location=payload.bin_location,
        idempotency_key=idempotency_key.strip() if idempotency_key else None,
    )
    db.commit()
    return units, replayed


# ---------- Endpoints ----------
@router.post("", status_code=201)
def create_unit(
    payload: UnitCreate,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=IDEMPOTENCY_KEY_LENGTH),
):
    [unit], replayed = _register(payload, 1, idempotency_key, db, catalog, registry)
    return {
        "unit": UnitRead.model_validate(unit),
        "label": label_data(unit, settings.qr_tracking_domain),
        "replayed": replayed,
    }


@router.post("/bulk", status_code=201)
def create_units_bulk(
    payload: UnitBulkCreate,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=IDEMPOTENCY_KEY_LENGTH),
):
    units, replayed = _register(payload, payload.count, idempotency_key, db, catalog, registry)
    return {
        "units": [UnitRead.model_validate(u) for u in units],
        "labels": [label_data(u, settings.qr_tracking_domain) for u in units],
        "replayed": replayed,
    }


@router.get("")
def list_available_units(
    product_id: UUID,
    store_id: UUID,
    location_id: UUID | None = None,
    tier_id: list[str] | None = Query(default=None),
    db: Session = Depends(get_db),
    registry: UnitRegistry = Depends(get_registry),
):
    units = registry.available_units(
        db,
        product_id=product_id,
        store_id=store_id,
        location_id=location_id,
        tier_ids=tier_id,
    )
    return [UnitRead.model_validate(u) for u in units]


@router.get("/{qr_code}")
def get_unit(
    qr_code: str,
    store_id: UUID | None = None,
    db: Session = Depends(get_db),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    unit = registry.lookup(db, qr_code, store_id)
    return {
        "unit": UnitRead.model_validate(unit),
        "lineage": [UnitRead.model_validate(u) for u in registry.lineage(db, unit)],
        "children": [UnitRead.model_validate(u) for u in registry.children(db, unit)],
        "scan_history": [ScanRecordRead.model_validate(s) for s in registry.history(db, unit)],
        "tracking_url": tracking_url(unit.qr_code, settings.qr_tracking_domain),
    }


@router.get("/{qr_code}/label")
def get_unit_label(
    qr_code: str,
    store_id: UUID | None = None,
    db: Session = Depends(get_db),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    unit = registry.lookup(db, qr_code, store_id)
    return label_data(unit, settings.qr_tracking_domain)
