from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_db
from unitrack.app.db.models.core_types import LocationType
from unitrack.app.db.models.models_v1 import Location

router = APIRouter(prefix="/locations")


@router.get("")
def list_locations(
    store_id: UUID | None = None,
    type: LocationType | None = None,
    active_only: bool = True,
    db: Session = Depends(get_db),
):
    stmt = select(Location).order_by(Location.store_id, Location.name)
    if store_id is not None:
        stmt = stmt.where(Location.store_id == store_id)
    if type is not None:
        stmt = stmt.where(Location.type == type)
    if active_only:
        stmt = stmt.where(Location.active.is_(True))

    rows = db.execute(stmt).scalars().all()
    return [
        {
            "id": l.id,
            "store_id": l.store_id,
            "name": l.name,
            "type": l.type,
            "active": l.active,
        }
        for l in rows
    ]
