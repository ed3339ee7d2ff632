from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from unitrack.app.core.logging_config import configure_logging, get_logger
from unitrack.app.db.session import SessionLocal
from unitrack.app.db.models.models_v1 import Location, StaffUser, TierTemplate
from unitrack.app.db.models.core_types import LocationType, Role
from unitrack.services.tier_catalog import default_flower_tiers

logger = get_logger("db.seed")

# Identifiants fixes : le seed est rejouable sans doublons
DEMO_STORE_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
FLOWER_CATEGORY_ID = uuid.UUID("00000000-0000-4000-8000-0000000000f1")

DEMO_LOCATIONS = (
    ("Central Warehouse", LocationType.warehouse),
    ("North Distribution", LocationType.distribution),
    ("Downtown Store", LocationType.retail),
)
DEMO_STAFF = (
    ("ADMIN", Role.admin),
    ("Floor Manager", Role.manager),
    ("Receiver", Role.staff),
)


def seed(db: Session, store_id: uuid.UUID = DEMO_STORE_ID) -> dict[str, int]:
    created = {"locations": 0, "staff": 0, "templates": 0}

    for name, loc_type in DEMO_LOCATIONS:
        exists = db.scalar(select(Location).where(Location.store_id == store_id, Location.name == name))
        if not exists:
            db.add(Location(store_id=store_id, name=name, type=loc_type, active=True))
            created["locations"] += 1

    for name, role in DEMO_STAFF:
        exists = db.scalar(select(StaffUser).where(StaffUser.store_id == store_id, StaffUser.name == name))
        if not exists:
            db.add(StaffUser(store_id=store_id, name=name, role=role, active=True))
            created["staff"] += 1

    template = db.scalar(
        select(TierTemplate).where(TierTemplate.store_id == store_id, TierTemplate.slug == "flower")
    )
    if not template:
        db.add(
            TierTemplate(
                store_id=store_id,
                category_id=FLOWER_CATEGORY_ID,
                name="Flower",
                slug="flower",
                description="lb -> half/quarter pound -> ounce -> eighth",
                tiers=default_flower_tiers(),
                base_unit="g",
                track_individual_units=True,
                # lb -> qp (4 x 112 g) et hp -> oz (8 x 28 g) laissent un reste
                allow_partial_conversion=True,
            )
        )
        created["templates"] += 1

    db.commit()
    return created


def run_seed():
    configure_logging(json_output=False)
    db = SessionLocal()
    try:
        created = seed(db)
        logger.info("seed_done", extra={"store_id": DEMO_STORE_ID, **created})
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
