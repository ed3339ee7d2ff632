import uuid
from dataclasses import dataclass
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from unitrack.app.core.config import Settings
from unitrack.app.db.base import Base
from unitrack.app.db.models import models_v1  # noqa: F401  (enregistre les tables)
from unitrack.app.db.models.core_types import LocationType, Role
from unitrack.app.db.models.models_v1 import InventoryUnit, Location, StaffUser, TierTemplate
from unitrack.services.reconciliation import ReconciliationEngine
from unitrack.services.scan_processor import ScanProcessor
from unitrack.services.tier_catalog import TierCatalog, default_flower_tiers
from unitrack.services.transfer_orders import TransferOrderManager
from unitrack.services.unit_registry import ScanContext, UnitRegistry


@dataclass
class World:
    store_id: uuid.UUID
    product_id: uuid.UUID
    warehouse: Location
    distribution: Location
    retail_a: Location
    retail_b: Location
    staff: StaffUser
    manager: StaffUser
    template: TierTemplate


def build_world(db: Session, *, track_individual_units: bool = True, allow_partial_conversion: bool = False) -> World:
    """Magasin de test : 1 entrepôt, 1 centre de distribution, 2 boutiques, gabarit flower."""
    store_id = uuid.uuid4()
    warehouse = Location(store_id=store_id, name="WH", type=LocationType.warehouse)
    distribution = Location(store_id=store_id, name="DIST", type=LocationType.distribution)
    retail_a = Location(store_id=store_id, name="SHOP-A", type=LocationType.retail)
    retail_b = Location(store_id=store_id, name="SHOP-B", type=LocationType.retail)
    staff = StaffUser(store_id=store_id, name="Receiver", role=Role.staff)
    manager = StaffUser(store_id=store_id, name="Boss", role=Role.manager)
    template = TierTemplate(
        store_id=store_id,
        category_id=uuid.uuid4(),
        name="Flower",
        slug="flower",
        tiers=default_flower_tiers(),
        base_unit="g",
        track_individual_units=track_individual_units,
        allow_partial_conversion=allow_partial_conversion,
    )
    db.add_all([warehouse, distribution, retail_a, retail_b, staff, manager, template])
    db.commit()
    return World(
        store_id=store_id,
        product_id=uuid.uuid4(),
        warehouse=warehouse,
        distribution=distribution,
        retail_a=retail_a,
        retail_b=retail_b,
        staff=staff,
        manager=manager,
        template=template,
    )


@pytest.fixture(scope="function")
def engine():
    """SQLite en mémoire, schéma recréé à chaque test."""
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        audit_variance_tolerance=Decimal("0"),
        audit_auto_correct=False,
        allow_over_receipt=False,
        scan_conflict_retries=2,
        conversion_remainder_tolerance=Decimal("0"),
        transfer_number_prefix="TRF",
        qr_tracking_domain="track.test",
    )


@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog()


@pytest.fixture
def registry() -> UnitRegistry:
    return UnitRegistry()


@pytest.fixture
def processor(catalog, registry, settings) -> ScanProcessor:
    return ScanProcessor(catalog, registry, settings)


@pytest.fixture
def transfers(settings) -> TransferOrderManager:
    return TransferOrderManager(settings)


@pytest.fixture
def reconciliation(registry, settings) -> ReconciliationEngine:
    return ReconciliationEngine(registry, settings)


@pytest.fixture
def world(db_session) -> World:
    return build_world(db_session)


@pytest.fixture
def make_unit(db_session, catalog, registry, world):
    """Crée (et commit) une unité du tier demandé à l'emplacement donné."""

    def _make(tier_id: str = "oz", location: Location | None = None, **kwargs) -> InventoryUnit:
        location = location or world.distribution
        template = catalog.get_template(db_session, world.template.id)
        unit = registry.create(
            db_session,
            template=template,
            tier=template.tier(tier_id),
            product_id=world.product_id,
            ctx=ScanContext(location=location, user=world.staff),
            **kwargs,
        )
        db_session.commit()
        return unit

    return _make
