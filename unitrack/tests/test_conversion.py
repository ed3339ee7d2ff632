import uuid
from decimal import Decimal

from sqlalchemy import select

from unitrack.app.db.models.core_types import LocationType, Role, ScanOperation, UnitStatus
from unitrack.app.db.models.models_v1 import Location, StaffUser, TierStockLevel, TierTemplate
from unitrack.app.db.seed import seed
from unitrack.services.scan_processor import Convert, ScanProcessor, ScanRequest
from unitrack.services.unit_registry import ScanContext


def _convert(processor, db, unit, location, user, **kwargs):
    key = kwargs.pop("idempotency_key", None)
    return processor.process(
        db,
        ScanRequest(
            qr_code=unit.qr_code,
            payload=Convert(**kwargs),
            store_id=location.store_id,
            location_id=location.id,
            user_id=user.id,
            idempotency_key=key,
        ),
    )


def test_ounce_to_eighths_conserves_quantity(db_session, processor, registry, make_unit, world):
    """
    GIVEN une once (28g) en boutique
    WHEN on la convertit en huitièmes
    THEN 8 unités de 3.5g naissent (génération 1), la source est consommée
    """
    source = make_unit("oz", world.retail_a, batch_number="LOT-42")

    result = _convert(processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth")
    assert result.success, result.error

    assert result.unit.status == UnitStatus.consumed
    assert result.unit.quantity == Decimal("0")
    assert len(result.children) == 8
    assert sum(Decimal(c.quantity) for c in result.children) == Decimal("28")
    assert {c.generation for c in result.children} == {1}
    assert {c.batch_number for c in result.children} == {"LOT-42"}
    assert [c.parent_unit_index for c in result.children] == list(range(1, 9))
    assert all(c.qr_code.startswith("S") for c in result.children)
    assert all(c.current_location_id == world.retail_a.id for c in result.children)

    conversion = result.conversion
    assert conversion.portions_created == 8
    assert conversion.total_consumed == Decimal("28")
    assert conversion.remaining_quantity == Decimal("0")
    assert conversion.variance == Decimal("0")
    assert conversion.tracked_individually is True
    assert {c.conversion_id for c in result.children} == {conversion.id}

    assert [r.id for r in registry.children(db_session, source)] == [c.id for c in result.children]
    assert registry.history(db_session, source)[-1].operation == ScanOperation.convert


def test_children_inherit_source_code_as_batch(db_session, processor, make_unit, world):
    source = make_unit("lb", world.warehouse)
    result = _convert(processor, db_session, source, world.warehouse, world.staff, target_tier_id="hp")
    assert result.success, result.error
    assert len(result.children) == 2
    assert {c.batch_number for c in result.children} == {source.qr_code}


def test_requesting_more_portions_than_available(db_session, processor, registry, make_unit, world):
    source = make_unit("oz", world.retail_a)
    result = _convert(processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth", portions=9)
    assert not result.success
    assert result.code == "CONVERSION_NOT_ALLOWED"
    assert registry.lookup(db_session, source.qr_code).status == UnitStatus.available
    assert registry.children(db_session, source) == []


def test_remainder_refused_without_partial_conversion(db_session, processor, registry, make_unit, world):
    # 226.8g -> 8 x 28g, reste 2.8g
    source = make_unit("hp", world.distribution)
    result = _convert(processor, db_session, source, world.distribution, world.staff, target_tier_id="oz")
    assert not result.success
    assert result.code == "CONVERSION_NOT_ALLOWED"
    assert registry.children(db_session, source) == []


def test_remainder_within_tolerance_is_recorded_as_loss(db_session, catalog, registry, settings, make_unit, world):
    settings.conversion_remainder_tolerance = Decimal("3")
    processor = ScanProcessor(catalog, registry, settings)
    source = make_unit("hp", world.distribution)

    result = _convert(processor, db_session, source, world.distribution, world.staff, target_tier_id="oz")
    assert result.success, result.error
    assert len(result.children) == 8
    assert result.unit.status == UnitStatus.consumed
    assert result.conversion.variance == Decimal("-2.8")
    assert result.conversion.remaining_quantity == Decimal("0")


def test_partial_conversion_keeps_remainder_on_source(db_session, processor, make_unit, world):
    world.template.allow_partial_conversion = True
    db_session.commit()
    source = make_unit("hp", world.distribution)

    result = _convert(
        processor, db_session, source, world.distribution, world.staff, target_tier_id="oz", portions=3
    )
    assert result.success, result.error
    assert len(result.children) == 3
    assert result.unit.status == UnitStatus.available
    assert result.unit.quantity == Decimal("142.8")
    assert result.conversion.remaining_quantity == Decimal("142.8")
    assert result.conversion.variance == Decimal("0")


def test_untracked_template_feeds_tier_stock(db_session, processor, make_unit, world):
    world.template.track_individual_units = False
    db_session.commit()
    source = make_unit("oz", world.retail_a)

    result = _convert(processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth")
    assert result.success, result.error
    assert result.children == []
    assert result.conversion.tracked_individually is False

    level = db_session.execute(
        select(TierStockLevel)
        .where(TierStockLevel.product_id == world.product_id)
        .where(TierStockLevel.location_id == world.retail_a.id)
        .where(TierStockLevel.tier_id == "eighth")
    ).scalar_one()
    assert level.quantity == Decimal("28")

    second = make_unit("oz", world.retail_a)
    _convert(processor, db_session, second, world.retail_a, world.staff, target_tier_id="eighth")
    db_session.refresh(level)
    assert level.quantity == Decimal("56")


def test_conversion_edges_and_locations_are_enforced(db_session, processor, make_unit, world):
    ounce = make_unit("oz", world.retail_a)
    upward = _convert(processor, db_session, ounce, world.retail_a, world.staff, target_tier_id="lb")
    assert upward.code == "CONVERSION_NOT_ALLOWED"

    unknown = _convert(processor, db_session, ounce, world.retail_a, world.staff, target_tier_id="gram")
    assert unknown.code == "NOT_FOUND"

    elsewhere = _convert(processor, db_session, ounce, world.retail_b, world.staff, target_tier_id="eighth")
    assert elsewhere.code == "LOCATION_MISMATCH"

    # lb -> oz est une arête valide, mais l'once ne peut pas vivre en entrepôt
    pound = make_unit("lb", world.warehouse)
    misplaced = _convert(processor, db_session, pound, world.warehouse, world.staff, target_tier_id="oz")
    assert misplaced.code == "VALIDATION_ERROR"


def test_consumed_source_cannot_convert_again(db_session, processor, make_unit, world):
    source = make_unit("oz", world.retail_a)
    assert _convert(processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth").success

    again = _convert(processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth")
    assert again.code == "INVALID_TRANSITION"


def test_conversion_replay_returns_same_children(db_session, processor, registry, make_unit, world):
    source = make_unit("oz", world.retail_a)
    first = _convert(
        processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth", idempotency_key="conv-1"
    )
    second = _convert(
        processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth", idempotency_key="conv-1"
    )
    assert second.replayed
    assert second.conversion.id == first.conversion.id
    assert [c.id for c in second.children] == [c.id for c in first.children]
    assert len(registry.children(db_session, source)) == 8


def test_each_portion_can_get_its_own_bin(db_session, processor, make_unit, world):
    source = make_unit("lb", world.warehouse, bin_location="BULK-1")
    result = _convert(
        processor,
        db_session,
        source,
        world.warehouse,
        world.staff,
        target_tier_id="hp",
        bin_location="DEFAULT",
        bin_locations=("R1", ""),
    )
    assert result.success, result.error
    # bin vide : la portion garde le bin de la source
    assert [c.bin_location for c in result.children] == ["R1", "BULK-1"]


def test_remaining_portions_fall_back_to_the_common_bin(db_session, processor, make_unit, world):
    source = make_unit("oz", world.retail_a)
    result = _convert(
        processor,
        db_session,
        source,
        world.retail_a,
        world.staff,
        target_tier_id="eighth",
        bin_location="SHELF",
        bin_locations=("S1", "S2"),
    )
    assert result.success, result.error
    assert [c.bin_location for c in result.children] == ["S1", "S2"] + ["SHELF"] * 6


def test_more_bins_than_portions_is_refused(db_session, processor, registry, make_unit, world):
    source = make_unit("lb", world.warehouse)
    result = _convert(
        processor,
        db_session,
        source,
        world.warehouse,
        world.staff,
        target_tier_id="hp",
        bin_locations=("A", "B", "C"),
    )
    assert result.code == "VALIDATION_ERROR"
    assert registry.children(db_session, source) == []


def test_per_portion_bins_need_tracked_units(db_session, processor, make_unit, world):
    world.template.track_individual_units = False
    db_session.commit()
    source = make_unit("oz", world.retail_a)
    result = _convert(
        processor, db_session, source, world.retail_a, world.staff, target_tier_id="eighth", bin_locations=("S1",)
    )
    assert result.code == "VALIDATION_ERROR"


def test_seeded_flower_template_converts_pound_to_quarters(db_session, catalog, registry, processor):
    """
    GIVEN le gabarit du seed de démonstration
    WHEN une livre est convertie en quarts (4 x 112g)
    THEN la conversion réussit et le reste de 5.6g demeure sur la source
    """
    store_id = uuid.uuid4()
    seed(db_session, store_id=store_id)

    template_row = db_session.scalar(select(TierTemplate).where(TierTemplate.store_id == store_id))
    assert template_row.allow_partial_conversion is True
    warehouse = db_session.scalar(
        select(Location).where(Location.store_id == store_id, Location.type == LocationType.warehouse)
    )
    receiver = db_session.scalar(select(StaffUser).where(StaffUser.store_id == store_id, StaffUser.role == Role.staff))

    template = catalog.get_template(db_session, template_row.id)
    source = registry.create(
        db_session,
        template=template,
        tier=template.tier("lb"),
        product_id=uuid.uuid4(),
        ctx=ScanContext(location=warehouse, user=receiver),
    )
    db_session.commit()

    result = _convert(processor, db_session, source, warehouse, receiver, target_tier_id="qp")
    assert result.success, result.error
    assert len(result.children) == 4
    assert result.unit.status == UnitStatus.available
    assert result.conversion.remaining_quantity == Decimal("5.6")
