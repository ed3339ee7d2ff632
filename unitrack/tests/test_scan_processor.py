import uuid
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from unitrack.app.db.base import Base
from unitrack.app.db.models.core_types import OperationStatus, ScanOperation, ScanOutcome, UnitStatus
from unitrack.app.db.models.models_v1 import ScanRequestLog
from unitrack.services.scan_processor import (
    Adjust,
    Audit,
    BinMove,
    Damage,
    Receive,
    Reprint,
    Sale,
    ScanProcessor,
    ScanRequest,
    TransferIn,
    TransferOut,
    payload_from_operation,
)
from unitrack.services.tier_catalog import TierCatalog
from unitrack.services.unit_registry import ScanContext, UnitRegistry

from conftest import build_world


def _request(unit, payload, location, user, **kwargs):
    return ScanRequest(
        qr_code=unit.qr_code,
        payload=payload,
        store_id=location.store_id,
        location_id=location.id,
        user_id=user.id,
        **kwargs,
    )


def test_transfer_out_then_receive_elsewhere(db_session, processor, registry, make_unit, world):
    """
    GIVEN une unité disponible au centre de distribution
    WHEN on la sort (transfer_out) puis on la scanne en boutique (receiving)
    THEN elle est disponible en boutique et l'historique compte 2 scans de plus
    """
    unit = make_unit("oz", world.distribution)

    out = processor.process(db_session, _request(unit, TransferOut(), world.distribution, world.staff))
    assert out.success, out.error
    assert out.unit.status == UnitStatus.in_transit
    assert out.unit.current_location_id == world.distribution.id

    received = processor.process(
        db_session, _request(unit, Receive(bin_location="SHELF-1"), world.retail_a, world.staff)
    )
    assert received.success, received.error
    assert received.unit.status == UnitStatus.available
    assert received.unit.current_location_id == world.retail_a.id
    assert received.unit.bin_location == "SHELF-1"

    history = registry.history(db_session, unit)
    assert [r.operation for r in history] == [
        ScanOperation.receiving,
        ScanOperation.transfer_out,
        ScanOperation.transfer_in,
    ]
    assert history[-1].previous_location_id == world.distribution.id
    assert history[-1].new_location_id == world.retail_a.id


def test_transfer_in_at_current_location_is_mismatch(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)
    result = processor.process(db_session, _request(unit, TransferIn(), world.distribution, world.staff))
    assert not result.success
    assert result.code == "LOCATION_MISMATCH"


def test_receive_refuses_tier_not_allowed_at_destination(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)
    processor.process(db_session, _request(unit, TransferOut(), world.distribution, world.staff))

    result = processor.process(db_session, _request(unit, Receive(), world.warehouse, world.staff))
    assert not result.success
    assert result.code == "VALIDATION_ERROR"


def test_audit_records_variance_without_touching_quantity(db_session, processor, registry, make_unit, world):
    """
    GIVEN une unité de 3.5g
    WHEN l'audit compte 2.5g
    THEN l'écart -1.0 est tracé et la quantité reste 3.5 (pas d'auto-correction)
    """
    unit = make_unit("eighth", world.retail_a)

    result = processor.process(
        db_session, _request(unit, Audit(actual_quantity=Decimal("2.5")), world.retail_a, world.staff)
    )
    assert result.success, result.error

    record = result.scans[0]
    assert record.operation_status == OperationStatus.discrepancy
    assert record.expected_quantity == Decimal("3.5")
    assert record.actual_quantity == Decimal("2.5")
    assert record.variance == Decimal("-1.0")
    assert registry.lookup(db_session, unit.qr_code).quantity == Decimal("3.5")


def test_audit_auto_correct_updates_quantity(db_session, catalog, registry, settings, make_unit, world):
    settings.audit_auto_correct = True
    processor = ScanProcessor(catalog, registry, settings)
    unit = make_unit("eighth", world.retail_a)

    result = processor.process(
        db_session, _request(unit, Audit(actual_quantity=Decimal("3.1")), world.retail_a, world.staff)
    )
    assert result.success
    assert result.unit.quantity == Decimal("3.1")


def test_audit_within_tolerance_is_success(db_session, catalog, registry, settings, make_unit, world):
    settings.audit_variance_tolerance = Decimal("0.5")
    processor = ScanProcessor(catalog, registry, settings)
    unit = make_unit("eighth", world.retail_a)

    result = processor.process(
        db_session, _request(unit, Audit(actual_quantity=Decimal("3.2")), world.retail_a, world.staff)
    )
    assert result.scans[0].operation_status == OperationStatus.success


def test_transfer_out_elsewhere_leaves_unit_untouched(db_session, processor, registry, make_unit, world):
    """
    GIVEN une unité au centre de distribution
    WHEN un transfer_out est scanné depuis la boutique A
    THEN LOCATION_MISMATCH et l'unité ne bouge pas
    """
    unit = make_unit("oz", world.distribution)
    version = unit.version

    result = processor.process(db_session, _request(unit, TransferOut(), world.retail_a, world.staff))
    assert not result.success
    assert result.code == "LOCATION_MISMATCH"
    assert result.retryable is False

    fresh = registry.lookup(db_session, unit.qr_code)
    assert fresh.status == UnitStatus.available
    assert fresh.current_location_id == world.distribution.id
    assert fresh.version == version
    assert len(registry.history(db_session, fresh)) == 1


def test_damaged_unit_is_terminal_but_reprintable(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)

    assert processor.process(db_session, _request(unit, Damage(), world.distribution, world.staff)).success

    sale = processor.process(db_session, _request(unit, Sale(), world.distribution, world.staff))
    assert not sale.success
    assert sale.code == "INVALID_TRANSITION"

    reprint = processor.process(db_session, _request(unit, Reprint(), world.distribution, world.staff))
    assert reprint.success
    assert reprint.unit.status == UnitStatus.damaged
    assert reprint.label == {
        "tier_label": "Ounce (28g)",
        "qr_code": unit.qr_code,
        "tracking_url": f"https://track.test/qr/{unit.qr_code}",
        "product_id": str(world.product_id),
        "batch_number": None,
    }


def test_sale_marks_unit_sold(db_session, processor, make_unit, world):
    unit = make_unit("eighth", world.retail_a)
    result = processor.process(db_session, _request(unit, Sale(), world.retail_a, world.staff))
    assert result.success
    assert result.unit.status == UnitStatus.sold


def test_damaged_unit_can_still_be_audited(db_session, processor, registry, make_unit, world):
    """
    GIVEN une unité endommagée (statut terminal)
    WHEN on l'audite
    THEN l'écart est tracé et le statut reste damaged
    """
    unit = make_unit("oz", world.distribution)
    assert processor.process(db_session, _request(unit, Damage(), world.distribution, world.staff)).success

    result = processor.process(
        db_session, _request(unit, Audit(actual_quantity=Decimal("20")), world.distribution, world.staff)
    )
    assert result.success, result.error
    assert result.unit.status == UnitStatus.damaged
    assert result.scans[0].operation_status == OperationStatus.discrepancy
    assert result.scans[0].variance == Decimal("-8")
    assert len(registry.history(db_session, unit)) == 3


def test_partial_sale_detaches_a_sold_portion(db_session, processor, registry, make_unit, world):
    """
    GIVEN une once (28g) en boutique
    WHEN on en vend 5g
    THEN la source garde 23g disponibles et une portion de 5g naît vendue
    """
    unit = make_unit("oz", world.retail_a)

    result = processor.process(
        db_session, _request(unit, Sale(quantity=Decimal("5")), world.retail_a, world.staff)
    )
    assert result.success, result.error
    assert result.unit.status == UnitStatus.available
    assert result.unit.quantity == Decimal("23")

    [portion] = result.children
    assert portion.status == UnitStatus.sold
    assert portion.quantity == Decimal("5")
    assert portion.parent_unit_id == unit.id
    assert portion.current_location_id == world.retail_a.id
    assert result.label["qr_code"] == portion.qr_code
    assert [s.unit_id for s in result.scans] == [unit.id, portion.id]
    assert registry.history(db_session, unit)[-1].operation == ScanOperation.sale


def test_sale_of_the_whole_quantity_sells_the_unit(db_session, processor, registry, make_unit, world):
    unit = make_unit("eighth", world.retail_a)
    result = processor.process(
        db_session, _request(unit, Sale(quantity=Decimal("3.5")), world.retail_a, world.staff)
    )
    assert result.success, result.error
    assert result.unit.status == UnitStatus.sold
    assert result.children == []
    assert registry.children(db_session, unit) == []


def test_partial_sale_cannot_exceed_held_quantity(db_session, processor, registry, make_unit, world):
    unit = make_unit("eighth", world.retail_a)
    result = processor.process(
        db_session, _request(unit, Sale(quantity=Decimal("4")), world.retail_a, world.staff)
    )
    assert not result.success
    assert result.code == "VALIDATION_ERROR"
    assert registry.lookup(db_session, unit.qr_code).quantity == Decimal("3.5")
    assert registry.children(db_session, unit) == []


def test_partial_sale_replay_returns_the_same_portion(db_session, processor, registry, make_unit, world):
    unit = make_unit("oz", world.retail_a)
    request = _request(
        unit, Sale(quantity=Decimal("7")), world.retail_a, world.staff, idempotency_key="sale-001"
    )

    first = processor.process(db_session, request)
    second = processor.process(db_session, request)

    assert second.success and second.replayed
    assert [c.id for c in second.children] == [c.id for c in first.children]
    assert second.label["qr_code"] == first.children[0].qr_code
    assert len(registry.children(db_session, unit)) == 1
    assert registry.lookup(db_session, unit.qr_code).quantity == Decimal("21")


def test_overlong_idempotency_key_is_refused_without_trace(db_session, processor, registry, make_unit, world):
    unit = make_unit("oz", world.distribution)
    result = processor.process(
        db_session, _request(unit, TransferOut(), world.distribution, world.staff, idempotency_key="k" * 65)
    )
    assert not result.success
    assert result.code == "VALIDATION_ERROR"
    assert db_session.execute(select(ScanRequestLog)).scalars().first() is None
    assert registry.lookup(db_session, unit.qr_code).status == UnitStatus.available


def test_override_requires_supervisor_and_notes(db_session, processor, make_unit, world):
    unit = make_unit("eighth", world.retail_a)
    processor.process(db_session, _request(unit, Damage(), world.retail_a, world.staff))
    correction = Adjust(new_status=UnitStatus.available, override=True)

    by_staff = processor.process(
        db_session, _request(unit, correction, world.retail_a, world.staff, notes="found intact")
    )
    assert not by_staff.success
    assert by_staff.code == "VALIDATION_ERROR"

    without_notes = processor.process(db_session, _request(unit, correction, world.retail_a, world.manager))
    assert not without_notes.success

    by_manager = processor.process(
        db_session, _request(unit, correction, world.retail_a, world.manager, notes="found intact")
    )
    assert by_manager.success, by_manager.error
    assert by_manager.unit.status == UnitStatus.available
    assert by_manager.scans[0].notes == "found intact"


def test_adjust_without_override_follows_table(db_session, processor, make_unit, world):
    unit = make_unit("eighth", world.retail_a)

    reserved = processor.process(
        db_session, _request(unit, Adjust(new_status=UnitStatus.reserved), world.retail_a, world.staff)
    )
    assert reserved.success
    assert reserved.unit.status == UnitStatus.reserved

    damaged = processor.process(
        db_session, _request(unit, Adjust(new_status=UnitStatus.damaged), world.retail_a, world.staff)
    )
    assert not damaged.success
    assert damaged.code == "INVALID_TRANSITION"


def test_bin_move(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)
    result = processor.process(db_session, _request(unit, BinMove(bin_location=" C-12 "), world.distribution, world.staff))
    assert result.success
    assert result.unit.bin_location == "C-12"
    assert result.unit.status == UnitStatus.available


def test_unknown_unit_location_or_user(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)

    missing = processor.scan(
        db_session, "Dmissing", "sale", world.store_id, world.distribution.id, world.staff.id
    )
    assert missing.code == "NOT_FOUND"

    foreign_location = processor.scan(
        db_session, unit.qr_code, "sale", world.store_id, uuid.uuid4(), world.staff.id
    )
    assert foreign_location.code == "NOT_FOUND"

    foreign_user = processor.scan(
        db_session, unit.qr_code, "sale", world.store_id, world.distribution.id, uuid.uuid4()
    )
    assert foreign_user.code == "NOT_FOUND"


def test_flat_scan_signature(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)

    moved = processor.scan(
        db_session,
        unit.qr_code,
        "bin_move",
        world.store_id,
        world.distribution.id,
        world.staff.id,
        new_bin_location="A-3",
    )
    assert moved.success
    assert moved.unit.bin_location == "A-3"

    incomplete = processor.scan(
        db_session, unit.qr_code, "audit", world.store_id, world.distribution.id, world.staff.id
    )
    assert not incomplete.success
    assert incomplete.code == "VALIDATION_ERROR"

    unknown = processor.scan(
        db_session, unit.qr_code, "teleport", world.store_id, world.distribution.id, world.staff.id
    )
    assert unknown.code == "VALIDATION_ERROR"


def test_payload_from_operation_builds_typed_payloads():
    assert payload_from_operation("transfer_out") == TransferOut()
    assert payload_from_operation("audit", actual_quantity="2.5") == Audit(actual_quantity=Decimal("2.5"))
    assert payload_from_operation("adjustment", new_status="reserved") == Adjust(new_status=UnitStatus.reserved)
    assert payload_from_operation(ScanOperation.receiving, new_bin_location="B1") == Receive(bin_location="B1")
    assert payload_from_operation("sale", sale_quantity="5") == Sale(quantity=Decimal("5"))


def test_idempotent_replay_returns_stored_outcome(db_session, processor, registry, make_unit, world):
    """
    GIVEN un scan réussi avec une clé d'idempotence
    WHEN la même requête est renvoyée
    THEN le résultat est rejoué sans nouveau ScanRecord
    """
    unit = make_unit("oz", world.distribution)
    request = _request(unit, TransferOut(), world.distribution, world.staff, idempotency_key="scan-001")

    first = processor.process(db_session, request)
    second = processor.process(db_session, request)

    assert first.success and not first.replayed
    assert second.success and second.replayed
    assert [s.id for s in second.scans] == [s.id for s in first.scans]
    assert len(registry.history(db_session, unit)) == 2


def test_idempotency_key_reuse_with_other_payload_is_refused(db_session, processor, registry, make_unit, world):
    unit = make_unit("oz", world.distribution)
    processor.process(
        db_session, _request(unit, TransferOut(), world.distribution, world.staff, idempotency_key="scan-002")
    )

    reuse = processor.process(
        db_session, _request(unit, Damage(), world.distribution, world.staff, idempotency_key="scan-002")
    )
    assert not reuse.success
    assert reuse.replayed
    assert reuse.code == "VALIDATION_ERROR"
    assert registry.lookup(db_session, unit.qr_code).status == UnitStatus.in_transit


def test_business_rejection_is_remembered(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)
    request = _request(unit, TransferOut(), world.retail_a, world.staff, idempotency_key="scan-003")

    first = processor.process(db_session, request)
    assert first.code == "LOCATION_MISMATCH"

    log = db_session.execute(
        select(ScanRequestLog).where(ScanRequestLog.idempotency_key == "scan-003")
    ).scalar_one()
    assert log.outcome == ScanOutcome.rejected
    assert log.error_code == "LOCATION_MISMATCH"
    assert log.scan_ids == []

    again = processor.process(db_session, request)
    assert again.replayed
    assert again.code == "LOCATION_MISMATCH"


def test_expected_version_mismatch_is_not_retried(db_session, processor, make_unit, world):
    unit = make_unit("oz", world.distribution)
    result = processor.process(
        db_session,
        _request(unit, BinMove(bin_location="Z"), world.distribution, world.staff, expected_version=unit.version + 1),
    )
    assert not result.success
    assert result.code == "CONCURRENCY_CONFLICT"
    assert result.retryable is True


def test_stale_read_is_retried(tmp_path, settings):
    """
    GIVEN une session qui garde en cache une version périmée de l'unité
    WHEN une autre session a entre-temps expédié l'unité
    THEN le scan de la première échoue au flush, est rejoué, et s'applique
         sur l'état à jour (in_transit -> damaged)
    """
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'scans.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    catalog, registry = TierCatalog(), UnitRegistry()
    processor = ScanProcessor(catalog, registry, settings)

    setup = factory()
    world = build_world(setup)
    template = catalog.get_template(setup, world.template.id)
    unit = registry.create(
        setup,
        template=template,
        tier=template.tier("oz"),
        product_id=world.product_id,
        ctx=ScanContext(location=world.distribution, user=world.staff),
    )
    setup.commit()
    setup.close()

    stale, other = factory(), factory()
    try:
        registry.lookup(stale, unit.qr_code)  # version 1 en cache

        shipped = processor.process(other, _request(unit, TransferOut(), world.distribution, world.staff))
        assert shipped.success

        result = processor.process(stale, _request(unit, Damage(), world.distribution, world.staff))
        assert result.success, result.error
        assert result.unit.status == UnitStatus.damaged

        last = registry.history(stale, result.unit)[-1]
        assert last.sequence == 3
        assert last.previous_status == UnitStatus.in_transit
    finally:
        stale.close()
        other.close()
        engine.dispose()
