from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from unitrack.app.db.models.core_types import ItemCondition, UnitStatus
from unitrack.app.db.models.models_v1 import AuditLog, InventoryUnit, ScanRecord, TransferReceipt
from unitrack.services.errors import NotFoundError
from unitrack.services.reconciliation import variance
from unitrack.services.scan_processor import Audit, ScanRequest, TransferOut
from unitrack.services.transfer_orders import ReceiptLine, TransferLine


def _scan(processor, db, unit, payload, location, user):
    return processor.process(
        db,
        ScanRequest(
            qr_code=unit.qr_code,
            payload=payload,
            store_id=location.store_id,
            location_id=location.id,
            user_id=user.id,
        ),
    )


def test_variance_sign_and_tolerance():
    result = variance(Decimal("3.5"), Decimal("2.5"))
    assert result.delta == Decimal("-1.0")
    assert result.is_discrepancy

    assert not variance(Decimal("28"), Decimal("27.9"), Decimal("0.1")).is_discrepancy
    assert variance(Decimal("28"), Decimal("27.8"), Decimal("0.1")).is_discrepancy


def test_engine_variance_uses_configured_tolerance(reconciliation, settings):
    settings.audit_variance_tolerance = Decimal("1")
    assert not reconciliation.variance(Decimal("10"), Decimal("9")).is_discrepancy
    assert reconciliation.variance(Decimal("10"), Decimal("9"), Decimal("0")).is_discrepancy


def test_verify_unit_accepts_untouched_history(db_session, processor, reconciliation, make_unit, world):
    unit = make_unit("oz", world.distribution)
    _scan(processor, db_session, unit, TransferOut(), world.distribution, world.staff)

    result = reconciliation.verify_unit(db_session, unit.qr_code)
    assert result.valid, result.errors
    assert result.record_count == 2
    assert result.head_hash == reconciliation.unit_history(db_session, unit.qr_code)[-1].record_hash


def test_verify_unit_detects_tampered_record(db_session, processor, reconciliation, make_unit, world):
    """
    GIVEN un historique de scans valide
    WHEN une ligne est modifiée directement en base (hors ORM)
    THEN la vérification signale l'empreinte divergente
    """
    unit = make_unit("oz", world.distribution)
    _scan(processor, db_session, unit, TransferOut(), world.distribution, world.staff)

    db_session.execute(
        update(ScanRecord.__table__)
        .where(ScanRecord.__table__.c.unit_id == unit.id)
        .where(ScanRecord.__table__.c.sequence == 1)
        .values(notes="edited by hand")
    )
    db_session.commit()
    db_session.expire_all()

    result = reconciliation.verify_unit(db_session, unit.qr_code)
    assert not result.valid
    assert any("scan #1: record_hash mismatch" in e for e in result.errors)


def test_verify_unit_detects_projection_drift(db_session, reconciliation, make_unit, world):
    unit = make_unit("oz", world.distribution)
    db_session.execute(
        update(InventoryUnit.__table__)
        .where(InventoryUnit.__table__.c.id == unit.id)
        .values(status=UnitStatus.sold)
    )
    db_session.commit()
    db_session.expire_all()

    result = reconciliation.verify_unit(db_session, unit.qr_code)
    assert any(e.startswith("projected status") for e in result.errors)


def test_unit_history_unknown_code(db_session, reconciliation, world):
    with pytest.raises(NotFoundError):
        reconciliation.unit_history(db_session, "Dunknown", world.store_id)


def test_audit_report_filters_discrepancies(db_session, processor, reconciliation, make_unit, world):
    exact = make_unit("eighth", world.retail_a)
    short = make_unit("eighth", world.retail_a)
    elsewhere = make_unit("eighth", world.retail_b)
    _scan(processor, db_session, exact, Audit(actual_quantity=Decimal("3.5")), world.retail_a, world.staff)
    _scan(processor, db_session, short, Audit(actual_quantity=Decimal("3.0")), world.retail_a, world.staff)
    _scan(processor, db_session, elsewhere, Audit(actual_quantity=Decimal("1")), world.retail_b, world.staff)

    all_audits = reconciliation.audit_report(db_session, world.store_id)
    assert len(all_audits) == 3

    at_shop = reconciliation.audit_report(db_session, world.store_id, location_id=world.retail_a.id)
    assert {r.unit_id for r in at_shop} == {exact.id, short.id}

    flagged = reconciliation.audit_report(
        db_session, world.store_id, location_id=world.retail_a.id, discrepancies_only=True
    )
    assert [r.unit_id for r in flagged] == [short.id]
    assert flagged[0].variance == Decimal("-0.5")


def _received_transfer(db, transfers, world):
    transfer = transfers.create(
        db,
        store_id=world.store_id,
        source_location_id=world.distribution.id,
        destination_location_id=world.retail_a.id,
        items=[TransferLine(product_id=world.product_id, quantity=Decimal("10"))],
        created_by_user_id=world.staff.id,
    )
    transfers.approve(db, transfer.id, world.manager.id)
    transfers.ship(db, transfer.id, world.staff.id)
    item = transfer.items[0]
    transfers.receive_items(
        db,
        transfer.id,
        [
            ReceiptLine(item_id=item.id, quantity=Decimal("8")),
            ReceiptLine(item_id=item.id, quantity=Decimal("2"), condition=ItemCondition.damaged),
        ],
        user_id=world.staff.id,
    )
    db.commit()
    return transfer


def test_transfer_discrepancies_break_down_conditions(db_session, transfers, reconciliation, world):
    transfer = _received_transfer(db_session, transfers, world)

    [row] = reconciliation.transfer_discrepancies(db_session, transfer.id)
    assert row["requested"] == Decimal("10")
    assert row["received"] == Decimal("10")
    assert row["pending"] == Decimal("0")
    assert row["over_received"] == Decimal("0")
    assert row["non_good"] == Decimal("2")
    assert row["by_condition"]["good"] == Decimal("8")
    assert row["by_condition"]["damaged"] == Decimal("2")
    assert row["condition"] == "damaged"
    assert row["has_discrepancy"] is True


def test_transfer_history_merges_lifecycle_and_receipts(db_session, transfers, reconciliation, world):
    transfer = _received_transfer(db_session, transfers, world)

    events = reconciliation.transfer_history(db_session, transfer.id)
    lifecycle = [e["action"] for e in events if e["kind"] == "lifecycle"]
    receipts = [e for e in events if e["kind"] == "receipt"]

    assert lifecycle == ["created", "approved", "shipped", "completed"]
    assert len(receipts) == 2
    assert {r["details"]["condition"] for r in receipts} == {"good", "damaged"}
    assert events[0]["action"] == "created"
    assert events[0]["details"]["status"] == "draft"


def test_transfer_history_puts_receipts_before_closing_on_same_instant(db_session, transfers, reconciliation, world):
    """
    GIVEN des lots et la clôture du transfert horodatés au même instant
    WHEN on lit l'historique
    THEN les lots précèdent l'événement completed
    """
    transfer = _received_transfer(db_session, transfers, world)
    instant = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    db_session.execute(
        update(TransferReceipt.__table__)
        .where(TransferReceipt.__table__.c.transfer_id == transfer.id)
        .values(received_at=instant)
    )
    db_session.execute(
        update(AuditLog.__table__)
        .where(AuditLog.__table__.c.entity_id == str(transfer.id))
        .where(AuditLog.__table__.c.action == "completed")
        .values(created_at=instant)
    )
    db_session.commit()
    db_session.expire_all()

    events = reconciliation.transfer_history(db_session, transfer.id)
    tail = [(e["kind"], e["action"]) for e in events if e["at"] and e["at"].replace(tzinfo=timezone.utc) == instant]
    assert tail == [("receipt", "received"), ("receipt", "received"), ("lifecycle", "completed")]


def test_transfer_history_unknown_transfer(db_session, reconciliation, world):
    with pytest.raises(NotFoundError):
        reconciliation.transfer_history(db_session, world.store_id)
