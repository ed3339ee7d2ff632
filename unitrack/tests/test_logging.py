import io
import json
import uuid
from decimal import Decimal

import pytest

from unitrack.app.core.logging_config import LogContext, configure_logging, get_logger, reset_logging
from unitrack.app.db.models.core_types import UnitStatus


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    reset_logging()
    configure_logging(level="DEBUG", json_output=True, stream=stream)
    try:
        yield stream
    finally:
        reset_logging()


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_lines_carry_context_and_extra(log_stream):
    actor = uuid.uuid4()
    with LogContext.bind(actor_id=actor, qr_code="D123", correlation_id=None):
        get_logger("tests").info(
            "unit_transition_applied",
            extra={"to_status": UnitStatus.in_transit, "quantity": Decimal("28.000")},
        )

    [entry] = _lines(log_stream)
    assert entry["message"] == "unit_transition_applied"
    assert entry["logger"] == "unitrack.tests"
    assert entry["actor_id"] == str(actor)
    assert entry["qr_code"] == "D123"
    assert "correlation_id" not in entry
    assert entry["to_status"] == "in_transit"
    assert entry["quantity"] == "28.000"


def test_context_is_restored_after_bind(log_stream):
    with LogContext.bind(store_id="outer"):
        with LogContext.bind(store_id="inner"):
            assert LogContext.get_all()["store_id"] == "inner"
        assert LogContext.get_all()["store_id"] == "outer"
    assert "store_id" not in LogContext.get_all()


def test_configure_logging_is_idempotent(log_stream):
    configure_logging(level="DEBUG", json_output=True, stream=io.StringIO())
    get_logger("tests").warning("once")
    assert len(_lines(log_stream)) == 1


def test_exception_fields(log_stream):
    from unitrack.services.errors import LocationMismatchError

    try:
        raise LocationMismatchError("not here")
    except LocationMismatchError:
        get_logger("tests").warning("scan_rejected", exc_info=True)

    [entry] = _lines(log_stream)
    assert entry["exc_type"] == "LocationMismatchError"
    assert entry["exc_code"] == "LOCATION_MISMATCH"
