from datetime import timedelta

import pytest

from conftest import T0, photo, run_bat1_scenario
from flowledger.errors import NotFoundError, ValidationError
from flowledger.extensions import db
from flowledger.models import Batch, Dispatch, Incident, PhotoEvidence, Receipt
from flowledger.services import ledger_service


def _batch(**overrides):
    kwargs = dict(product_name="Sorghum 50kg", quantity=100, created_by="storekeeper", unit_cost="12.50", created_at=T0)
    kwargs.update(overrides)
    batch = ledger_service.create_batch(**kwargs)
    db.session.commit()
    return batch


def _ship(dispatch_id, quantity, *, received=None, condition="intact", reason=None, damage=False):
    """Take a fresh dispatch from prepare through to (optionally) receipt."""
    ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=quantity, prepared_by="storekeeper", dispatch_id=dispatch_id)
    ledger_service.approve_dispatch(
        dispatch_id,
        transporter="Acme",
        driver="Tumelo",
        vehicle="B 123 ABC",
        expected_delivery="2026-03-05T12:00:00Z",
        approved_by="manager",
    )
    ledger_service.confirm_departure(dispatch_id, photos=[photo("departure")])
    if received is not None:
        photos = [photo("received")] + ([photo("damage")] if damage else [])
        ledger_service.complete_receipt(
            dispatch_id,
            quantity_received=received,
            condition=condition,
            received_by="receiver",
            reason=reason,
            photos=photos,
        )
    db.session.commit()


def test_create_batch_allocates_sequential_ids(app):
    first = _batch()
    second = _batch(product_name="Cooking oil 5L")

    assert first.id == "BAT-000001"
    assert second.id == "BAT-000002"
    assert first.status == "in_storage"
    assert first.custody == "company"
    assert first.unit_cost_cents == 1250
    assert first.supplier == "Unknown"


def test_create_batch_rejects_bad_input(app):
    with pytest.raises(ValidationError, match="quantity must be > 0"):
        ledger_service.create_batch(product_name="X", quantity=0, created_by="a")
    with pytest.raises(ValidationError, match="unit_cost must be >= 0"):
        ledger_service.create_batch(product_name="X", quantity=5, created_by="a", unit_cost=-1)
    with pytest.raises(ValidationError, match="Missing required fields: created_by, product_name"):
        ledger_service.create_batch(product_name=None, quantity=5, created_by=None)
    with pytest.raises(ValidationError, match="must be an integer"):
        ledger_service.create_batch(product_name="X", quantity=2.5, created_by="a")
    db.session.rollback()

    assert db.session.query(Batch).count() == 0


def test_create_batch_with_existing_id_is_a_noop(app):
    original = _batch(batch_id="BAT-1", quantity=100)
    replay = ledger_service.create_batch(product_name="Different", quantity=7, created_by="other", batch_id="BAT-1")
    db.session.commit()

    assert replay.id == original.id
    assert replay.product_name == "Sorghum 50kg"
    assert replay.quantity == 100
    assert db.session.query(Batch).count() == 1


def test_generated_ids_skip_client_supplied_ones(app):
    _batch(batch_id="BAT-000001")
    generated = _batch()
    assert generated.id == "BAT-000002"


def test_batch_photos_are_stored_as_evidence(app):
    batch = _batch(photos={"doc": photo("doc"), "items": photo("items", location={"lat": -24.65, "lng": 25.91})})

    rows = db.session.query(PhotoEvidence).filter_by(entity_type="batch", entity_id=batch.id).all()
    assert sorted(r.label for r in rows) == ["doc", "items"]
    items = next(p for p in batch.to_dict()["photos"] if p["label"] == "items")
    assert items["location"] == {"lat": -24.65, "lng": 25.91}


def test_dispatch_quantity_cannot_exceed_remaining(app):
    _batch(quantity=50)
    ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=30, prepared_by="storekeeper")
    db.session.commit()

    with pytest.raises(ValidationError, match="exceeds remaining batch quantity 20"):
        ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=21, prepared_by="storekeeper")
    db.session.rollback()

    ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=20, prepared_by="storekeeper")
    db.session.commit()
    assert ledger_service.remaining_quantity(ledger_service.get_batch("BAT-000001")) == 0


def test_dispatch_for_unknown_batch_is_not_found(app):
    with pytest.raises(NotFoundError, match="Batch BAT-404 not found"):
        ledger_service.prepare_dispatch(batch_id="BAT-404", quantity=1, prepared_by="storekeeper")


def test_dispatch_with_existing_id_is_a_noop(app):
    _batch(quantity=50)
    first = ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=30, prepared_by="s", dispatch_id="DSP-9")
    db.session.commit()
    again = ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=30, prepared_by="s", dispatch_id="DSP-9")
    db.session.commit()

    assert again.id == first.id
    assert db.session.query(Dispatch).count() == 1
    assert ledger_service.remaining_quantity(ledger_service.get_batch("BAT-000001")) == 20


def test_batch_status_follows_dispatch_lifecycle(app):
    _batch(quantity=100)

    ledger_service.prepare_dispatch(batch_id="BAT-000001", quantity=60, prepared_by="s", dispatch_id="DSP-A")
    db.session.commit()
    batch = ledger_service.get_batch("BAT-000001")
    assert (batch.status, batch.custody) == ("dispatch_prepared", "company")

    ledger_service.approve_dispatch(
        "DSP-A", transporter="Acme", driver="D", vehicle="V", expected_delivery=T0 + timedelta(days=1), approved_by="m"
    )
    db.session.commit()
    batch = ledger_service.get_batch("BAT-000001")
    assert (batch.status, batch.custody) == ("prepared", "transporter")

    ledger_service.confirm_departure("DSP-A", photos=[photo("departure")])
    ledger_service.complete_receipt("DSP-A", quantity_received=60, condition="intact", received_by="r")
    db.session.commit()
    batch = ledger_service.get_batch("BAT-000001")
    assert (batch.status, batch.custody) == ("in_storage", "company")

    _ship("DSP-B", 40, received=40)
    batch = ledger_service.get_batch("BAT-000001")
    assert (batch.status, batch.custody) == ("completed", "receiver")
    assert ledger_service.remaining_quantity(batch) == 0


def test_clean_receipt_has_no_incident(app):
    _batch()
    _ship("DSP-1", 40, received=40)

    receipt = ledger_service.list_receipts(dispatch_id="DSP-1")[0]
    assert receipt.has_incident is False
    assert receipt.incident is None
    assert db.session.query(Incident).count() == 0

    dispatch = ledger_service.get_dispatch("DSP-1")
    assert dispatch.status == "completed"
    assert dispatch.custody == "receiver"
    assert dispatch.completed_at == receipt.received_at


@pytest.mark.parametrize(
    "received, condition, expected_type",
    [
        (35, "damaged", "damage"),
        (40, "damaged", "damage"),
        (38, "intact", "mismatch"),
        (41, "intact", "mismatch"),
    ],
)
def test_incident_created_exactly_when_receipt_signals_one(app, received, condition, expected_type):
    _batch()
    _ship("DSP-1", 40, received=received, condition=condition, reason="Short delivery", damage=True)

    receipt = ledger_service.list_receipts(dispatch_id="DSP-1")[0]
    assert receipt.has_incident is True
    assert receipt.has_incident == (receipt.quantity_received != 40 or receipt.condition == "damaged")

    incident = receipt.incident
    assert incident.type == expected_type
    assert incident.quantity_expected == 40
    assert incident.quantity_received == received
    assert incident.custody_at_incident == "transporter"
    assert incident.reported_by == "receiver"
    assert [p.label for p in incident.photos] == ["damage"]
    assert [p.label for p in receipt.photos] == ["received"]


def test_bat1_scenario_records_the_incident(app):
    receipt = run_bat1_scenario()

    incident = ledger_service.get_incident(receipt.incident.id)
    assert incident.id == "INC-000001"
    assert incident.quantity_expected == 40
    assert incident.quantity_received == 35
    assert incident.quantity_lost == 5
    assert incident.dispatch_id == "DSP-1"


def test_read_projections_filter_by_status_and_date(app):
    _batch(created_at=T0)
    _batch(created_at=T0 + timedelta(days=2))
    ledger_service.prepare_dispatch(batch_id="BAT-000002", quantity=5, prepared_by="s", prepared_at=T0 + timedelta(days=2))
    db.session.commit()

    assert [b.id for b in ledger_service.list_batches(status="in_storage")] == ["BAT-000001"]
    assert [b.id for b in ledger_service.list_batches(status="dispatch_prepared")] == ["BAT-000002"]
    assert [b.id for b in ledger_service.list_batches(start=T0 + timedelta(days=1))] == ["BAT-000002"]
    assert [b.id for b in ledger_service.list_batches(end=T0)] == ["BAT-000001"]
    assert len(ledger_service.list_dispatches(status="pending_approval", batch_id="BAT-000002")) == 1

    with pytest.raises(ValidationError, match="status must be one of"):
        ledger_service.list_batches(status="lost")


def test_getters_raise_not_found(app):
    with pytest.raises(NotFoundError):
        ledger_service.get_batch("BAT-404")
    with pytest.raises(NotFoundError):
        ledger_service.get_dispatch("DSP-404")
    with pytest.raises(NotFoundError):
        ledger_service.get_receipt("REC-404")
    with pytest.raises(NotFoundError):
        ledger_service.get_incident("INC-404")


def test_batch_summary_includes_children(app):
    run_bat1_scenario()

    summary = ledger_service.batch_summary("BAT-1")
    assert summary["remaining_quantity"] == 60
    assert [d["id"] for d in summary["dispatches"]] == ["DSP-1"]
    assert summary["receipts"][0]["has_incident"] is True
    assert summary["incidents"][0]["type"] == "damage"
    assert db.session.query(Receipt).count() == 1
