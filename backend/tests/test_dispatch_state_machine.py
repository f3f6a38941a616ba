import pytest

from conftest import T0, photo
from flowledger.errors import InvalidTransitionError, NotFoundError, ValidationError
from flowledger.extensions import db
from flowledger.models import Incident, Receipt
from flowledger.services import ledger_service


APPROVAL = dict(
    transporter="Acme",
    driver="Tumelo",
    vehicle="B 123 ABC",
    expected_delivery="2026-03-03T08:00:00Z",
    approved_by="manager",
)


@pytest.fixture
def pending(app):
    ledger_service.create_batch(product_name="Maize", quantity=100, created_by="s", unit_cost=10, batch_id="BAT-1", created_at=T0)
    ledger_service.prepare_dispatch(batch_id="BAT-1", quantity=40, prepared_by="s", dispatch_id="DSP-1")
    db.session.commit()
    return "DSP-1"


@pytest.fixture
def approved(pending):
    ledger_service.approve_dispatch(pending, **APPROVAL)
    db.session.commit()
    return pending


@pytest.fixture
def in_transit(approved):
    ledger_service.confirm_departure(approved, photos=[photo("departure")])
    db.session.commit()
    return approved


def _status(dispatch_id):
    db.session.expire_all()
    return ledger_service.get_dispatch(dispatch_id).status


def test_happy_path_moves_forward_one_step_at_a_time(in_transit):
    dispatch = ledger_service.get_dispatch(in_transit)
    assert dispatch.status == "in_transit"
    assert dispatch.custody == "transporter"
    assert dispatch.transporter == "Acme"
    assert dispatch.departed_by == "Tumelo"

    ledger_service.complete_receipt(in_transit, quantity_received=40, condition="intact", received_by="receiver")
    db.session.commit()
    assert _status(in_transit) == "completed"


def test_depart_while_pending_is_rejected_without_mutation(pending):
    with pytest.raises(InvalidTransitionError) as exc_info:
        ledger_service.confirm_departure(pending, photos=[photo("departure")])
    db.session.rollback()

    assert exc_info.value.current == "pending_approval"
    assert "Cannot confirm departure of dispatch DSP-1 in pending_approval status" in str(exc_info.value)
    assert _status(pending) == "pending_approval"


def test_approving_twice_is_rejected(approved):
    with pytest.raises(InvalidTransitionError, match="Cannot approve dispatch DSP-1 in approved status"):
        ledger_service.approve_dispatch(approved, **{**APPROVAL, "transporter": "Other"})
    db.session.rollback()

    dispatch = ledger_service.get_dispatch(approved)
    assert dispatch.status == "approved"
    assert dispatch.transporter == "Acme"


def test_receive_before_departure_is_rejected(approved):
    with pytest.raises(InvalidTransitionError):
        ledger_service.complete_receipt(approved, quantity_received=40, condition="intact", received_by="r")
    db.session.rollback()

    assert _status(approved) == "approved"
    assert db.session.query(Receipt).count() == 0


def test_receive_twice_is_rejected(in_transit):
    ledger_service.complete_receipt(in_transit, quantity_received=40, condition="intact", received_by="r")
    db.session.commit()

    with pytest.raises(InvalidTransitionError):
        ledger_service.complete_receipt(in_transit, quantity_received=40, condition="intact", received_by="r")
    db.session.rollback()
    assert db.session.query(Receipt).count() == 1


def test_transition_check_runs_before_payload_validation(pending):
    # Wrong state wins even when the payload is also bad
    with pytest.raises(InvalidTransitionError):
        ledger_service.complete_receipt(pending, quantity_received=None, condition=None, received_by=None)


def test_approval_requires_every_assignment_field(pending):
    with pytest.raises(ValidationError, match="Missing required fields: driver"):
        ledger_service.approve_dispatch(pending, **{**APPROVAL, "driver": None})
    with pytest.raises(ValidationError, match="vehicle cannot be blank"):
        ledger_service.approve_dispatch(pending, **{**APPROVAL, "vehicle": "   "})
    db.session.rollback()

    assert _status(pending) == "pending_approval"


def test_departure_requires_a_photo(approved):
    with pytest.raises(ValidationError, match="Departure requires a photo"):
        ledger_service.confirm_departure(approved, photos=[])
    with pytest.raises(ValidationError, match="Departure requires a photo"):
        ledger_service.confirm_departure(approved, photos=None)
    db.session.rollback()

    assert _status(approved) == "approved"


def test_incident_receipt_requires_damage_photo(in_transit):
    with pytest.raises(ValidationError, match="Damage photo required"):
        ledger_service.complete_receipt(
            in_transit,
            quantity_received=35,
            condition="intact",
            received_by="r",
            reason="Short count",
            photos=[photo("received")],
        )
    db.session.rollback()

    assert _status(in_transit) == "in_transit"
    assert db.session.query(Incident).count() == 0


def test_incident_receipt_requires_reason(in_transit):
    with pytest.raises(ValidationError, match="reason is required"):
        ledger_service.complete_receipt(
            in_transit,
            quantity_received=40,
            condition="damaged",
            received_by="r",
            reason="  ",
            photos=[photo("damage")],
        )
    db.session.rollback()

    assert _status(in_transit) == "in_transit"


def test_receipt_rejects_unknown_condition_and_negative_quantity(in_transit):
    with pytest.raises(ValidationError, match="condition must be one of: intact, damaged"):
        ledger_service.complete_receipt(in_transit, quantity_received=40, condition="wet", received_by="r")
    with pytest.raises(ValidationError, match="quantity_received must be >= 0"):
        ledger_service.complete_receipt(in_transit, quantity_received=-1, condition="intact", received_by="r")


def test_transitions_on_unknown_dispatch_are_not_found(app):
    with pytest.raises(NotFoundError, match="Dispatch DSP-404 not found"):
        ledger_service.approve_dispatch("DSP-404", **APPROVAL)
    with pytest.raises(NotFoundError):
        ledger_service.confirm_departure("DSP-404", photos=[photo("departure")])
    with pytest.raises(NotFoundError):
        ledger_service.complete_receipt("DSP-404", quantity_received=1, condition="intact", received_by="r")


def test_receipt_replay_with_known_id_returns_stored_receipt(in_transit):
    first = ledger_service.complete_receipt(
        in_transit, quantity_received=40, condition="intact", received_by="r", receipt_id="REC-1"
    )
    db.session.commit()

    again = ledger_service.complete_receipt(
        in_transit, quantity_received=12, condition="damaged", received_by="x", receipt_id="REC-1"
    )
    assert again.id == first.id
    assert again.quantity_received == 40
