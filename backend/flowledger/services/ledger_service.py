# Overview: Ledger Store. Holds batches, dispatches, receipts and incidents,
# enforces referential and quantity invariants at write time, and drives the
# dispatch state machine. Flushes only; callers own the commit.

from __future__ import annotations

from datetime import datetime

from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Batch, Dispatch, Incident, PhotoEvidence, Receipt
from ..models.ledger import (
    BATCH_STATUSES,
    BATCH_STATUS_COMPLETED,
    BATCH_STATUS_DISPATCH_PREPARED,
    BATCH_STATUS_IN_STORAGE,
    BATCH_STATUS_PREPARED,
    CONDITION_DAMAGED,
    CUSTODY_COMPANY,
    CUSTODY_RECEIVER,
    CUSTODY_TRANSPORTER,
    DISPATCH_STATUSES,
    DISPATCH_STATUS_APPROVED,
    DISPATCH_STATUS_COMPLETED,
    DISPATCH_STATUS_IN_TRANSIT,
    DISPATCH_STATUS_PENDING_APPROVAL,
    INCIDENT_TYPES,
    INCIDENT_TYPE_DAMAGE,
    INCIDENT_TYPE_MISMATCH,
    RECEIPT_CONDITIONS,
    receipt_has_incident,
)
from ..time_utils import as_utc_naive, utcnow
from ..validation import (
    BATCH_POLICY,
    DISPATCH_APPROVAL_POLICY,
    DISPATCH_DEPARTURE_POLICY,
    DISPATCH_PREPARE_POLICY,
    RECEIPT_POLICY,
    enforce_rules_batch,
    enforce_rules_dispatch,
    enforce_rules_receipt,
    parse_photos,
    to_cents,
    validate_payload,
)
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number


"""
Ledger Store invariants (authoritative)

- A dispatch quantity never exceeds the batch's remaining quantity at creation.
- Dispatch status only moves forward: pending_approval -> approved -> in_transit -> completed.
  A transition from the wrong source state raises InvalidTransitionError and mutates nothing.
- Receipt.has_incident is derived, never stored.
- An incident exists if and only if its receipt has_incident.
- Writes carrying an id that already exists are no-ops returning the stored record
  (replay from the sync queue, restore from backup).
- Batch status/custody are projections of the batch's dispatches.
"""


PHOTO_LABEL_DEPARTURE = "departure"
PHOTO_LABEL_DAMAGE = "damage"


def _clean(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if v is not None}


def _timestamp(value) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return as_utc_naive(value)
    return value


def _allocate_id(model, document_type: str) -> str:
    # Client-supplied ids may already occupy a sequence number
    while True:
        candidate = next_document_number(document_type=document_type)
        if db.session.get(model, candidate) is None:
            return candidate


def _attach_photos(entity_type: str, entity_id: str, photos: list[dict]) -> None:
    for photo in photos:
        db.session.add(PhotoEvidence(entity_type=entity_type, entity_id=entity_id, **photo))


def _require_transition(dispatch: Dispatch, expected: str, attempted: str) -> None:
    if dispatch.status != expected:
        raise InvalidTransitionError(dispatch.id, dispatch.status, attempted)


def remaining_quantity(batch: Batch) -> int:
    """Units of the batch not yet allocated to any dispatch."""
    allocated = sum(d.quantity for d in batch.dispatches)
    return batch.quantity - allocated


def refresh_batch_state(batch: Batch) -> None:
    """
    Recompute batch status and custody from its dispatches.

    Partial shipments keep the batch in company storage once every
    shipped lot has been delivered and stock remains.
    """
    dispatches = list(batch.dispatches)
    statuses = {d.status for d in dispatches}

    if not dispatches:
        batch.status, batch.custody = BATCH_STATUS_IN_STORAGE, CUSTODY_COMPANY
    elif DISPATCH_STATUS_PENDING_APPROVAL in statuses:
        batch.status = BATCH_STATUS_DISPATCH_PREPARED
        batch.custody = (
            CUSTODY_TRANSPORTER
            if statuses & {DISPATCH_STATUS_APPROVED, DISPATCH_STATUS_IN_TRANSIT}
            else CUSTODY_COMPANY
        )
    elif statuses & {DISPATCH_STATUS_APPROVED, DISPATCH_STATUS_IN_TRANSIT}:
        batch.status, batch.custody = BATCH_STATUS_PREPARED, CUSTODY_TRANSPORTER
    elif remaining_quantity(batch) > 0:
        batch.status, batch.custody = BATCH_STATUS_IN_STORAGE, CUSTODY_COMPANY
    else:
        batch.status, batch.custody = BATCH_STATUS_COMPLETED, CUSTODY_RECEIVER


# =============================================================================
# Writes
# =============================================================================

def create_batch(
    *,
    product_name: str,
    quantity: int,
    created_by: str,
    supplier: str | None = None,
    unit_cost=0,
    batch_id: str | None = None,
    created_at: datetime | str | None = None,
    photos=None,
) -> Batch:
    """
    Register a new batch in company custody (status: in_storage).

    Raises:
        ValidationError: missing name/quantity/actor, quantity <= 0, cost < 0
    """
    def _op():
        if batch_id:
            existing = db.session.get(Batch, batch_id)
            if existing is not None:
                return existing

        patch = validate_payload(
            model=Batch,
            payload=_clean({
                "id": batch_id,
                "product_name": product_name,
                "quantity": quantity,
                "supplier": supplier or "Unknown",
                "unit_cost_cents": to_cents(unit_cost if unit_cost is not None else 0),
                "created_by": created_by,
                "created_at": _timestamp(created_at),
            }),
            policy=BATCH_POLICY,
        )
        enforce_rules_batch(patch)
        photo_rows = parse_photos(photos, default_time=patch["created_at"])

        patch.setdefault("id", None)
        patch["id"] = patch["id"] or _allocate_id(Batch, "BATCH")

        batch = Batch(**patch, status=BATCH_STATUS_IN_STORAGE, custody=CUSTODY_COMPANY)
        db.session.add(batch)
        _attach_photos("batch", batch.id, photo_rows)
        db.session.flush()
        return batch

    return run_with_retry(_op)


def prepare_dispatch(
    *,
    batch_id: str,
    quantity: int,
    prepared_by: str,
    dispatch_id: str | None = None,
    prepared_at: datetime | str | None = None,
    photos=None,
) -> Dispatch:
    """
    Prepare a shipment from a batch (status: pending_approval).

    Raises:
        ValidationError: missing fields, quantity <= 0 or above remaining stock
        NotFoundError: batch does not exist
    """
    def _op():
        if dispatch_id:
            existing = db.session.get(Dispatch, dispatch_id)
            if existing is not None:
                return existing

        patch = validate_payload(
            model=Dispatch,
            payload=_clean({
                "id": dispatch_id,
                "batch_id": batch_id,
                "quantity": quantity,
                "prepared_by": prepared_by,
                "prepared_at": _timestamp(prepared_at),
            }),
            policy=DISPATCH_PREPARE_POLICY,
        )

        batch = lock_for_update(db.session.query(Batch).filter_by(id=patch["batch_id"])).first()
        if not batch:
            raise NotFoundError(f"Batch {patch['batch_id']} not found")

        enforce_rules_dispatch(patch, remaining_quantity=remaining_quantity(batch))
        photo_rows = parse_photos(photos, default_time=patch["prepared_at"])

        new_id = patch.get("id") or _allocate_id(Dispatch, "DISPATCH")
        dispatch = Dispatch(
            id=new_id,
            batch=batch,
            quantity=patch["quantity"],
            prepared_by=patch["prepared_by"],
            prepared_at=patch["prepared_at"],
            status=DISPATCH_STATUS_PENDING_APPROVAL,
            custody=CUSTODY_COMPANY,
        )
        db.session.add(dispatch)
        _attach_photos("dispatch", new_id, photo_rows)
        refresh_batch_state(batch)
        db.session.flush()
        return dispatch

    return run_with_retry(_op)


def _get_dispatch_for_update(dispatch_id: str) -> Dispatch:
    dispatch = lock_for_update(db.session.query(Dispatch).filter_by(id=dispatch_id)).first()
    if not dispatch:
        raise NotFoundError(f"Dispatch {dispatch_id} not found")
    return dispatch


def approve_dispatch(
    dispatch_id: str,
    *,
    transporter: str,
    driver: str,
    vehicle: str,
    expected_delivery: datetime | str,
    approved_by: str,
    approved_at: datetime | str | None = None,
) -> Dispatch:
    """
    Assign transporter, driver, vehicle and ETA (pending_approval -> approved).

    Custody passes to the transporter.

    Raises:
        NotFoundError: dispatch does not exist
        InvalidTransitionError: dispatch is not pending_approval
        ValidationError: any assignment field missing
    """
    def _op():
        dispatch = _get_dispatch_for_update(dispatch_id)
        _require_transition(dispatch, DISPATCH_STATUS_PENDING_APPROVAL, "approve")

        patch = validate_payload(
            model=Dispatch,
            payload=_clean({
                "transporter": transporter,
                "driver": driver,
                "vehicle": vehicle,
                "expected_delivery": expected_delivery,
                "approved_by": approved_by,
                "approved_at": _timestamp(approved_at),
            }),
            policy=DISPATCH_APPROVAL_POLICY,
        )

        for key, value in patch.items():
            setattr(dispatch, key, value)
        dispatch.status = DISPATCH_STATUS_APPROVED
        dispatch.custody = CUSTODY_TRANSPORTER
        refresh_batch_state(dispatch.batch)
        db.session.flush()
        return dispatch

    return run_with_retry(_op)


def confirm_departure(
    dispatch_id: str,
    *,
    photos,
    departed_by: str | None = None,
    departed_at: datetime | str | None = None,
) -> Dispatch:
    """
    Confirm the vehicle left with the goods (approved -> in_transit).

    Requires at least one departure photo.

    Raises:
        NotFoundError: dispatch does not exist
        InvalidTransitionError: dispatch is not approved
        ValidationError: no departure photo
    """
    def _op():
        dispatch = _get_dispatch_for_update(dispatch_id)
        _require_transition(dispatch, DISPATCH_STATUS_APPROVED, "confirm departure of")

        patch = validate_payload(
            model=Dispatch,
            payload=_clean({
                "departed_by": departed_by or dispatch.driver,
                "departed_at": _timestamp(departed_at),
            }),
            policy=DISPATCH_DEPARTURE_POLICY,
        )
        photo_rows = parse_photos(photos, default_time=patch["departed_at"], default_label=PHOTO_LABEL_DEPARTURE)
        if not photo_rows:
            raise ValidationError("Departure requires a photo")

        dispatch.departed_by = patch.get("departed_by")
        dispatch.departed_at = patch["departed_at"]
        dispatch.status = DISPATCH_STATUS_IN_TRANSIT
        dispatch.custody = CUSTODY_TRANSPORTER
        _attach_photos("dispatch", dispatch.id, photo_rows)
        refresh_batch_state(dispatch.batch)
        db.session.flush()
        return dispatch

    return run_with_retry(_op)


def complete_receipt(
    dispatch_id: str,
    *,
    quantity_received: int,
    condition: str,
    received_by: str,
    reason: str | None = None,
    photos=None,
    receipt_id: str | None = None,
    incident_id: str | None = None,
    received_at: datetime | str | None = None,
) -> Receipt:
    """
    Record goods arriving at the destination (in_transit -> completed).

    A quantity mismatch or damaged condition also records an Incident, which
    requires a damage photo and a reason.

    Raises:
        NotFoundError: dispatch does not exist
        InvalidTransitionError: dispatch is not in_transit
        ValidationError: missing quantity/condition/actor, or incident evidence
    """
    def _op():
        if receipt_id:
            existing = db.session.get(Receipt, receipt_id)
            if existing is not None:
                return existing

        dispatch = _get_dispatch_for_update(dispatch_id)
        _require_transition(dispatch, DISPATCH_STATUS_IN_TRANSIT, "receive")

        patch = validate_payload(
            model=Receipt,
            payload=_clean({
                "id": receipt_id,
                "quantity_received": quantity_received,
                "condition": condition,
                "received_by": received_by,
                "received_at": _timestamp(received_at),
            }),
            policy=RECEIPT_POLICY,
        )
        enforce_rules_receipt(patch, conditions=RECEIPT_CONDITIONS)
        photo_rows = parse_photos(photos, default_time=patch["received_at"])

        incident_flag = receipt_has_incident(patch["quantity_received"], patch["condition"], dispatch.quantity)
        damage_photos = [p for p in photo_rows if p["label"] == PHOTO_LABEL_DAMAGE]
        reason_text = (reason or "").strip()
        if incident_flag:
            if not damage_photos:
                raise ValidationError("Damage photo required when quantity or condition does not match")
            if not reason_text:
                raise ValidationError("reason is required when quantity or condition does not match")

        receipt = Receipt(
            id=patch.get("id") or _allocate_id(Receipt, "RECEIPT"),
            dispatch=dispatch,
            quantity_received=patch["quantity_received"],
            condition=patch["condition"],
            received_by=patch["received_by"],
            received_at=patch["received_at"],
        )
        db.session.add(receipt)

        if incident_flag:
            incident = Incident(
                id=incident_id or _allocate_id(Incident, "INCIDENT"),
                dispatch=dispatch,
                receipt=receipt,
                type=INCIDENT_TYPE_DAMAGE if patch["condition"] == CONDITION_DAMAGED else INCIDENT_TYPE_MISMATCH,
                quantity_expected=dispatch.quantity,
                quantity_received=patch["quantity_received"],
                reason=reason_text,
                reported_by=patch["received_by"],
                reported_at=patch["received_at"],
                custody_at_incident=CUSTODY_TRANSPORTER,
            )
            db.session.add(incident)
            _attach_photos("incident", incident.id, damage_photos)
            _attach_photos("receipt", receipt.id, [p for p in photo_rows if p["label"] != PHOTO_LABEL_DAMAGE])
        else:
            _attach_photos("receipt", receipt.id, photo_rows)

        dispatch.status = DISPATCH_STATUS_COMPLETED
        dispatch.completed_at = patch["received_at"]
        dispatch.custody = CUSTODY_RECEIVER
        refresh_batch_state(dispatch.batch)
        db.session.flush()
        return receipt

    return run_with_retry(_op)


# =============================================================================
# Read projections
# =============================================================================

def get_batch(batch_id: str) -> Batch:
    batch = db.session.get(Batch, batch_id)
    if not batch:
        raise NotFoundError(f"Batch {batch_id} not found")
    return batch


def get_dispatch(dispatch_id: str) -> Dispatch:
    dispatch = db.session.get(Dispatch, dispatch_id)
    if not dispatch:
        raise NotFoundError(f"Dispatch {dispatch_id} not found")
    return dispatch


def get_receipt(receipt_id: str) -> Receipt:
    receipt = db.session.get(Receipt, receipt_id)
    if not receipt:
        raise NotFoundError(f"Receipt {receipt_id} not found")
    return receipt


def get_incident(incident_id: str) -> Incident:
    incident = db.session.get(Incident, incident_id)
    if not incident:
        raise NotFoundError(f"Incident {incident_id} not found")
    return incident


def _check_choice(value: str | None, choices: tuple[str, ...], field: str) -> None:
    if value is not None and value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")


def _in_range(query, column, start: datetime | None, end: datetime | None):
    if start is not None:
        query = query.filter(column >= start)
    if end is not None:
        query = query.filter(column <= end)
    return query


def list_batches(
    *,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Batch]:
    _check_choice(status, BATCH_STATUSES, "status")
    query = db.session.query(Batch)
    if status:
        query = query.filter(Batch.status == status)
    query = _in_range(query, Batch.created_at, start, end)
    return query.order_by(Batch.created_at.asc(), Batch.id.asc()).all()


def list_dispatches(
    *,
    status: str | None = None,
    batch_id: str | None = None,
    transporter: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Dispatch]:
    _check_choice(status, DISPATCH_STATUSES, "status")
    query = db.session.query(Dispatch)
    if status:
        query = query.filter(Dispatch.status == status)
    if batch_id:
        query = query.filter(Dispatch.batch_id == batch_id)
    if transporter:
        query = query.filter(Dispatch.transporter == transporter)
    query = _in_range(query, Dispatch.prepared_at, start, end)
    return query.order_by(Dispatch.prepared_at.asc(), Dispatch.id.asc()).all()


def list_receipts(
    *,
    dispatch_id: str | None = None,
    batch_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Receipt]:
    query = db.session.query(Receipt)
    if dispatch_id:
        query = query.filter(Receipt.dispatch_id == dispatch_id)
    if batch_id:
        query = query.join(Dispatch, Dispatch.id == Receipt.dispatch_id).filter(Dispatch.batch_id == batch_id)
    query = _in_range(query, Receipt.received_at, start, end)
    return query.order_by(Receipt.received_at.asc(), Receipt.id.asc()).all()


def list_incidents(
    *,
    dispatch_id: str | None = None,
    batch_id: str | None = None,
    incident_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Incident]:
    _check_choice(incident_type, INCIDENT_TYPES, "type")
    query = db.session.query(Incident)
    if dispatch_id:
        query = query.filter(Incident.dispatch_id == dispatch_id)
    if batch_id:
        query = query.join(Dispatch, Dispatch.id == Incident.dispatch_id).filter(Dispatch.batch_id == batch_id)
    if incident_type:
        query = query.filter(Incident.type == incident_type)
    query = _in_range(query, Incident.reported_at, start, end)
    return query.order_by(Incident.reported_at.asc(), Incident.id.asc()).all()


def batch_summary(batch_id: str) -> dict:
    """Batch with its dispatches, receipts and incidents."""
    batch = get_batch(batch_id)
    return {
        **batch.to_dict(),
        "remaining_quantity": remaining_quantity(batch),
        "dispatches": [d.to_dict() for d in batch.dispatches],
        "receipts": [r.to_dict() for r in list_receipts(batch_id=batch_id)],
        "incidents": [i.to_dict() for i in list_incidents(batch_id=batch_id)],
    }
