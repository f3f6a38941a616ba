# Overview: Orchestrates a ledger write, its commit, the outbox entry and
# the notification, in that order. Ledger services stay free of side effects.

from __future__ import annotations

from ..errors import PersistenceError
from ..extensions import db
from ..models import Batch, Dispatch, Receipt
from ..runtime import get_notification_bus, get_sync_queue
from . import ledger_service
from .concurrency import commit_with_retry
from .notification_bus import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_SUCCESS


def _commit() -> None:
    """Commit the ledger write; report a hard failure before re-raising."""
    try:
        commit_with_retry()
    except PersistenceError as exc:
        db.session.rollback()
        get_notification_bus().create(
            "persistence_failed",
            f"Ledger write could not be saved: {exc}",
            SEVERITY_CRITICAL,
            {"component": "ledger"},
        )
        raise


def _already_recorded(model, record_id) -> bool:
    return bool(record_id) and db.session.get(model, record_id) is not None


def _write(operation):
    try:
        record = operation()
    except Exception:
        db.session.rollback()
        raise
    _commit()
    return record


def register_batch(data: dict):
    if _already_recorded(Batch, data.get("id")):
        return ledger_service.get_batch(data["id"])

    batch = _write(lambda: ledger_service.create_batch(
        product_name=data.get("product_name"),
        quantity=data.get("quantity"),
        created_by=data.get("created_by"),
        supplier=data.get("supplier"),
        unit_cost=data.get("unit_cost", 0),
        batch_id=data.get("id"),
        created_at=data.get("created_at"),
        photos=data.get("photos"),
    ))

    get_sync_queue().enqueue("create_batch", batch.to_dict(), "normal")
    get_notification_bus().create(
        "batch_created",
        f"Batch {batch.id} registered: {batch.quantity} units of {batch.product_name}",
        SEVERITY_SUCCESS,
        {"batch_id": batch.id},
    )
    return batch


def prepare_dispatch(data: dict):
    if _already_recorded(Dispatch, data.get("id")):
        return ledger_service.get_dispatch(data["id"])

    dispatch = _write(lambda: ledger_service.prepare_dispatch(
        batch_id=data.get("batch_id"),
        quantity=data.get("quantity"),
        prepared_by=data.get("prepared_by"),
        dispatch_id=data.get("id"),
        prepared_at=data.get("prepared_at"),
        photos=data.get("photos"),
    ))

    get_sync_queue().enqueue("create_dispatch", dispatch.to_dict(), "normal")
    get_notification_bus().create(
        "dispatch_prepared",
        f"Dispatch {dispatch.id} prepared: {dispatch.quantity} units from {dispatch.batch_id}, awaiting approval",
        SEVERITY_INFO,
        {"dispatch_id": dispatch.id, "batch_id": dispatch.batch_id},
    )
    return dispatch


def approve_dispatch(dispatch_id: str, data: dict):
    dispatch = _write(lambda: ledger_service.approve_dispatch(
        dispatch_id,
        transporter=data.get("transporter"),
        driver=data.get("driver"),
        vehicle=data.get("vehicle"),
        expected_delivery=data.get("expected_delivery"),
        approved_by=data.get("approved_by"),
        approved_at=data.get("approved_at"),
    ))

    get_sync_queue().enqueue("approve_dispatch", dispatch.to_dict(), "normal")
    get_notification_bus().create(
        "dispatch_approved",
        f"Dispatch {dispatch.id} approved for {dispatch.transporter}",
        SEVERITY_INFO,
        {"dispatch_id": dispatch.id, "transporter": dispatch.transporter},
    )
    return dispatch


def confirm_departure(dispatch_id: str, data: dict):
    dispatch = _write(lambda: ledger_service.confirm_departure(
        dispatch_id,
        photos=data.get("photos"),
        departed_by=data.get("departed_by"),
        departed_at=data.get("departed_at"),
    ))

    get_sync_queue().enqueue("confirm_departure", dispatch.to_dict(), "normal")
    get_notification_bus().create(
        "dispatch_departed",
        f"Dispatch {dispatch.id} departed with vehicle {dispatch.vehicle}",
        SEVERITY_INFO,
        {"dispatch_id": dispatch.id},
    )
    return dispatch


def complete_receipt(dispatch_id: str, data: dict):
    if _already_recorded(Receipt, data.get("id")):
        return ledger_service.get_receipt(data["id"])

    receipt = _write(lambda: ledger_service.complete_receipt(
        dispatch_id,
        quantity_received=data.get("quantity_received"),
        condition=data.get("condition"),
        received_by=data.get("received_by"),
        reason=data.get("reason"),
        photos=data.get("photos"),
        receipt_id=data.get("id"),
        incident_id=data.get("incident_id"),
        received_at=data.get("received_at"),
    ))

    queue = get_sync_queue()
    bus = get_notification_bus()

    queue.enqueue("create_receipt", receipt.to_dict(), "normal")
    incident = receipt.incident
    if incident is not None:
        queue.enqueue("create_incident", incident.to_dict(), "high")
        bus.create(
            "incident_reported",
            (
                f"Incident {incident.id} on dispatch {dispatch_id}: {incident.type}, "
                f"expected {incident.quantity_expected}, received {incident.quantity_received}"
            ),
            SEVERITY_CRITICAL,
            {"incident_id": incident.id, "dispatch_id": dispatch_id, "receipt_id": receipt.id},
        )
    else:
        bus.create(
            "receipt_completed",
            f"Dispatch {dispatch_id} delivered: {receipt.quantity_received} units received intact",
            SEVERITY_SUCCESS,
            {"receipt_id": receipt.id, "dispatch_id": dispatch_id},
        )
    return receipt
