# Overview: Full-state backup and idempotent restore.

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from ..errors import ValidationError
from ..extensions import db
from ..models import Batch, Dispatch, Incident, PhotoEvidence, Receipt
from ..models.ledger import DISPATCH_STATUS_APPROVED, DISPATCH_STATUS_PENDING_APPROVAL
from ..time_utils import as_utc_naive, to_utc_z, utcnow
from . import ledger_service
from .concurrency import commit_with_retry


BACKUP_VERSION = "1.0"
BACKUP_APP = "FlowLedger"


def _photo_rows() -> list[dict]:
    rows = db.session.query(PhotoEvidence).order_by(PhotoEvidence.id).all()
    return [{"entity_type": p.entity_type, "entity_id": p.entity_id, **p.to_dict()} for p in rows]


def export_state(*, bus, queue, now: datetime | None = None) -> dict:
    """Snapshot of every ledger collection plus the notification log and the outbox."""
    return {
        "version": BACKUP_VERSION,
        "exportedAt": to_utc_z(as_utc_naive(now) if now is not None else utcnow()),
        "app": BACKUP_APP,
        "data": {
            "batches": [b.to_dict() for b in db.session.query(Batch).order_by(Batch.id)],
            "dispatches": [d.to_dict() for d in db.session.query(Dispatch).order_by(Dispatch.id)],
            "receipts": [r.to_dict() for r in db.session.query(Receipt).order_by(Receipt.id)],
            "incidents": [i.to_dict() for i in db.session.query(Incident).order_by(Incident.id)],
            "photos": _photo_rows(),
            "notifications": bus.get_all(),
            "syncQueue": queue.items(),
        },
    }


def _strip(photo: dict) -> dict:
    return {k: photo.get(k) for k in ("label", "timestamp", "location", "image_ref", "size_bytes")}


def _photos_by_entity(data: dict) -> dict:
    grouped = defaultdict(list)
    if data.get("photos") is not None:
        for p in data["photos"]:
            grouped[(p.get("entity_type"), p.get("entity_id"))].append(_strip(p))
        return grouped

    # Older backups only carry photos nested in each record
    for entity_type, key in (("batch", "batches"), ("dispatch", "dispatches"), ("receipt", "receipts"), ("incident", "incidents")):
        for record in data.get(key) or []:
            grouped[(entity_type, record.get("id"))].extend(_strip(p) for p in record.get("photos") or [])
    return grouped


def _replay_ledger(data: dict) -> dict:
    photos = _photos_by_entity(data)
    counts = {"batches": 0, "dispatches": 0, "receipts": 0, "incidents": 0}

    for b in sorted(data.get("batches") or [], key=lambda r: (r.get("created_at") or "", r.get("id") or "")):
        ledger_service.create_batch(
            product_name=b.get("product_name"),
            quantity=b.get("quantity"),
            created_by=b.get("created_by"),
            supplier=b.get("supplier"),
            unit_cost=b.get("unit_cost", 0),
            batch_id=b.get("id"),
            created_at=b.get("created_at"),
            photos=photos.get(("batch", b.get("id"))) or None,
        )
        counts["batches"] += 1

    for d in sorted(data.get("dispatches") or [], key=lambda r: (r.get("prepared_at") or "", r.get("id") or "")):
        dispatch_photos = photos.get(("dispatch", d.get("id")), [])
        dispatch = ledger_service.prepare_dispatch(
            batch_id=d.get("batch_id"),
            quantity=d.get("quantity"),
            prepared_by=d.get("prepared_by"),
            dispatch_id=d.get("id"),
            prepared_at=d.get("prepared_at"),
            photos=[p for p in dispatch_photos if p["label"] != "departure"] or None,
        )
        if d.get("approved_at") and dispatch.status == DISPATCH_STATUS_PENDING_APPROVAL:
            ledger_service.approve_dispatch(
                dispatch.id,
                transporter=d.get("transporter"),
                driver=d.get("driver"),
                vehicle=d.get("vehicle"),
                expected_delivery=d.get("expected_delivery"),
                approved_by=d.get("approved_by"),
                approved_at=d.get("approved_at"),
            )
        if d.get("departed_at") and dispatch.status == DISPATCH_STATUS_APPROVED:
            ledger_service.confirm_departure(
                dispatch.id,
                photos=[p for p in dispatch_photos if p["label"] == "departure"],
                departed_by=d.get("departed_by"),
                departed_at=d.get("departed_at"),
            )
        counts["dispatches"] += 1

    incidents_by_receipt = {i.get("receipt_id"): i for i in data.get("incidents") or []}
    for r in sorted(data.get("receipts") or [], key=lambda r: (r.get("received_at") or "", r.get("id") or "")):
        incident = incidents_by_receipt.get(r.get("id"))
        receipt_photos = list(photos.get(("receipt", r.get("id")), []))
        if incident is not None:
            receipt_photos += photos.get(("incident", incident.get("id")), [])

        ledger_service.complete_receipt(
            r.get("dispatch_id"),
            quantity_received=r.get("quantity_received"),
            condition=r.get("condition"),
            received_by=r.get("received_by"),
            reason=incident.get("reason") if incident else None,
            photos=receipt_photos or None,
            receipt_id=r.get("id"),
            incident_id=incident.get("id") if incident else None,
            received_at=r.get("received_at"),
        )
        counts["receipts"] += 1
        if incident is not None:
            counts["incidents"] += 1

    return counts


def import_state(document: dict, *, bus, queue) -> dict:
    """
    Re-apply a backup. Ledger records already present (by id) are left as
    they are; the notification log and outbox are replaced when present.

    Raises:
        ValidationError: not a FlowLedger backup, or a record fails validation
        NotFoundError / InvalidTransitionError: inconsistent backup contents
    """
    if not isinstance(document, dict) or document.get("app") != BACKUP_APP:
        raise ValidationError("Not a FlowLedger backup")
    if document.get("version") != BACKUP_VERSION:
        raise ValidationError(f"Unsupported backup version: {document.get('version')}")
    data = document.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Backup is missing its data section")

    try:
        counts = _replay_ledger(data)
    except Exception:
        db.session.rollback()
        raise
    commit_with_retry()

    if isinstance(data.get("notifications"), list):
        counts["notifications"] = bus.replace_all(data["notifications"])
    if isinstance(data.get("syncQueue"), list):
        counts["sync_queue"] = queue.replace_all(data["syncQueue"])
    return counts
