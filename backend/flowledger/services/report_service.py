# Overview: Export, audit and summary documents built from the ledger.

from __future__ import annotations

import json
import zlib
from datetime import datetime

from ..extensions import db
from ..models import Batch, Dispatch, Incident
from ..models.ledger import DISPATCH_STATUS_COMPLETED
from ..time_utils import as_utc_naive, to_utc_z, utcnow
from . import analytics_service, ledger_service
from .timeline_service import CUSTODY_TRANSFER_EVENTS, collect_batch_events


def _money(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _fixed(value: float) -> str:
    return f"{value:.2f}"


def canonical_json(document: dict) -> str:
    """Stable serialization: sorted keys, no insignificant whitespace."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def document_checksum(content: dict) -> str:
    """CRC-32 of the canonical content as 8 uppercase hex digits. Tamper-evidence only, not a signature."""
    return f"{zlib.crc32(canonical_json(content).encode('utf-8')) & 0xFFFFFFFF:08X}"


def format_duration(start: datetime | None, end: datetime | None) -> str:
    if start is None or end is None:
        return "N/A"
    total_hours = int((end - start).total_seconds() // 3600)
    days, hours = divmod(total_hours, 24)
    if days > 0:
        return f"{days}d {hours}h"
    return f"{hours}h"


def build_export_document(*, days: int = 30, now: datetime | None = None) -> dict:
    """
    Operator export of the analytics window.

    Metric values are pre-formatted strings with two decimals; identical
    ledger state and `now` give an identical document.
    """
    now = as_utc_naive(now) if now is not None else utcnow()
    metrics = analytics_service.compute_analytics(days=days, now=now)

    transporters = {
        name: {
            "total": s["total"],
            "completed": s["completed"],
            "incidents": s["incidents"],
            "trustScore": round(s["trust_score"], 2),
            "completionRate": round(s["completion_rate"], 2),
            "totalRevenue": _money(s["total_revenue_cents"]),
            "avgDeliveryTime": round(s["avg_delivery_time"], 2),
        }
        for name, s in metrics["transporter_stats"].items()
    }

    return {
        "generatedAt": to_utc_z(now),
        "timeRange": f"{days} days",
        "metrics": {
            "totalBatches": metrics["total_batches"],
            "totalValue": _money(metrics["total_value_cents"]),
            "lossValue": _money(metrics["loss_value_cents"]),
            "lossPercentage": _fixed(metrics["loss_percentage"]),
            "successRate": _fixed(metrics["success_rate"]),
            "avgDeliveryTime": _fixed(metrics["avg_delivery_time"]),
        },
        "transporters": transporters,
        "incidents": metrics["incidents_by_type"],
    }


def render_json(document: dict) -> str:
    return json.dumps(document, sort_keys=True, indent=2)


def build_audit_document(batch_id: str, *, now: datetime | None = None) -> dict:
    """
    Chain-of-custody audit for one batch: summary table, ordered timeline,
    closing statistics and a content checksum.

    Raises:
        NotFoundError: batch does not exist
    """
    batch = ledger_service.get_batch(batch_id)
    events = collect_batch_events(batch)
    incidents = ledger_service.list_incidents(batch_id=batch.id)

    loss_cents = sum(i.quantity_lost * (batch.unit_cost_cents or 0) for i in incidents)

    content = {
        "batch": {
            "id": batch.id,
            "product_name": batch.product_name,
            "quantity": batch.quantity,
            "supplier": batch.supplier,
            "unit_cost": _money(batch.unit_cost_cents or 0),
            "total_value": _money(batch.total_value_cents),
            "created_by": batch.created_by,
            "created_at": to_utc_z(batch.created_at),
            "status": batch.status,
            "custody": batch.custody,
        },
        "timeline": [e.to_dict() for e in events],
        "summary": {
            "total_events": len(events),
            "photo_count": sum(e.photo_count for e in events),
            "custody_transfers": sum(1 for e in events if e.type in CUSTODY_TRANSFER_EVENTS),
            "total_incidents": len(incidents),
            "incident_loss_value": _money(loss_cents),
            "duration": format_duration(
                events[0].timestamp if events else None,
                events[-1].timestamp if events else None,
            ),
            "status": "INCIDENT RECORDED" if incidents else "CLEAN",
        },
    }

    return {
        **content,
        "generated_at": to_utc_z(as_utc_naive(now) if now is not None else utcnow()),
        "checksum": document_checksum(content),
    }


def build_summary_report(*, now: datetime | None = None) -> dict:
    """All-batches totals, loss value and loss percentage."""
    batches = db.session.query(Batch).order_by(Batch.id).all()
    dispatches = db.session.query(Dispatch).order_by(Dispatch.id).all()
    incidents = db.session.query(Incident).order_by(Incident.id).all()

    total_value_cents = sum(b.total_value_cents for b in batches)
    loss_cents = sum(
        i.quantity_lost * (i.dispatch.batch.unit_cost_cents or 0)
        for i in incidents
        if i.dispatch is not None and i.dispatch.batch is not None
    )

    return {
        "generated_at": to_utc_z(as_utc_naive(now) if now is not None else utcnow()),
        "total_batches": len(batches),
        "total_value": _money(total_value_cents),
        "total_dispatches": len(dispatches),
        "completed_deliveries": sum(1 for d in dispatches if d.status == DISPATCH_STATUS_COMPLETED),
        "total_incidents": len(incidents),
        "total_loss_value": _money(loss_cents),
        "loss_percentage": _fixed(loss_cents / total_value_cents * 100 if total_value_cents else 0.0),
        "batches": [
            {
                "id": b.id,
                "product_name": b.product_name,
                "quantity": b.quantity,
                "remaining_quantity": ledger_service.remaining_quantity(b),
                "status": b.status,
                "custody": b.custody,
                "total_value": _money(b.total_value_cents),
            }
            for b in batches
        ],
    }
