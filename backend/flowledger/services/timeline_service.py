# Overview: Custody timeline reconstruction for a single batch.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..models import Batch
from ..models.ledger import CUSTODY_COMPANY, CUSTODY_RECEIVER, CUSTODY_TRANSPORTER
from ..time_utils import to_utc_z
from . import ledger_service


EVENT_CREATED = "batch_created"
EVENT_PREPARED = "dispatch_prepared"
EVENT_APPROVED = "dispatch_approved"
EVENT_DEPARTED = "dispatch_departed"
EVENT_RECEIVED = "receipt_recorded"
EVENT_INCIDENT = "incident_reported"

# Tie-break for identical timestamps
EVENT_PRECEDENCE = {
    EVENT_CREATED: 0,
    EVENT_PREPARED: 1,
    EVENT_APPROVED: 2,
    EVENT_DEPARTED: 3,
    EVENT_RECEIVED: 4,
    EVENT_INCIDENT: 5,
}

# Events that hand goods to a new party
CUSTODY_TRANSFER_EVENTS = {EVENT_APPROVED, EVENT_RECEIVED}


@dataclass(frozen=True)
class TimelineEvent:
    type: str
    timestamp: datetime
    actor: str | None
    custody: str
    entity_id: str
    details: str
    photo_count: int = 0
    is_incident: bool = False
    data: dict = field(default_factory=dict)

    def sort_key(self) -> tuple:
        return (self.timestamp, EVENT_PRECEDENCE[self.type], self.entity_id)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "timestamp": to_utc_z(self.timestamp),
            "actor": self.actor,
            "custody": self.custody,
            "entity_id": self.entity_id,
            "details": self.details,
            "photo_count": self.photo_count,
            "is_incident": self.is_incident,
            "data": dict(self.data),
        }


def _dispatch_events(dispatch) -> list[TimelineEvent]:
    departure_photos = [p for p in dispatch.photos if p.label == "departure"]
    prep_photos = [p for p in dispatch.photos if p.label != "departure"]

    events = [
        TimelineEvent(
            type=EVENT_PREPARED,
            timestamp=dispatch.prepared_at,
            actor=dispatch.prepared_by,
            custody=CUSTODY_COMPANY,
            entity_id=dispatch.id,
            details=f"{dispatch.quantity} units prepared for shipment",
            photo_count=len(prep_photos),
            data={"quantity": dispatch.quantity},
        )
    ]

    if dispatch.approved_at:
        events.append(
            TimelineEvent(
                type=EVENT_APPROVED,
                timestamp=dispatch.approved_at,
                actor=dispatch.approved_by,
                custody=CUSTODY_TRANSPORTER,
                entity_id=dispatch.id,
                details=(
                    f"Assigned to {dispatch.transporter} "
                    f"(Driver: {dispatch.driver}, Vehicle: {dispatch.vehicle})"
                ),
                data={
                    "transporter": dispatch.transporter,
                    "driver": dispatch.driver,
                    "vehicle": dispatch.vehicle,
                    "expected_delivery": to_utc_z(dispatch.expected_delivery),
                },
            )
        )

    if dispatch.departed_at:
        events.append(
            TimelineEvent(
                type=EVENT_DEPARTED,
                timestamp=dispatch.departed_at,
                actor=dispatch.departed_by or dispatch.driver,
                custody=CUSTODY_TRANSPORTER,
                entity_id=dispatch.id,
                details=f"Vehicle {dispatch.vehicle} departed. ETA: {to_utc_z(dispatch.expected_delivery)}",
                photo_count=len(departure_photos),
                data={"vehicle": dispatch.vehicle},
            )
        )

    return events


def collect_batch_events(batch: Batch) -> list[TimelineEvent]:
    """Ordered custody history of a batch."""
    events = [
        TimelineEvent(
            type=EVENT_CREATED,
            timestamp=batch.created_at,
            actor=batch.created_by,
            custody=CUSTODY_COMPANY,
            entity_id=batch.id,
            details=f"{batch.quantity} units of {batch.product_name} registered in system",
            photo_count=len(batch.photos),
            data={"quantity": batch.quantity, "supplier": batch.supplier},
        )
    ]

    for dispatch in batch.dispatches:
        events.extend(_dispatch_events(dispatch))

        receipt = dispatch.receipt
        if receipt is not None:
            clean = not receipt.has_incident
            events.append(
                TimelineEvent(
                    type=EVENT_RECEIVED,
                    timestamp=receipt.received_at,
                    actor=receipt.received_by,
                    custody=CUSTODY_RECEIVER,
                    entity_id=receipt.id,
                    details=f"Received {receipt.quantity_received} units in {receipt.condition} condition",
                    photo_count=len(receipt.photos),
                    is_incident=not clean,
                    data={"status": "clean" if clean else "incident", "dispatch_id": dispatch.id},
                )
            )

        for incident in dispatch.incidents:
            events.append(
                TimelineEvent(
                    type=EVENT_INCIDENT,
                    timestamp=incident.reported_at,
                    actor=incident.reported_by,
                    custody=incident.custody_at_incident,
                    entity_id=incident.id,
                    details=(
                        f"{incident.type}: {incident.reason}. "
                        f"Expected: {incident.quantity_expected}, Received: {incident.quantity_received}"
                    ),
                    photo_count=len(incident.photos),
                    is_incident=True,
                    data={"incident_type": incident.type, "quantity_lost": incident.quantity_lost},
                )
            )

    events.sort(key=TimelineEvent.sort_key)
    return events


def build_batch_timeline(batch_id: str) -> list[TimelineEvent]:
    """
    Raises:
        NotFoundError: batch does not exist
    """
    return collect_batch_events(ledger_service.get_batch(batch_id))
