from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


BATCH_STATUS_IN_STORAGE = "in_storage"
BATCH_STATUS_DISPATCH_PREPARED = "dispatch_prepared"
BATCH_STATUS_PREPARED = "prepared"
BATCH_STATUS_COMPLETED = "completed"
BATCH_STATUSES = (
    BATCH_STATUS_IN_STORAGE,
    BATCH_STATUS_DISPATCH_PREPARED,
    BATCH_STATUS_PREPARED,
    BATCH_STATUS_COMPLETED,
)

CUSTODY_COMPANY = "company"
CUSTODY_TRANSPORTER = "transporter"
CUSTODY_RECEIVER = "receiver"
CUSTODY_PARTIES = (CUSTODY_COMPANY, CUSTODY_TRANSPORTER, CUSTODY_RECEIVER)

DISPATCH_STATUS_PENDING_APPROVAL = "pending_approval"
DISPATCH_STATUS_APPROVED = "approved"
DISPATCH_STATUS_IN_TRANSIT = "in_transit"
DISPATCH_STATUS_COMPLETED = "completed"
DISPATCH_STATUSES = (
    DISPATCH_STATUS_PENDING_APPROVAL,
    DISPATCH_STATUS_APPROVED,
    DISPATCH_STATUS_IN_TRANSIT,
    DISPATCH_STATUS_COMPLETED,
)

CONDITION_INTACT = "intact"
CONDITION_DAMAGED = "damaged"
RECEIPT_CONDITIONS = (CONDITION_INTACT, CONDITION_DAMAGED)

INCIDENT_TYPE_DAMAGE = "damage"
INCIDENT_TYPE_MISMATCH = "mismatch"
INCIDENT_TYPES = (INCIDENT_TYPE_DAMAGE, INCIDENT_TYPE_MISMATCH)


def receipt_has_incident(quantity_received: int, condition: str, dispatch_quantity: int) -> bool:
    """A receipt signals an incident on any quantity mismatch or damage."""
    return quantity_received != dispatch_quantity or condition == CONDITION_DAMAGED


def _photos_relationship(entity_type: str, owner: str):
    return db.relationship(
        "PhotoEvidence",
        primaryjoin=(
            f"and_(PhotoEvidence.entity_type == '{entity_type}', "
            f"foreign(PhotoEvidence.entity_id) == {owner}.id)"
        ),
        order_by="PhotoEvidence.id",
        viewonly=True,
        lazy=True,
    )


class Batch(db.Model):
    """
    A registered lot of goods in company custody.

    LIFECYCLE (derived from its dispatches, never set directly):
    1. in_storage: nothing allocated, or every shipped lot delivered with stock left
    2. dispatch_prepared: at least one dispatch awaiting approval
    3. prepared: at least one dispatch approved or in transit
    4. completed: full quantity shipped and delivered

    Batches are never deleted.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.Index("ix_batches_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(64), primary_key=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    supplier = db.Column(db.String(255), nullable=False, default="Unknown")

    # Money in cents to keep loss sums exact
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=BATCH_STATUS_IN_STORAGE, index=True)
    custody = db.Column(db.String(16), nullable=False, default=CUSTODY_COMPANY)

    photos = _photos_relationship("batch", "Batch")

    @property
    def unit_cost(self) -> float:
        return (self.unit_cost_cents or 0) / 100

    @property
    def total_value_cents(self) -> int:
        return self.quantity * (self.unit_cost_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "supplier": self.supplier,
            "unit_cost": self.unit_cost,
            "unit_cost_cents": self.unit_cost_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "status": self.status,
            "custody": self.custody,
            "photos": [p.to_dict() for p in self.photos],
        }


class Dispatch(db.Model):
    """
    A shipment of part (or all) of a batch.

    LIFECYCLE (strictly forward, no skips):
    1. pending_approval: prepared by storekeeper
    2. approved: transporter, driver, vehicle and ETA assigned
    3. in_transit: departure confirmed with photo evidence
    4. completed: receipt recorded at destination
    """
    __tablename__ = "dispatches"
    __table_args__ = (
        db.Index("ix_dispatches_status_prepared", "status", "prepared_at"),
    )

    id = db.Column(db.String(64), primary_key=True)
    batch_id = db.Column(db.String(64), db.ForeignKey("batches.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(32), nullable=False, default=DISPATCH_STATUS_PENDING_APPROVAL, index=True)
    custody = db.Column(db.String(16), nullable=False, default=CUSTODY_COMPANY)

    # Assigned at approval
    transporter = db.Column(db.String(255), nullable=True, index=True)
    driver = db.Column(db.String(255), nullable=True)
    vehicle = db.Column(db.String(64), nullable=True)
    expected_delivery = db.Column(db.DateTime(timezone=True), nullable=True)

    # Attribution and timestamps for each lifecycle stage
    prepared_by = db.Column(db.String(128), nullable=False)
    prepared_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    approved_by = db.Column(db.String(128), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    departed_by = db.Column(db.String(128), nullable=True)
    departed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    batch = db.relationship("Batch", backref=db.backref("dispatches", lazy=True, order_by="Dispatch.id"))
    photos = _photos_relationship("dispatch", "Dispatch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "status": self.status,
            "custody": self.custody,
            "transporter": self.transporter,
            "driver": self.driver,
            "vehicle": self.vehicle,
            "expected_delivery": to_utc_z(self.expected_delivery),
            "prepared_by": self.prepared_by,
            "prepared_at": to_utc_z(self.prepared_at),
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "departed_by": self.departed_by,
            "departed_at": to_utc_z(self.departed_at),
            "completed_at": to_utc_z(self.completed_at),
            "photos": [p.to_dict() for p in self.photos],
        }


class Receipt(db.Model):
    """
    Confirmation of goods arriving at the destination. Immutable.

    has_incident is derived from the receipt and its dispatch, never stored.
    """
    __tablename__ = "receipts"

    id = db.Column(db.String(64), primary_key=True)
    dispatch_id = db.Column(db.String(64), db.ForeignKey("dispatches.id"), nullable=False, unique=True, index=True)

    quantity_received = db.Column(db.Integer, nullable=False)
    condition = db.Column(db.String(16), nullable=False)

    received_by = db.Column(db.String(128), nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    dispatch = db.relationship("Dispatch", backref=db.backref("receipt", uselist=False, lazy=True))
    photos = _photos_relationship("receipt", "Receipt")

    @property
    def has_incident(self) -> bool:
        return receipt_has_incident(self.quantity_received, self.condition, self.dispatch.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatch_id": self.dispatch_id,
            "quantity_received": self.quantity_received,
            "condition": self.condition,
            "has_incident": self.has_incident,
            "received_by": self.received_by,
            "received_at": to_utc_z(self.received_at),
            "photos": [p.to_dict() for p in self.photos],
        }


class Incident(db.Model):
    """
    Recorded damage or quantity mismatch. Immutable.

    Exists if and only if its receipt has_incident.
    """
    __tablename__ = "incidents"

    id = db.Column(db.String(64), primary_key=True)
    dispatch_id = db.Column(db.String(64), db.ForeignKey("dispatches.id"), nullable=False, index=True)
    receipt_id = db.Column(db.String(64), db.ForeignKey("receipts.id"), nullable=False, unique=True)

    type = db.Column(db.String(16), nullable=False, index=True)  # damage, mismatch
    quantity_expected = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)

    reported_by = db.Column(db.String(128), nullable=False)
    reported_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    custody_at_incident = db.Column(db.String(16), nullable=False)

    dispatch = db.relationship("Dispatch", backref=db.backref("incidents", lazy=True, order_by="Incident.id"))
    receipt = db.relationship("Receipt", backref=db.backref("incident", uselist=False, lazy=True))
    photos = _photos_relationship("incident", "Incident")

    @property
    def quantity_lost(self) -> int:
        return self.quantity_expected - self.quantity_received

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatch_id": self.dispatch_id,
            "receipt_id": self.receipt_id,
            "type": self.type,
            "quantity_expected": self.quantity_expected,
            "quantity_received": self.quantity_received,
            "reason": self.reason,
            "reported_by": self.reported_by,
            "reported_at": to_utc_z(self.reported_at),
            "custody_at_incident": self.custody_at_incident,
            "photos": [p.to_dict() for p in self.photos],
        }


class PhotoEvidence(db.Model):
    """
    Opaque photo attachment produced by the capture widget.

    Only counted for evidence checks; pixel content is never inspected.
    """
    __tablename__ = "photo_evidence"
    __table_args__ = (
        db.Index("ix_photo_evidence_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # batch, dispatch, receipt, incident
    entity_type = db.Column(db.String(16), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)

    # doc, items, packed, sealed, departure, received, damage
    label = db.Column(db.String(32), nullable=False)

    captured_at = db.Column(db.DateTime(timezone=True), nullable=False)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    image_ref = db.Column(db.String(512), nullable=False)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = {"lat": self.latitude, "lng": self.longitude}
        return {
            "label": self.label,
            "timestamp": to_utc_z(self.captured_at),
            "location": location,
            "image_ref": self.image_ref,
            "size_bytes": self.size_bytes,
        }
