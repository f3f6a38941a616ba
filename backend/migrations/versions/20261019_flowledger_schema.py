"""Create FlowLedger custody ledger, id sequences and key-value storage

Revision ID: 20261019_flowledger_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_flowledger_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "batches",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("supplier", sa.String(255), nullable=False),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("custody", sa.String(16), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_batches"),
    )
    with op.batch_alter_table("batches", schema=None) as batch_op:
        batch_op.create_index("ix_batches_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_batches_status", ["status"], unique=False)
        batch_op.create_index("ix_batches_status_created", ["status", "created_at"], unique=False)

    op.create_table(
        "dispatches",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("custody", sa.String(16), nullable=False),
        sa.Column("transporter", sa.String(255), nullable=True),
        sa.Column("driver", sa.String(255), nullable=True),
        sa.Column("vehicle", sa.String(64), nullable=True),
        sa.Column("expected_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("prepared_by", sa.String(128), nullable=False),
        sa.Column("prepared_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by", sa.String(128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("departed_by", sa.String(128), nullable=True),
        sa.Column("departed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"], name="fk_dispatches_batch_id_batches"),
        sa.PrimaryKeyConstraint("id", name="pk_dispatches"),
    )
    with op.batch_alter_table("dispatches", schema=None) as batch_op:
        batch_op.create_index("ix_dispatches_batch_id", ["batch_id"], unique=False)
        batch_op.create_index("ix_dispatches_status", ["status"], unique=False)
        batch_op.create_index("ix_dispatches_transporter", ["transporter"], unique=False)
        batch_op.create_index("ix_dispatches_prepared_at", ["prepared_at"], unique=False)
        batch_op.create_index("ix_dispatches_status_prepared", ["status", "prepared_at"], unique=False)

    op.create_table(
        "receipts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("dispatch_id", sa.String(64), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False),
        sa.Column("condition", sa.String(16), nullable=False),
        sa.Column("received_by", sa.String(128), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["dispatch_id"], ["dispatches.id"], name="fk_receipts_dispatch_id_dispatches"),
        sa.PrimaryKeyConstraint("id", name="pk_receipts"),
    )
    with op.batch_alter_table("receipts", schema=None) as batch_op:
        batch_op.create_index("ix_receipts_dispatch_id", ["dispatch_id"], unique=True)
        batch_op.create_index("ix_receipts_received_at", ["received_at"], unique=False)

    op.create_table(
        "incidents",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("dispatch_id", sa.String(64), nullable=False),
        sa.Column("receipt_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("quantity_expected", sa.Integer(), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("reported_by", sa.String(128), nullable=False),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("custody_at_incident", sa.String(16), nullable=False),
        sa.ForeignKeyConstraint(["dispatch_id"], ["dispatches.id"], name="fk_incidents_dispatch_id_dispatches"),
        sa.ForeignKeyConstraint(["receipt_id"], ["receipts.id"], name="fk_incidents_receipt_id_receipts"),
        sa.PrimaryKeyConstraint("id", name="pk_incidents"),
        sa.UniqueConstraint("receipt_id", name="uq_incidents_receipt_id"),
    )
    with op.batch_alter_table("incidents", schema=None) as batch_op:
        batch_op.create_index("ix_incidents_dispatch_id", ["dispatch_id"], unique=False)
        batch_op.create_index("ix_incidents_type", ["type"], unique=False)
        batch_op.create_index("ix_incidents_reported_at", ["reported_at"], unique=False)

    op.create_table(
        "photo_evidence",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("label", sa.String(32), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("image_ref", sa.String(512), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id", name="pk_photo_evidence"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("photo_evidence", schema=None) as batch_op:
        batch_op.create_index("ix_photo_evidence_entity", ["entity_type", "entity_id"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_document_sequences"),
        sa.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("document_sequences", schema=None) as batch_op:
        batch_op.create_index("ix_document_sequences_document_type", ["document_type"], unique=False)

    op.create_table(
        "storage_entries",
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("key", name="pk_storage_entries"),
    )


def downgrade():
    op.drop_table("storage_entries")

    with op.batch_alter_table("document_sequences", schema=None) as batch_op:
        batch_op.drop_index("ix_document_sequences_document_type")
    op.drop_table("document_sequences")

    with op.batch_alter_table("photo_evidence", schema=None) as batch_op:
        batch_op.drop_index("ix_photo_evidence_entity")
    op.drop_table("photo_evidence")

    with op.batch_alter_table("incidents", schema=None) as batch_op:
        batch_op.drop_index("ix_incidents_reported_at")
        batch_op.drop_index("ix_incidents_type")
        batch_op.drop_index("ix_incidents_dispatch_id")
    op.drop_table("incidents")

    with op.batch_alter_table("receipts", schema=None) as batch_op:
        batch_op.drop_index("ix_receipts_received_at")
        batch_op.drop_index("ix_receipts_dispatch_id")
    op.drop_table("receipts")

    with op.batch_alter_table("dispatches", schema=None) as batch_op:
        batch_op.drop_index("ix_dispatches_status_prepared")
        batch_op.drop_index("ix_dispatches_prepared_at")
        batch_op.drop_index("ix_dispatches_transporter")
        batch_op.drop_index("ix_dispatches_status")
        batch_op.drop_index("ix_dispatches_batch_id")
    op.drop_table("dispatches")

    with op.batch_alter_table("batches", schema=None) as batch_op:
        batch_op.drop_index("ix_batches_status_created")
        batch_op.drop_index("ix_batches_status")
        batch_op.drop_index("ix_batches_created_at")
    op.drop_table("batches")
