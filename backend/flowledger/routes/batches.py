# backend/flowledger/routes/batches.py
"""
Batch intake, listing, custody timeline and audit document.
"""
from flask import Blueprint, current_app, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..extensions import db
from ..services import ledger_service, report_service, timeline_service, workflow_service
from ..validation import parse_date_range


batches_bp = Blueprint("batches", __name__, url_prefix="/api/batches")


@batches_bp.route("", methods=["POST"])
def create_batch():
    """
    Register a batch (intake).

    Request body:
    {
        "product_name": str,
        "quantity": int,
        "created_by": str,
        "supplier": str (optional),
        "unit_cost": number (optional),
        "id": str (optional, replay),
        "photos": list | {label: photo} (optional)
    }

    Returns:
        201: Batch created (or already present)
        400: Invalid request
    """
    data = request.get_json(silent=True) or {}

    try:
        batch = workflow_service.register_batch(data)
        return jsonify(batch.to_dict()), 201
    except FlowLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create batch")
        return jsonify({"error": "Unexpected error"}), 500


@batches_bp.get("")
def list_batches():
    try:
        start, end = parse_date_range(request.args.get("start"), request.args.get("end"))
        batches = ledger_service.list_batches(status=request.args.get("status"), start=start, end=end)
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    return jsonify({"batches": [b.to_dict() for b in batches], "count": len(batches)}), 200


@batches_bp.get("/<batch_id>")
def get_batch(batch_id: str):
    """Batch with remaining quantity, dispatches, receipts and incidents."""
    try:
        return jsonify(ledger_service.batch_summary(batch_id)), 200
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)


@batches_bp.get("/<batch_id>/timeline")
def get_timeline(batch_id: str):
    try:
        events = timeline_service.build_batch_timeline(batch_id)
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    return jsonify({"batch_id": batch_id, "events": [e.to_dict() for e in events]}), 200


@batches_bp.get("/<batch_id>/audit")
def get_audit(batch_id: str):
    try:
        return jsonify(report_service.build_audit_document(batch_id)), 200
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)
