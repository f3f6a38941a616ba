# backend/flowledger/routes/dispatches.py
"""
Dispatch lifecycle API routes.

pending_approval -> approved -> in_transit -> completed
"""
from flask import Blueprint, current_app, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..extensions import db
from ..services import ledger_service, workflow_service
from ..validation import parse_date_range


dispatches_bp = Blueprint("dispatches", __name__, url_prefix="/api/dispatches")


def _run(action: str, func):
    try:
        record = func()
        return jsonify(record.to_dict()), 200
    except FlowLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to %s", action)
        return jsonify({"error": "Unexpected error"}), 500


@dispatches_bp.route("", methods=["POST"])
def prepare_dispatch():
    """
    Prepare a dispatch from a batch.

    Request body:
    {
        "batch_id": str,
        "quantity": int,
        "prepared_by": str,
        "photos": list | {label: photo} (optional)
    }

    Returns:
        201: Dispatch created (pending_approval)
        400: Invalid request / quantity exceeds remaining stock
        404: Batch not found
    """
    data = request.get_json(silent=True) or {}
    response, status = _run("prepare dispatch", lambda: workflow_service.prepare_dispatch(data))
    return response, (201 if status == 200 else status)


@dispatches_bp.get("")
def list_dispatches():
    try:
        start, end = parse_date_range(request.args.get("start"), request.args.get("end"))
        dispatches = ledger_service.list_dispatches(
            status=request.args.get("status"),
            batch_id=request.args.get("batch_id"),
            transporter=request.args.get("transporter"),
            start=start,
            end=end,
        )
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    return jsonify({"dispatches": [d.to_dict() for d in dispatches], "count": len(dispatches)}), 200


@dispatches_bp.get("/<dispatch_id>")
def get_dispatch(dispatch_id: str):
    try:
        dispatch = ledger_service.get_dispatch(dispatch_id)
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    body = dispatch.to_dict()
    body["receipt"] = dispatch.receipt.to_dict() if dispatch.receipt else None
    body["incidents"] = [i.to_dict() for i in dispatch.incidents]
    return jsonify(body), 200


@dispatches_bp.route("/<dispatch_id>/approve", methods=["POST"])
def approve_dispatch(dispatch_id: str):
    """
    Assign transporter, driver, vehicle and expected delivery.

    Returns:
        200: Approved
        400: Missing assignment field
        404: Dispatch not found
        409: Dispatch is not pending approval
    """
    data = request.get_json(silent=True) or {}
    return _run("approve dispatch", lambda: workflow_service.approve_dispatch(dispatch_id, data))


@dispatches_bp.route("/<dispatch_id>/depart", methods=["POST"])
def confirm_departure(dispatch_id: str):
    """
    Confirm departure. Requires at least one photo.

    Returns:
        200: In transit
        400: No departure photo
        404: Dispatch not found
        409: Dispatch is not approved
    """
    data = request.get_json(silent=True) or {}
    return _run("confirm departure", lambda: workflow_service.confirm_departure(dispatch_id, data))


@dispatches_bp.route("/<dispatch_id>/receive", methods=["POST"])
def receive_dispatch(dispatch_id: str):
    """
    Record the receipt. A quantity mismatch or damage also records an
    incident and then needs a damage photo and a reason.

    Request body:
    {
        "quantity_received": int,
        "condition": "intact" | "damaged",
        "received_by": str,
        "reason": str (required on incident),
        "photos": list | {label: photo}
    }

    Returns:
        201: Receipt recorded (incident included when raised)
        400: Invalid request / missing incident evidence
        404: Dispatch not found
        409: Dispatch is not in transit
    """
    data = request.get_json(silent=True) or {}

    try:
        receipt = workflow_service.complete_receipt(dispatch_id, data)
        body = receipt.to_dict()
        body["incident"] = receipt.incident.to_dict() if receipt.incident else None
        return jsonify(body), 201
    except FlowLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record receipt")
        return jsonify({"error": "Unexpected error"}), 500
