from flask import Blueprint, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..services import ledger_service
from ..validation import parse_date_range


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api")


@ledger_bp.get("/receipts")
def list_receipts():
    try:
        start, end = parse_date_range(request.args.get("start"), request.args.get("end"))
        receipts = ledger_service.list_receipts(
            dispatch_id=request.args.get("dispatch_id"),
            batch_id=request.args.get("batch_id"),
            start=start,
            end=end,
        )
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    return jsonify({"receipts": [r.to_dict() for r in receipts], "count": len(receipts)}), 200


@ledger_bp.get("/incidents")
def list_incidents():
    try:
        start, end = parse_date_range(request.args.get("start"), request.args.get("end"))
        incidents = ledger_service.list_incidents(
            dispatch_id=request.args.get("dispatch_id"),
            batch_id=request.args.get("batch_id"),
            incident_type=request.args.get("type"),
            start=start,
            end=end,
        )
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    return jsonify({"incidents": [i.to_dict() for i in incidents], "count": len(incidents)}), 200
