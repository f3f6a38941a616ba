# backend/flowledger/routes/sync.py
"""
Offline queue inspection and control.

The queue surfaces "locally durable, remotely pending" work; these
endpoints expose its counts and let an operator drain or retry it.
"""
from flask import Blueprint, current_app, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..runtime import get_sync_queue


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/status")
def sync_status():
    return jsonify(get_sync_queue().get_status()), 200


@sync_bp.get("/items")
def sync_items():
    try:
        items = get_sync_queue().items(status=request.args.get("status"))
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    return jsonify({"items": items, "count": len(items)}), 200


@sync_bp.post("/drain")
def drain():
    """
    Drain the queue now.

    Returns:
        200: Drain result, or {"skipped": true} when offline or already draining
    """
    queue = get_sync_queue()
    data = request.get_json(silent=True) or {}

    try:
        result = queue.drain(ignore_backoff=bool(data.get("ignore_backoff", False)))
    except Exception:
        current_app.logger.exception("Sync drain failed")
        return jsonify({"error": "Unexpected error"}), 500

    if result is None:
        return jsonify({"skipped": True, "status": queue.get_status()}), 200
    return jsonify({"skipped": False, **result.to_dict(), "status": queue.get_status()}), 200


@sync_bp.post("/retry-failed")
def retry_failed():
    queue = get_sync_queue()
    reset = queue.retry_failed()
    return jsonify({"reset": reset, "status": queue.get_status()}), 200


@sync_bp.post("/clear-synced")
def clear_synced():
    return jsonify({"cleared": get_sync_queue().clear_synced()}), 200


@sync_bp.post("/connectivity")
def connectivity():
    """Connectivity signal: {"online": bool}. Going online drains immediately."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("online"), bool):
        return jsonify({"error": "online must be a boolean"}), 400

    queue = get_sync_queue()
    result = queue.set_online(data["online"])
    return jsonify({
        "status": queue.get_status(),
        "drain": result.to_dict() if result is not None else None,
    }), 200
