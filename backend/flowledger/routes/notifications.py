from flask import Blueprint, current_app, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..runtime import get_notification_bus


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
def list_notifications():
    """All notifications, newest first. ?severity= filters, ?unread=true hides read ones."""
    bus = get_notification_bus()
    severity = request.args.get("severity")
    unread_only = request.args.get("unread", "false").lower() == "true"

    try:
        items = bus.get_by_severity(severity) if severity else bus.get_all()
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    if unread_only:
        items = [n for n in items if not n["read"]]
    return jsonify({"notifications": items, "unread_count": bus.get_unread_count()}), 200


@notifications_bp.get("/unread-count")
def unread_count():
    return jsonify({"unread_count": get_notification_bus().get_unread_count()}), 200


@notifications_bp.post("/<notification_id>/read")
def mark_read(notification_id: str):
    if not get_notification_bus().mark_as_read(notification_id):
        return jsonify({"error": "Notification not found"}), 404
    return jsonify({"id": notification_id, "read": True}), 200


@notifications_bp.post("/read-all")
def mark_all_read():
    return jsonify({"updated": get_notification_bus().mark_all_as_read()}), 200


@notifications_bp.delete("/<notification_id>")
def delete_notification(notification_id: str):
    if not get_notification_bus().delete(notification_id):
        return jsonify({"error": "Notification not found"}), 404
    return jsonify({"deleted": notification_id}), 200


@notifications_bp.post("/clear-old")
def clear_old():
    data = request.get_json(silent=True) or {}
    days = data.get("days", current_app.config["NOTIFICATION_CLEAR_DAYS"])
    if isinstance(days, bool) or not isinstance(days, int):
        return jsonify({"error": "days must be an integer"}), 400

    try:
        removed = get_notification_bus().clear_old(days)
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    return jsonify({"removed": removed}), 200
