# backend/flowledger/routes/system.py
"""
Health check plus full-state backup and restore.
"""

import time

from flask import Blueprint, current_app, jsonify, request

from ..errors import FlowLedgerError, http_status_for
from ..extensions import db
from ..models import Batch, Dispatch
from ..runtime import get_notification_bus, get_sync_queue
from ..services import backup_service
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity with two cheap counts.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        batch_count = db.session.query(Batch).count()
        dispatch_count = db.session.query(Dispatch).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"batches": batch_count, "dispatches": dispatch_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    queue_status = get_sync_queue().get_status()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {
            "database": database,
            "sync_queue": {
                "status": "degraded" if queue_status["failed"] else "healthy",
                **queue_status,
            },
        },
    }), (200 if healthy else 503)


@system_bp.get("/api/system/backup")
def backup():
    document = backup_service.export_state(bus=get_notification_bus(), queue=get_sync_queue())
    return jsonify(document), 200


@system_bp.post("/api/system/restore")
def restore():
    document = request.get_json(silent=True)
    try:
        counts = backup_service.import_state(document, bus=get_notification_bus(), queue=get_sync_queue())
        return jsonify({"restored": counts}), 200
    except FlowLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Restore failed")
        return jsonify({"error": "Unexpected error"}), 500
