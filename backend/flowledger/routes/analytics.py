from flask import Blueprint, Response, current_app, jsonify, request

from ..errors import FlowLedgerError, ValidationError, http_status_for
from ..services import analytics_service, report_service


analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")


def _days() -> int:
    raw = request.args.get("days")
    if raw is None or not raw.strip():
        return current_app.config["ANALYTICS_DEFAULT_DAYS"]
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("days must be a positive integer")


@analytics_bp.get("")
def get_analytics():
    """Window metrics, transporter stats and the daily trend series."""
    try:
        days = _days()
        metrics = analytics_service.compute_analytics(days=days)
        metrics["daily_trend"] = analytics_service.daily_trend(days=days)
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    return jsonify(metrics), 200


@analytics_bp.get("/export")
def export_analytics():
    try:
        document = report_service.build_export_document(days=_days())
    except FlowLedgerError as e:
        return jsonify({"error": str(e)}), http_status_for(e)

    filename = f"flowledger-analytics-{document['generatedAt'][:10]}.json"
    return Response(
        report_service.render_json(document),
        mimetype="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@analytics_bp.get("/summary")
def summary_report():
    return jsonify(report_service.build_summary_report()), 200
