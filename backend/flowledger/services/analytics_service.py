# Overview: System-wide custody analytics over a trailing window.
# Pure over ledger state and the supplied `now`; nothing is cached.

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from ..errors import ValidationError
from ..extensions import db
from ..models import Batch, Dispatch, Incident, Receipt
from ..models.ledger import DISPATCH_STATUS_COMPLETED, DISPATCH_STATUS_IN_TRANSIT
from ..time_utils import as_utc_naive, day_bounds, to_utc_z, utcnow


TOP_TRANSPORTER_LIMIT = 5
MAX_WINDOW_DAYS = 3650


def _window(days: int, now: datetime | None) -> tuple[datetime, datetime]:
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise ValidationError("days must be a positive integer")
    if days > MAX_WINDOW_DAYS:
        raise ValidationError(f"days must be at most {MAX_WINDOW_DAYS}")
    end = as_utc_naive(now) if now is not None else utcnow()
    return end - timedelta(days=days), end


def _between(query, column, start: datetime, end: datetime, *, inclusive_end: bool = True):
    query = query.filter(column >= start)
    return query.filter(column <= end) if inclusive_end else query.filter(column < end)


def percent_change(current: int, previous: int) -> float:
    """Window-over-window change; 0 when the previous window is empty."""
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


def trust_score(total: int, incidents: int) -> float:
    """Share of a transporter's dispatches without an incident, 100 with no history."""
    if total <= 0:
        return 100.0
    return (total - incidents) / total * 100


def _loss_cents(incident: Incident) -> int:
    dispatch = incident.dispatch
    batch = dispatch.batch if dispatch is not None else None
    if batch is None:
        return 0
    return incident.quantity_lost * (batch.unit_cost_cents or 0)


def _delivery_hours(receipt: Receipt) -> float | None:
    dispatch = receipt.dispatch
    if dispatch is None or dispatch.departed_at is None:
        return None
    return (receipt.received_at - dispatch.departed_at).total_seconds() / 3600


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _transporter_stats(dispatches: list[Dispatch], incidents: list[Incident], receipts: list[Receipt]) -> dict:
    stats: dict[str, dict] = {}
    hours: dict[str, list[float]] = {}

    for d in dispatches:
        if not d.transporter:
            continue
        entry = stats.setdefault(
            d.transporter,
            {"total": 0, "completed": 0, "incidents": 0, "total_revenue_cents": 0},
        )
        entry["total"] += 1
        if d.status == DISPATCH_STATUS_COMPLETED:
            entry["completed"] += 1
        if d.batch is not None:
            entry["total_revenue_cents"] += d.batch.total_value_cents

    for inc in incidents:
        name = inc.dispatch.transporter if inc.dispatch is not None else None
        if name in stats:
            stats[name]["incidents"] += 1

    for r in receipts:
        name = r.dispatch.transporter if r.dispatch is not None else None
        elapsed = _delivery_hours(r)
        if name in stats and elapsed is not None:
            hours.setdefault(name, []).append(elapsed)

    for name, entry in stats.items():
        entry["trust_score"] = trust_score(entry["total"], entry["incidents"])
        entry["completion_rate"] = entry["completed"] / entry["total"] * 100 if entry["total"] else 0.0
        entry["total_revenue"] = entry["total_revenue_cents"] / 100
        entry["avg_delivery_time"] = _mean(hours.get(name, []))

    return {name: stats[name] for name in sorted(stats)}


def top_transporters(transporter_stats: dict, limit: int = TOP_TRANSPORTER_LIMIT) -> list[dict]:
    ranked = sorted(transporter_stats.items(), key=lambda kv: (-kv[1]["trust_score"], kv[0]))
    return [{"name": name, **entry} for name, entry in ranked[:limit]]


def daily_trend(*, days: int, now: datetime | None = None) -> list[dict]:
    """One row per UTC calendar day ending today: batches created and incidents reported."""
    _, end = _window(days, now)
    first_day = end.date() - timedelta(days=days - 1)
    range_start, _ = day_bounds(first_day)
    _, range_end = day_bounds(end.date())

    batch_days = Counter(
        ts.date() for (ts,) in _between(db.session.query(Batch.created_at), Batch.created_at, range_start, range_end)
    )
    incident_days = Counter(
        ts.date()
        for (ts,) in _between(db.session.query(Incident.reported_at), Incident.reported_at, range_start, range_end)
    )

    rows = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        rows.append({"date": day.isoformat(), "batches": batch_days[day], "incidents": incident_days[day]})
    return rows


def compute_analytics(*, days: int = 30, now: datetime | None = None) -> dict:
    """
    Metrics over [now - days, now] (both ends inclusive).

    Windowing: batches by created_at, dispatches by prepared_at,
    incidents by reported_at, receipts by received_at. The previous
    window for trends is [now - 2*days, now - days).
    """
    start, end = _window(days, now)
    prev_start = start - timedelta(days=days)

    batches = _between(db.session.query(Batch), Batch.created_at, start, end).order_by(Batch.id).all()
    dispatches = _between(db.session.query(Dispatch), Dispatch.prepared_at, start, end).order_by(Dispatch.id).all()
    incidents = _between(db.session.query(Incident), Incident.reported_at, start, end).order_by(Incident.id).all()
    receipts = _between(db.session.query(Receipt), Receipt.received_at, start, end).order_by(Receipt.id).all()

    total_value_cents = sum(b.total_value_cents for b in batches)
    loss_value_cents = sum(_loss_cents(i) for i in incidents)

    total_dispatches = len(dispatches)
    completed_dispatches = sum(1 for d in dispatches if d.status == DISPATCH_STATUS_COMPLETED)
    success_rate = completed_dispatches / total_dispatches * 100 if total_dispatches else 0.0

    delivery_hours = [h for h in (_delivery_hours(r) for r in receipts) if h is not None]

    prev_batches = _between(
        db.session.query(Batch), Batch.created_at, prev_start, start, inclusive_end=False
    ).count()
    prev_incidents = _between(
        db.session.query(Incident), Incident.reported_at, prev_start, start, inclusive_end=False
    ).count()

    transporters = _transporter_stats(dispatches, incidents, receipts)

    return {
        "days": days,
        "window_start": to_utc_z(start),
        "window_end": to_utc_z(end),
        "total_batches": len(batches),
        "total_value_cents": total_value_cents,
        "total_value": total_value_cents / 100,
        "loss_value_cents": loss_value_cents,
        "loss_value": loss_value_cents / 100,
        "loss_percentage": loss_value_cents / total_value_cents * 100 if total_value_cents else 0.0,
        "total_dispatches": total_dispatches,
        "completed_dispatches": completed_dispatches,
        "success_rate": success_rate,
        "in_transit": db.session.query(Dispatch).filter(Dispatch.status == DISPATCH_STATUS_IN_TRANSIT).count(),
        "total_incidents": len(incidents),
        "avg_delivery_time": _mean(delivery_hours),
        "incidents_by_type": dict(sorted(Counter(i.type for i in incidents).items())),
        "incidents_by_reason": dict(sorted(Counter(i.reason for i in incidents).items())),
        "transporter_stats": transporters,
        "top_transporters": top_transporters(transporters),
        "batch_trend": percent_change(len(batches), prev_batches),
        "incident_trend": percent_change(len(incidents), prev_incidents),
    }
