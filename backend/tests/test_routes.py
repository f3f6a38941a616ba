import re

import pytest

from conftest import photo
from flowledger.errors import PersistenceError
from flowledger.services import workflow_service


def _create_batch(client, **overrides):
    body = {
        "id": "BAT-1",
        "product_name": "Maize meal 10kg",
        "quantity": 100,
        "unit_cost": 10,
        "created_by": "storekeeper",
        "supplier": "Mill Co",
        "photos": [photo("doc"), photo("items")],
    }
    body.update(overrides)
    return client.post("/api/batches", json=body)


def _through_departure(client):
    assert _create_batch(client).status_code == 201
    res = client.post("/api/dispatches", json={"id": "DSP-1", "batch_id": "BAT-1", "quantity": 40, "prepared_by": "storekeeper"})
    assert res.status_code == 201
    res = client.post(
        "/api/dispatches/DSP-1/approve",
        json={
            "transporter": "Acme",
            "driver": "Tumelo",
            "vehicle": "B 123 ABC",
            "expected_delivery": "2026-03-03T08:00:00Z",
            "approved_by": "manager",
        },
    )
    assert res.status_code == 200
    res = client.post("/api/dispatches/DSP-1/depart", json={"photos": [photo("departure")]})
    assert res.status_code == 200


def _receive_damaged(client):
    return client.post(
        "/api/dispatches/DSP-1/receive",
        json={
            "quantity_received": 35,
            "condition": "damaged",
            "received_by": "receiver",
            "reason": "Crushed pallets",
            "photos": [photo("received"), photo("damage")],
        },
    )


def test_full_flow_queues_and_drains_operations(client, endpoint):
    _through_departure(client)

    res = _receive_damaged(client)
    assert res.status_code == 201
    body = res.get_json()
    assert body["has_incident"] is True
    assert body["incident"]["type"] == "damage"
    assert body["incident"]["quantity_expected"] == 40

    status = client.get("/api/sync/status").get_json()
    assert status["total"] == 6
    assert status["pending"] == 6
    assert status["is_online"] is False
    assert endpoint.calls == []

    res = client.post("/api/sync/connectivity", json={"online": True})
    assert res.status_code == 200
    payload = res.get_json()
    assert payload["drain"]["succeeded"] == 6
    assert payload["status"]["total"] == 0
    assert endpoint.operations == [
        "create_incident",
        "create_batch",
        "create_dispatch",
        "approve_dispatch",
        "confirm_departure",
        "create_receipt",
    ]

    dispatch = client.get("/api/dispatches/DSP-1").get_json()
    assert dispatch["status"] == "completed"
    assert dispatch["receipt"]["quantity_received"] == 35
    assert len(dispatch["incidents"]) == 1

    batch = client.get("/api/batches/BAT-1").get_json()
    assert batch["remaining_quantity"] == 60
    assert batch["status"] == "in_storage"


def test_notifications_follow_workflow(client):
    _through_departure(client)
    _receive_damaged(client)

    listing = client.get("/api/notifications").get_json()
    assert [n["type"] for n in listing["notifications"]] == [
        "incident_reported",
        "dispatch_departed",
        "dispatch_approved",
        "dispatch_prepared",
        "batch_created",
    ]
    assert listing["unread_count"] == 5

    critical = client.get("/api/notifications?severity=critical").get_json()["notifications"]
    assert [n["type"] for n in critical] == ["incident_reported"]

    target = critical[0]["id"]
    assert client.post(f"/api/notifications/{target}/read").status_code == 200
    assert client.get("/api/notifications/unread-count").get_json() == {"unread_count": 4}
    assert len(client.get("/api/notifications?unread=true").get_json()["notifications"]) == 4

    assert client.post("/api/notifications/read-all").get_json() == {"updated": 4}
    assert client.delete(f"/api/notifications/{target}").status_code == 200
    assert client.delete(f"/api/notifications/{target}").status_code == 404
    assert client.post("/api/notifications/missing/read").status_code == 404
    assert client.get("/api/notifications?severity=urgent").status_code == 400


def test_clean_receipt_notifies_success(client, bus):
    _through_departure(client)
    res = client.post(
        "/api/dispatches/DSP-1/receive",
        json={"quantity_received": 40, "condition": "intact", "received_by": "receiver", "photos": [photo("received")]},
    )

    assert res.status_code == 201
    assert res.get_json()["incident"] is None
    assert bus.get_all()[0]["type"] == "receipt_completed"
    assert bus.get_all()[0]["severity"] == "success"


def test_clear_old_validates_days(client):
    assert client.post("/api/notifications/clear-old", json={"days": "thirty"}).status_code == 400
    assert client.post("/api/notifications/clear-old", json={"days": -1}).status_code == 400
    assert client.post("/api/notifications/clear-old", json={"days": 30}).get_json() == {"removed": 0}


def test_replayed_batch_is_not_queued_twice(client, queue):
    assert _create_batch(client).status_code == 201
    assert _create_batch(client, quantity=5).status_code == 201

    assert queue.get_status()["total"] == 1
    assert client.get("/api/batches/BAT-1").get_json()["quantity"] == 100


@pytest.mark.parametrize(
    "body, message",
    [
        ({"product_name": "X", "quantity": 0, "created_by": "s"}, "quantity must be > 0"),
        ({"product_name": "X", "quantity": 5, "created_by": "s", "unit_cost": -2}, "unit_cost must be >= 0"),
        ({"quantity": 5}, "Missing required fields"),
    ],
)
def test_batch_validation_errors(client, queue, body, message):
    res = client.post("/api/batches", json=body)

    assert res.status_code == 400
    assert message in res.get_json()["error"]
    assert queue.get_status()["total"] == 0


def test_dispatch_errors_map_to_status_codes(client):
    _create_batch(client)

    res = client.post("/api/dispatches", json={"batch_id": "BAT-404", "quantity": 1, "prepared_by": "s"})
    assert res.status_code == 404

    res = client.post("/api/dispatches", json={"batch_id": "BAT-1", "quantity": 101, "prepared_by": "s"})
    assert res.status_code == 400
    assert "exceeds remaining batch quantity 100" in res.get_json()["error"]

    res = client.post("/api/dispatches", json={"id": "DSP-1", "batch_id": "BAT-1", "quantity": 10, "prepared_by": "s"})
    assert res.get_json()["id"] == "DSP-1"

    res = client.post("/api/dispatches/DSP-1/depart", json={"photos": [photo("departure")]})
    assert res.status_code == 409
    assert "pending_approval" in res.get_json()["error"]

    res = client.post("/api/dispatches/DSP-404/approve", json={})
    assert res.status_code == 404

    res = client.post("/api/dispatches/DSP-1/approve", json={"transporter": "Acme"})
    assert res.status_code == 400

    assert client.get("/api/dispatches/DSP-1").get_json()["status"] == "pending_approval"


def test_short_receipt_without_damage_photo_is_rejected(client, queue):
    _through_departure(client)
    before = queue.get_status()["total"]

    res = client.post("/api/dispatches/DSP-1/receive", json={
        "quantity_received": 30,
        "condition": "intact",
        "received_by": "receiver",
        "reason": "Short",
        "photos": [photo("received")],
    })

    assert res.status_code == 400
    assert "Damage photo required" in res.get_json()["error"]
    assert queue.get_status()["total"] == before
    assert client.get("/api/dispatches/DSP-1").get_json()["status"] == "in_transit"


def test_commit_failure_returns_503_and_publishes_critical(client, bus, queue, monkeypatch):
    def failing_commit(**kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(workflow_service, "commit_with_retry", failing_commit)

    res = _create_batch(client)

    assert res.status_code == 503
    assert "database is locked" in res.get_json()["error"]
    assert [n["type"] for n in bus.get_by_severity("critical")] == ["persistence_failed"]
    assert queue.get_status()["total"] == 0

    monkeypatch.undo()
    assert client.get("/api/batches/BAT-1").status_code == 404


def test_listing_and_read_projections(client):
    _through_departure(client)
    _receive_damaged(client)

    assert client.get("/api/batches").get_json()["count"] == 1
    assert client.get("/api/batches?status=completed").get_json()["count"] == 0
    assert client.get("/api/batches?status=lost").status_code == 400
    assert client.get("/api/batches?start=2026-03-05&end=2026-03-01").status_code == 400
    assert client.get("/api/dispatches?transporter=Acme").get_json()["count"] == 1
    assert client.get("/api/receipts?batch_id=BAT-1").get_json()["count"] == 1
    assert client.get("/api/incidents?type=damage").get_json()["count"] == 1
    assert client.get("/api/incidents?type=theft").status_code == 400

    timeline = client.get("/api/batches/BAT-1/timeline").get_json()
    assert [e["custody"] for e in timeline["events"]][-2:] == ["receiver", "transporter"]

    audit = client.get("/api/batches/BAT-1/audit").get_json()
    assert re.fullmatch(r"[0-9A-F]{8}", audit["checksum"])
    assert audit["summary"]["custody_transfers"] == 2

    assert client.get("/api/batches/BAT-404/timeline").status_code == 404
    assert client.get("/api/batches/BAT-404/audit").status_code == 404


def test_analytics_endpoints(client):
    _through_departure(client)
    _receive_damaged(client)

    metrics = client.get("/api/analytics?days=7").get_json()
    assert metrics["total_batches"] == 1
    assert metrics["loss_value"] == 50.0
    assert metrics["transporter_stats"]["Acme"]["trust_score"] == 0
    assert len(metrics["daily_trend"]) == 7

    assert client.get("/api/analytics?days=0").status_code == 400

    export = client.get("/api/analytics/export?days=7")
    assert export.status_code == 200
    assert export.headers["Content-Disposition"].startswith("attachment; filename=flowledger-analytics-")
    assert export.get_json()["metrics"]["lossValue"] == "50.00"

    summary = client.get("/api/analytics/summary").get_json()
    assert summary["total_loss_value"] == "50.00"


def test_sync_control_endpoints(client, endpoint):
    _create_batch(client)

    skipped = client.post("/api/sync/drain", json={}).get_json()
    assert skipped["skipped"] is True

    assert client.post("/api/sync/connectivity", json={"online": "yes"}).status_code == 400
    assert client.get("/api/sync/items?status=lost").status_code == 400

    endpoint.always_fail = True
    client.post("/api/sync/connectivity", json={"online": True})
    items = client.get("/api/sync/items?status=pending").get_json()["items"]
    assert items[0]["retry_count"] == 1

    forced = client.post("/api/sync/drain", json={"ignore_backoff": True}).get_json()
    assert forced["skipped"] is False
    assert forced["retrying"] == 1

    client.post("/api/sync/drain", json={"ignore_backoff": True})
    assert client.get("/api/sync/status").get_json()["failed"] == 1
    assert client.get("/health").get_json()["checks"]["sync_queue"]["status"] == "degraded"

    endpoint.always_fail = False
    reset = client.post("/api/sync/retry-failed").get_json()
    assert reset["reset"] == 1
    assert reset["status"]["total"] == 0
    assert client.post("/api/sync/clear-synced").get_json() == {"cleared": 0}


def test_health(client):
    res = client.get("/health")

    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["sync_queue"]["total"] == 0


def test_cors_headers_for_known_origins(client):
    res = client.get("/health", headers={"Origin": "http://localhost:5173"})
    assert res.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

    res = client.get("/health", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in res.headers


@pytest.mark.parametrize("days", ["abc", "7.5", "3651", "99999999999"])
def test_analytics_rejects_unusable_day_windows(client, days):
    for path in ("/api/analytics", "/api/analytics/export"):
        res = client.get(f"{path}?days={days}")
        assert res.status_code == 400
        assert "days must be" in res.get_json()["error"]
