import json

from conftest import run_bat1_scenario
from flowledger.extensions import db
from flowledger.models import Batch


def _invoke(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


def test_init_db_is_idempotent(app):
    result = _invoke(app, "system", "init-db")
    assert result.exit_code == 0
    assert "PASS Database tables ready." in result.output


def test_reset_db_requires_confirmation(app):
    run_bat1_scenario()

    aborted = _invoke(app, "system", "reset-db")
    assert aborted.exit_code != 0
    assert db.session.query(Batch).count() == 1

    db.session.remove()
    done = _invoke(app, "system", "reset-db", "--yes")
    assert done.exit_code == 0
    assert db.session.query(Batch).count() == 0


def test_sync_status_and_drain(app, queue, endpoint):
    queue.enqueue("create_batch", {"id": "BAT-1"})

    status = _invoke(app, "sync", "status")
    assert "online=False" in status.output
    assert "pending=1" in status.output

    drained = _invoke(app, "sync", "drain")
    assert drained.exit_code == 0
    assert "PASS attempted=1 succeeded=1" in drained.output
    assert endpoint.operations == ["create_batch"]


def test_sync_drain_reports_failures(app, queue, endpoint):
    endpoint.always_fail = True
    queue.enqueue("create_batch", {"id": "BAT-1"}, max_retries=1)

    result = _invoke(app, "sync", "drain")

    assert "failed=1" in result.output
    assert "FAIL create_batch" in result.output

    endpoint.always_fail = False
    retried = _invoke(app, "sync", "retry-failed")
    assert "PASS Reset 1 failed item(s) to pending." in retried.output
    assert queue.get_status()["total"] == 0


def test_sync_watch_runs_bounded_iterations(app, queue, endpoint):
    queue.enqueue("create_batch")
    queue.enqueue("create_dispatch")

    result = _invoke(app, "sync", "watch", "--interval", "0", "--iterations", "2")

    assert result.exit_code == 0
    assert endpoint.operations == ["create_batch", "create_dispatch"]


def test_notifications_commands(app, bus, clock):
    bus.create("incident_reported", "Damage on DSP-1", "critical")
    bus.create("batch_created", "Batch BAT-1 registered", "success")

    listed = _invoke(app, "notifications", "list", "--severity", "critical")
    assert "[critical] incident_reported: Damage on DSP-1" in listed.output
    assert "1 notification(s), 2 unread" in listed.output

    clock.advance(days=45)
    cleared = _invoke(app, "notifications", "clear-old", "--days", "30")
    assert "Removed 2 notification(s)" in cleared.output


def test_ledger_audit_and_export(app, tmp_path):
    run_bat1_scenario()

    audit = _invoke(app, "ledger", "audit", "BAT-1")
    assert audit.exit_code == 0
    assert json.loads(audit.output)["summary"]["custody_transfers"] == 2

    missing = _invoke(app, "ledger", "audit", "BAT-404")
    assert missing.exit_code != 0
    assert "Batch BAT-404 not found" in missing.output

    target = tmp_path / "export.json"
    exported = _invoke(app, "ledger", "export", "--days", "7", "--output", str(target))
    assert exported.exit_code == 0
    assert f"PASS Wrote {target}" in exported.output
    assert json.loads(target.read_text())["timeRange"] == "7 days"

    rejected = _invoke(app, "ledger", "export", "--days", "0")
    assert rejected.exit_code != 0
    assert "days must be a positive integer" in rejected.output


def test_ledger_backup_and_restore(app, tmp_path):
    run_bat1_scenario()
    target = tmp_path / "backup.json"

    assert _invoke(app, "ledger", "backup", "--output", str(target)).exit_code == 0
    assert json.loads(target.read_text())["app"] == "FlowLedger"

    restored = _invoke(app, "ledger", "restore", str(target))
    assert restored.exit_code == 0
    assert "PASS batches: 1" in restored.output

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    failed = _invoke(app, "ledger", "restore", str(broken))
    assert failed.exit_code != 0
    assert "is not valid JSON" in failed.output
