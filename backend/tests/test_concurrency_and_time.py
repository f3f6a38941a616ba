from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from flowledger.errors import PersistenceError
from flowledger.services import concurrency
from flowledger.time_utils import day_bounds, parse_iso_datetime, to_utc_z


def _locked():
    return OperationalError("UPDATE batches", {}, Exception("database is locked"))


def test_run_with_retry_recovers_from_transient_lock(app, monkeypatch):
    monkeypatch.setattr(concurrency.time, "sleep", lambda seconds: None)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _locked()
        return "ok"

    assert concurrency.run_with_retry(flaky, attempts=3) == "ok"
    assert len(calls) == 3


def test_run_with_retry_gives_up_after_attempts(app, monkeypatch):
    delays = []
    monkeypatch.setattr(concurrency.time, "sleep", delays.append)

    def always_locked():
        raise _locked()

    with pytest.raises(OperationalError):
        concurrency.run_with_retry(always_locked, attempts=3, backoff_base=0.5)

    assert delays == [0.5, 1.0]


def test_commit_with_retry_wraps_database_errors(app, monkeypatch):
    def broken_commit():
        raise IntegrityError("INSERT INTO batches", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(concurrency.db.session, "commit", broken_commit)

    with pytest.raises(PersistenceError, match="Database commit failed"):
        concurrency.commit_with_retry()


def test_parse_iso_datetime_normalizes_to_utc_naive():
    assert parse_iso_datetime("2026-03-02T08:00:00Z") == datetime(2026, 3, 2, 8, 0, 0)
    assert parse_iso_datetime("2026-03-02T10:00:00+02:00") == datetime(2026, 3, 2, 8, 0, 0)
    assert parse_iso_datetime("2026-03-02T08:00:00") == datetime(2026, 3, 2, 8, 0, 0)
    assert parse_iso_datetime("  ") is None
    assert parse_iso_datetime(None) is None

    with pytest.raises(ValueError):
        parse_iso_datetime("yesterday")


def test_to_utc_z_drops_microseconds_and_converts_offsets():
    assert to_utc_z(datetime(2026, 3, 2, 8, 0, 0, 123456)) == "2026-03-02T08:00:00Z"
    aware = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_utc_z(aware) == "2026-03-02T08:00:00Z"
    assert to_utc_z(None) is None


def test_day_bounds_cover_the_whole_day():
    start, end = day_bounds(date(2026, 3, 2))

    assert start == datetime(2026, 3, 2, 0, 0, 0)
    assert end.date() == date(2026, 3, 2)
    assert end + timedelta(microseconds=1) == datetime(2026, 3, 3)
