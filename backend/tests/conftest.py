"""
Pytest fixtures for FlowLedger backend tests.

Provides an in-memory application, a controllable clock, an in-memory
key-value store with switchable write failures, and a scripted sync endpoint.
"""

import logging
from datetime import datetime, timedelta

import pytest

from flowledger import create_app
from flowledger.errors import PersistenceError, SyncDeliveryError
from flowledger.extensions import db
from flowledger.runtime import NOTIFICATION_BUS_EXTENSION, SYNC_QUEUE_EXTENSION
from flowledger.services.notification_bus import NotificationBus
from flowledger.services.sync_queue import BackoffPolicy, OfflineSyncQueue


T0 = datetime(2026, 3, 2, 8, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MemoryKeyValueStore:
    """Dict-backed key-value store. `reject` decides per write whether it fails."""

    def __init__(self):
        self.data = {}
        self.writes = []
        self.fail_all = False
        self.reject = None

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        if self.fail_all or (self.reject is not None and self.reject(key, value)):
            raise PersistenceError(f"Storage quota exceeded for {key}")
        self.data[key] = value
        self.writes.append((key, value))

    def update(self, key, mutate):
        value = mutate(self.data.get(key))
        self.set(key, value)
        return value


class ScriptedEndpoint:
    """Records deliveries; fails the next N calls, or every call while always_fail is set."""

    def __init__(self):
        self.calls = []
        self.fail_next = 0
        self.always_fail = False
        self.on_deliver = None

    def deliver(self, operation, payload, *, item_id):
        self.calls.append({"operation": operation, "payload": payload, "item_id": item_id})
        if self.on_deliver is not None:
            self.on_deliver(operation, payload, item_id)
        if self.always_fail:
            raise SyncDeliveryError("HTTP 503: upstream unavailable")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SyncDeliveryError("HTTP 502: bad gateway")
        return {"ok": True}

    @property
    def operations(self):
        return [c["operation"] for c in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def endpoint():
    return ScriptedEndpoint()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def logger():
    return logging.getLogger("flowledger.tests")


@pytest.fixture
def memory_bus(store, clock, logger):
    return NotificationBus(store, clock=clock, logger=logger)


@pytest.fixture
def memory_queue(store, endpoint, clock, logger, memory_bus):
    return OfflineSyncQueue(
        store,
        endpoint,
        bus=memory_bus,
        clock=clock,
        logger=logger,
        max_retries=3,
        backoff=BackoffPolicy(base_seconds=30, max_seconds=900),
    )


@pytest.fixture
def app(endpoint, clock):
    """Application against a fresh in-memory database."""
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "SYNC_START_ONLINE": False,
        },
        sync_endpoint=endpoint,
        clock=clock,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def bus(app):
    return app.extensions[NOTIFICATION_BUS_EXTENSION]


@pytest.fixture
def queue(app):
    return app.extensions[SYNC_QUEUE_EXTENSION]


def photo(label: str, ref: str | None = None, **extra) -> dict:
    """Capture-widget style photo record."""
    return {"label": label, "image_ref": ref or f"img://{label}", "size_bytes": 2048, **extra}


def run_bat1_scenario(base: datetime = T0):
    """
    BAT-1: 100 units @ 10.00 -> DSP-1 40 units -> Acme -> departed ->
    35 received damaged. Commits after every step.
    """
    from flowledger.services import ledger_service

    ledger_service.create_batch(
        product_name="Maize meal 10kg",
        quantity=100,
        unit_cost=10,
        created_by="storekeeper",
        supplier="Mill Co",
        batch_id="BAT-1",
        created_at=base,
        photos=[photo("doc"), photo("items")],
    )
    db.session.commit()

    ledger_service.prepare_dispatch(
        batch_id="BAT-1",
        quantity=40,
        prepared_by="storekeeper",
        dispatch_id="DSP-1",
        prepared_at=base + timedelta(hours=1),
        photos=[photo("packed"), photo("sealed")],
    )
    db.session.commit()

    ledger_service.approve_dispatch(
        "DSP-1",
        transporter="Acme",
        driver="Tumelo",
        vehicle="B 123 ABC",
        expected_delivery=base + timedelta(days=1),
        approved_by="manager",
        approved_at=base + timedelta(hours=2),
    )
    db.session.commit()

    ledger_service.confirm_departure(
        "DSP-1",
        photos=[photo("departure")],
        departed_at=base + timedelta(hours=3),
    )
    db.session.commit()

    receipt = ledger_service.complete_receipt(
        "DSP-1",
        quantity_received=35,
        condition="damaged",
        received_by="receiver",
        reason="Crushed pallets",
        photos=[photo("received"), photo("damage")],
        received_at=base + timedelta(hours=9),
    )
    db.session.commit()
    return receipt
