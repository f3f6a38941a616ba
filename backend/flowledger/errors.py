# Overview: Error taxonomy shared by the ledger, queue, and notification layers.

from __future__ import annotations


class FlowLedgerError(Exception):
    """Base class for FlowLedger domain errors."""


class ValidationError(FlowLedgerError, ValueError):
    """400-level input problem: missing field, quantity <= 0, cost < 0."""


class NotFoundError(FlowLedgerError, LookupError):
    """Referenced batch/dispatch/receipt does not exist."""


class InvalidTransitionError(FlowLedgerError):
    """Dispatch state machine violation. No mutation is performed."""

    def __init__(self, entity_id: str, current: str, attempted: str):
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} dispatch {entity_id} in {current} status")


class SyncDeliveryError(FlowLedgerError):
    """Remote sync endpoint rejected or could not receive an operation."""


class PersistenceError(FlowLedgerError):
    """Durable write failed (storage full, database locked, ...)."""


HTTP_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    PersistenceError: 503,
    SyncDeliveryError: 502,
}


def http_status_for(exc: FlowLedgerError) -> int:
    for error_type, status in HTTP_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500
