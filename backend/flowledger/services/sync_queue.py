# Overview: Offline Operation Queue. Durable outbox of local mutations,
# drained to the remote sync endpoint with retry, backoff and single-flight.

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from ..errors import PersistenceError, SyncDeliveryError, ValidationError
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow


SYNC_QUEUE_KEY = "flowledger_sync_queue"

PRIORITY_ORDER = {"high": 0, "normal": 1, "low": 2}
PRIORITIES = tuple(PRIORITY_ORDER)

STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_SYNCING, STATUS_SUCCESS, STATUS_FAILED)


@dataclass
class SyncQueueItem:
    id: str
    operation: str
    payload: Any
    priority: str
    timestamp: datetime
    sequence: int
    status: str = STATUS_PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    synced_at: datetime | None = None
    error: str | None = None

    @property
    def retries_remaining(self) -> bool:
        return self.retry_count < self.max_retries

    def sort_key(self) -> tuple:
        return (PRIORITY_ORDER.get(self.priority, 1), self.timestamp, self.sequence)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timestamp": to_utc_z(self.timestamp),
            "sequence": self.sequence,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "synced_at": to_utc_z(self.synced_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: dict, *, default_sequence: int = 0) -> "SyncQueueItem":
        status = raw.get("status") if raw.get("status") in STATUSES else STATUS_PENDING
        return cls(
            id=str(raw["id"]),
            operation=str(raw.get("operation") or ""),
            payload=raw.get("payload"),
            priority=raw.get("priority") if raw.get("priority") in PRIORITY_ORDER else "normal",
            timestamp=parse_iso_datetime(raw.get("timestamp")) or utcnow(),
            sequence=int(raw.get("sequence") or default_sequence),
            status=status,
            retry_count=int(raw.get("retry_count") or 0),
            max_retries=int(raw.get("max_retries") or 3),
            next_attempt_at=parse_iso_datetime(raw.get("next_attempt_at")),
            last_attempt_at=parse_iso_datetime(raw.get("last_attempt_at")),
            synced_at=parse_iso_datetime(raw.get("synced_at")),
            error=raw.get("error"),
        )


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential hold after the n-th failed attempt: base * 2**(n-1), capped."""
    base_seconds: float = 30.0
    max_seconds: float = 900.0

    def delay(self, attempt: int) -> timedelta:
        if attempt <= 0:
            return timedelta(0)
        seconds = min(self.base_seconds * (2 ** (attempt - 1)), self.max_seconds)
        return timedelta(seconds=seconds)


@dataclass
class DrainResult:
    attempted: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    remaining: int = 0
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "remaining": self.remaining,
            "failures": list(self.failures),
        }


class OfflineSyncQueue:
    """
    Durable, priority-ordered outbox.

    Queue invariants:
    - enqueue() persists before returning and never touches the network.
    - drain() is single-flight: a call made while another drain runs returns None.
    - The stored queue is the shared truth. Every operation re-reads it and
      writes back with storage.update(), so processes sharing the store (the
      web app, `flask sync watch`, extra workers) never overwrite each other.
    - An item is claimed by marking it `syncing` before delivery; a claim
      older than `claim_timeout` is treated as abandoned and reads back as
      `pending`, so a crash mid-drain loses nothing.
    - retry_count only grows until retry_failed() resets it, and every
      delivery error counts as an attempt.
    - Persistence failures never propagate: changes the store refused are
      held in memory and merged into every later write, a smaller snapshot
      is attempted, then a critical notification is published.
    """

    def __init__(
        self,
        storage,
        endpoint,
        *,
        bus=None,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | None = None,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        online: bool = False,
        claim_timeout: timedelta = timedelta(minutes=5),
        storage_key: str = SYNC_QUEUE_KEY,
    ):
        self.storage = storage
        self.endpoint = endpoint
        self.bus = bus
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.max_retries = max_retries
        self.backoff = backoff or BackoffPolicy()
        self.claim_timeout = claim_timeout
        self.storage_key = storage_key

        self._online = online
        self._items: list[SyncQueueItem] = []
        # Local changes the store has not accepted yet
        self._unsaved: set[str] = set()
        self._dropped: set[str] = set()
        self._listeners: list[Callable[[dict], Any]] = []
        self._state_lock = threading.RLock()
        self._drain_lock = threading.Lock()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _parse(self, entry: dict, index: int, now: datetime) -> SyncQueueItem:
        item = SyncQueueItem.from_dict(entry, default_sequence=index + 1)
        if item.status == STATUS_SYNCING and (
            item.last_attempt_at is None or item.last_attempt_at <= now - self.claim_timeout
        ):
            item.status = STATUS_PENDING
        return item

    def _merge(self, raw: Any) -> list[SyncQueueItem]:
        """Stored items overlaid with unsaved local changes. Always returns fresh objects."""
        if raw is not None and not isinstance(raw, list):
            self.logger.warning("Stored sync queue is not a list; ignoring it")
            raw = None
        now = self.clock()
        local = {i.id: i for i in self._items if i.id in self._unsaved}
        merged = []
        for index, entry in enumerate(raw or []):
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            item_id = str(entry["id"])
            if item_id in self._dropped:
                continue
            if item_id in local:
                merged.append(replace(local.pop(item_id)))
            else:
                merged.append(self._parse(entry, index, now))
        merged.extend(replace(i) for i in local.values())
        return merged

    def _refresh(self) -> None:
        try:
            raw = self.storage.get(self.storage_key)
        except PersistenceError:
            self.logger.exception("Failed to read sync queue; using the in-memory copy")
            return
        self._items = self._merge(raw)

    def _apply(self, mutate: Callable[[list[SyncQueueItem]], Any]) -> Any:
        """
        Re-read the stored queue, let `mutate` edit it in place, write it back.
        Returns whatever `mutate` returns.
        """
        attempt: dict = {}

        def step(raw):
            items = self._merge(raw)
            attempt["before"] = {i.id for i in items}
            attempt["result"] = mutate(items)
            attempt["items"] = items
            return [i.to_dict() for i in items]

        try:
            self.storage.update(self.storage_key, step)
        except PersistenceError as exc:
            self.logger.warning("Sync queue write failed (%s); evicting permanently failed items", exc)
            if "items" not in attempt:
                items = [replace(i) for i in self._items]
                attempt["before"] = {i.id for i in items}
                attempt["result"] = mutate(items)
                attempt["items"] = items
            self._hold_in_memory(attempt["items"], attempt["before"])
        else:
            self._items = attempt["items"]
            self._unsaved.clear()
            self._dropped.clear()
        return attempt["result"]

    def _hold_in_memory(self, items: list[SyncQueueItem], before: set[str]) -> None:
        self._items = items
        self._dropped |= before - {i.id for i in items}
        self._unsaved = {i.id for i in items}

        # Degraded snapshot: oldest permanently failed items go first
        evictable = sorted(
            (i for i in items if i.status == STATUS_FAILED and not i.retries_remaining),
            key=lambda i: (i.timestamp, i.sequence),
        )
        evicted: set[str] = set()
        for victim in evictable:
            evicted.add(victim.id)
            try:
                self.storage.update(
                    self.storage_key,
                    lambda raw: [i.to_dict() for i in self._merge(raw) if i.id not in evicted],
                )
            except PersistenceError:
                continue
            self.logger.warning("Sync queue persisted without %d failed items", len(evicted))
            self._unsaved = set(evicted)
            self._dropped.clear()
            return

        self.logger.error("Sync queue could not be persisted; %d items held in memory only", len(items))
        if self.bus is not None:
            self.bus.create(
                "persistence_failed",
                f"Offline queue could not be saved ({len(items)} operations held in memory)",
                "critical",
                {"component": "sync_queue", "items": len(items)},
            )

    def reload(self) -> None:
        """Forget unsaved local changes and re-read the store."""
        with self._state_lock:
            self._unsaved.clear()
            self._dropped.clear()
            self._items = []
            self._refresh()

    def replace_all(self, items: list[dict]) -> int:
        """Swap the whole queue (restore from backup)."""
        now = self.clock()
        restored = [
            self._parse(entry, index, now)
            for index, entry in enumerate(items)
            if isinstance(entry, dict) and entry.get("id")
        ]

        def swap(current: list[SyncQueueItem]) -> int:
            current[:] = [replace(i) for i in restored]
            return len(current)

        with self._state_lock:
            self._unsaved.clear()
            self._dropped.clear()
            return self._apply(swap)

    # ------------------------------------------------------------------
    # listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[dict], Any]) -> Callable[[], None]:
        with self._state_lock:
            self._listeners.append(callback)
        return lambda: self.remove_listener(callback)

    def remove_listener(self, callback: Callable[[dict], Any]) -> None:
        with self._state_lock:
            self._listeners = [cb for cb in self._listeners if cb is not callback]

    def _emit(self, event: dict) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                self.logger.exception("Sync queue listener failed on %s", event.get("type"))

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._drain_lock.locked()

    def enqueue(
        self,
        operation: str,
        payload: Any = None,
        priority: str = "normal",
        *,
        max_retries: int | None = None,
    ) -> str:
        """Append a pending operation and persist it. Returns the item id."""
        if not operation or not isinstance(operation, str):
            raise ValidationError("operation tag is required")
        if priority not in PRIORITY_ORDER:
            raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}")
        retries = self.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValidationError("max_retries must be >= 0")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"payload must be JSON-serializable: {exc}") from exc

        item_id = uuid.uuid4().hex
        timestamp = self.clock()

        def append(items: list[SyncQueueItem]) -> dict:
            item = SyncQueueItem(
                id=item_id,
                operation=operation,
                payload=payload,
                priority=priority,
                timestamp=timestamp,
                sequence=max((i.sequence for i in items), default=0) + 1,
                max_retries=retries,
            )
            items.append(item)
            return item.to_dict()

        with self._state_lock:
            snapshot = self._apply(append)

        self.logger.info("Queued %s as %s (priority=%s)", operation, item_id, priority)
        self._emit({"type": "queued", "item": snapshot})
        return item_id

    def _ready(self, item: SyncQueueItem, now: datetime, ignore_backoff: bool) -> bool:
        if item.status == STATUS_PENDING:
            pass
        elif item.status == STATUS_FAILED and item.retries_remaining:
            pass
        else:
            return False
        return ignore_backoff or item.next_attempt_at is None or item.next_attempt_at <= now

    def drain(self, *, ignore_backoff: bool = False) -> DrainResult | None:
        """
        Deliver every ready item in priority order.

        Returns None when offline or when another drain is in progress.
        Delivery errors of any kind are recorded on the item and the drain
        moves on to the next one.
        """
        if not self._online:
            self.logger.debug("Drain skipped: offline")
            return None
        if not self._drain_lock.acquire(blocking=False):
            self.logger.debug("Drain skipped: already syncing")
            return None

        try:
            with self._state_lock:
                self._refresh()
                now = self.clock()
                batch = [
                    i.id
                    for i in sorted(self._items, key=SyncQueueItem.sort_key)
                    if self._ready(i, now, ignore_backoff)
                ]
                if not batch:
                    return DrainResult(remaining=len(self._items))

            result = DrainResult()
            self.logger.info("Draining %d queued operations", len(batch))
            self._emit({"type": "sync_start", "count": len(batch)})

            for item_id in batch:
                self._deliver_one(item_id, result, ignore_backoff)

            with self._state_lock:
                self._refresh()
                result.remaining = len(self._items)

            self.logger.info(
                "Drain complete: %d succeeded, %d retrying, %d failed, %d remaining",
                result.succeeded, result.retrying, result.failed, result.remaining,
            )
            self._emit({"type": "sync_complete", **result.to_dict()})
            return result
        finally:
            self._drain_lock.release()

    def _claim(self, item_id: str, ignore_backoff: bool) -> SyncQueueItem | None:
        """Mark the item syncing unless another process got to it first."""
        now = self.clock()

        def claim(items: list[SyncQueueItem]) -> SyncQueueItem | None:
            item = next((i for i in items if i.id == item_id), None)
            if item is None or not self._ready(item, now, ignore_backoff):
                return None
            item.status = STATUS_SYNCING
            item.last_attempt_at = now
            return replace(item)

        with self._state_lock:
            return self._apply(claim)

    def _deliver_one(self, item_id: str, result: DrainResult, ignore_backoff: bool) -> None:
        item = self._claim(item_id, ignore_backoff)
        if item is None:
            self.logger.debug("Skipping %s: delivered or claimed elsewhere", item_id)
            return
        result.attempted += 1

        try:
            self.endpoint.deliver(item.operation, item.payload, item_id=item.id)
        except SyncDeliveryError as exc:
            self._record_failure(item, str(exc), result)
            return
        except Exception as exc:
            self.logger.exception("Unexpected error delivering %s (%s)", item.operation, item.id)
            self._record_failure(item, f"{type(exc).__name__}: {exc}", result)
            return

        synced_at = self.clock()

        def remove(items: list[SyncQueueItem]) -> None:
            items[:] = [i for i in items if i.id != item.id]

        with self._state_lock:
            self._apply(remove)
        item.status = STATUS_SUCCESS
        item.synced_at = synced_at
        item.error = None
        result.succeeded += 1
        self._emit({"type": "sync_success", "item": item.to_dict()})

    def _record_failure(self, item: SyncQueueItem, error: str, result: DrainResult) -> None:
        now = self.clock()

        def fail(items: list[SyncQueueItem]) -> SyncQueueItem | None:
            stored = next((i for i in items if i.id == item.id), None)
            if stored is None:
                return None
            stored.retry_count += 1
            stored.error = error
            if stored.retries_remaining:
                stored.status = STATUS_PENDING
                stored.next_attempt_at = now + self.backoff.delay(stored.retry_count)
            else:
                stored.status = STATUS_FAILED
                stored.next_attempt_at = None
            return replace(stored)

        with self._state_lock:
            updated = self._apply(fail)
        if updated is None:
            self.logger.warning("%s (%s) left the queue while being delivered", item.operation, item.id)
            return
        snapshot = updated.to_dict()

        if updated.status == STATUS_FAILED:
            result.failed += 1
            result.failures.append({"id": updated.id, "operation": updated.operation, "error": error})
            self.logger.error(
                "Giving up on %s (%s) after %d attempts: %s",
                updated.operation, updated.id, updated.retry_count, error,
            )
            self._emit({"type": "sync_failed", "item": snapshot, "error": error})
            if self.bus is not None:
                self.bus.create(
                    "sync_failed",
                    f"Failed to sync {updated.operation} after {updated.retry_count} attempts",
                    "warning",
                    {"item_id": updated.id, "operation": updated.operation, "error": error},
                )
        else:
            result.retrying += 1
            self.logger.info(
                "Will retry %s (attempt %d/%d) at %s",
                updated.operation, updated.retry_count, updated.max_retries, to_utc_z(updated.next_attempt_at),
            )
            self._emit({"type": "sync_retry", "item": snapshot, "error": error})

    def retry_failed(self) -> int:
        """Reset every failed item to pending with a fresh retry budget; drains if online."""
        def reset(items: list[SyncQueueItem]) -> int:
            count = 0
            for item in items:
                if item.status == STATUS_FAILED:
                    item.status = STATUS_PENDING
                    item.retry_count = 0
                    item.next_attempt_at = None
                    item.error = None
                    count += 1
            return count

        with self._state_lock:
            self._refresh()
            reset_count = 0
            if any(i.status == STATUS_FAILED for i in self._items):
                reset_count = self._apply(reset)

        self.logger.info("Retrying %d failed operations", reset_count)
        if self._online:
            self.drain()
        return reset_count

    def clear_synced(self) -> int:
        def clear(items: list[SyncQueueItem]) -> int:
            before = len(items)
            items[:] = [i for i in items if i.status != STATUS_SUCCESS]
            return before - len(items)

        with self._state_lock:
            self._refresh()
            if not any(i.status == STATUS_SUCCESS for i in self._items):
                return 0
            return self._apply(clear)

    def set_online(self, online: bool) -> DrainResult | None:
        """
        Connectivity signal. Going online drains immediately; going offline
        only flips the flag and leaves an in-flight drain running.
        """
        changed = self._online != bool(online)
        self._online = bool(online)
        if changed:
            self.logger.info("Connectivity: %s", "online" if online else "offline")
            self._emit({"type": "online" if online else "offline"})
        if self._online and changed:
            return self.drain()
        return None

    def get_status(self) -> dict:
        with self._state_lock:
            self._refresh()
            counts = {status: 0 for status in STATUSES}
            for item in self._items:
                counts[item.status] += 1
            return {
                "is_online": self._online,
                "is_syncing": self.is_syncing,
                "total": len(self._items),
                **counts,
            }

    def items(self, *, status: str | None = None) -> list[dict]:
        if status is not None and status not in STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
        with self._state_lock:
            self._refresh()
            ordered = sorted(self._items, key=SyncQueueItem.sort_key)
            return [i.to_dict() for i in ordered if status is None or i.status == status]
