# Overview: Notification Bus. Persisted, severity-tagged event log with read
# state, a retention cap, and listener subscriptions.

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from ..errors import PersistenceError, ValidationError
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow


NOTIFICATIONS_KEY = "flowledger_notifications"

SEVERITY_INFO = "info"
SEVERITY_SUCCESS = "success"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_INFO, SEVERITY_SUCCESS, SEVERITY_WARNING, SEVERITY_CRITICAL)


@dataclass
class Notification:
    id: str
    type: str
    message: str
    severity: str
    timestamp: datetime
    read: bool = False
    read_at: datetime | None = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "severity": self.severity,
            "timestamp": to_utc_z(self.timestamp),
            "read": self.read,
            "read_at": to_utc_z(self.read_at),
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "Notification":
        return cls(
            id=str(raw["id"]),
            type=raw.get("type") or "general",
            message=raw.get("message") or "",
            severity=raw.get("severity") if raw.get("severity") in SEVERITIES else SEVERITY_INFO,
            timestamp=parse_iso_datetime(raw.get("timestamp")) or utcnow(),
            read=bool(raw.get("read")),
            read_at=parse_iso_datetime(raw.get("read_at")),
            data=dict(raw.get("data") or {}),
        )




class NotificationBus:
    """
    Append-only notification log, newest first.

    create() keeps only the most recent `retention` entries; older ones are
    dropped without notice. Listeners receive {"type": <event>, ...} dicts;
    a listener that raises is logged and skipped, other listeners still run.

    The stored log is shared with every process using the same store: each
    call re-reads it and writes back through storage.update(). When the
    store rejects a write the log is cut to `degraded_retention` and written
    again; entries the store did not take are kept in memory.
    """

    def __init__(
        self,
        storage,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | None = None,
        retention: int = 100,
        degraded_retention: int = 50,
        storage_key: str = NOTIFICATIONS_KEY,
    ):
        self.storage = storage
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.retention = retention
        self.degraded_retention = degraded_retention
        self.storage_key = storage_key

        self._items: list[Notification] = []
        # Local changes the store has not accepted yet
        self._unsaved: set[str] = set()
        self._dropped: set[str] = set()
        self._listeners: list[Callable[[dict], Any]] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _merge(self, raw: Any) -> list[Notification]:
        if raw is not None and not isinstance(raw, list):
            self.logger.warning("Stored notification log is not a list; ignoring it")
            raw = None
        local = {n.id: n for n in self._items if n.id in self._unsaved}
        stored = []
        for entry in raw or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            notification_id = str(entry["id"])
            if notification_id in self._dropped:
                continue
            if notification_id in local:
                stored.append(replace(local.pop(notification_id)))
            else:
                stored.append(Notification.from_dict(entry))
        merged = [replace(n) for n in local.values()] + stored
        return sorted(merged, key=lambda n: n.timestamp, reverse=True)

    def _refresh(self) -> None:
        try:
            raw = self.storage.get(self.storage_key)
        except PersistenceError:
            self.logger.exception("Failed to read notifications; using the in-memory log")
            return
        self._items = self._merge(raw)

    def _apply(self, mutate: Callable[[list[Notification]], Any]) -> Any:
        """Re-read the log, let `mutate` edit it in place, write it back."""
        attempt: dict = {}

        def step(raw):
            items = self._merge(raw)
            attempt["before"] = {n.id for n in items}
            attempt["result"] = mutate(items)
            attempt["items"] = items
            return [n.to_dict() for n in items]

        try:
            self.storage.update(self.storage_key, step)
        except PersistenceError as exc:
            self.logger.warning("Notification log write failed (%s); retrying with last %d", exc, self.degraded_retention)
            if "items" not in attempt:
                items = [replace(n) for n in self._items]
                attempt["before"] = {n.id for n in items}
                attempt["result"] = mutate(items)
                attempt["items"] = items
            self._save_degraded(attempt["items"], attempt["before"])
        else:
            self._items = attempt["items"]
            self._unsaved.clear()
            self._dropped.clear()
        return attempt["result"]

    def _save_degraded(self, items: list[Notification], before: set[str]) -> None:
        self._items = items
        self._dropped |= before - {n.id for n in items}
        self._unsaved = {n.id for n in items}
        written: list[Notification] = []

        def shrink(raw):
            written[:] = self._merge(raw)[: self.degraded_retention]
            return [n.to_dict() for n in written]

        try:
            self.storage.update(self.storage_key, shrink)
        except PersistenceError:
            self.logger.exception("Notification log could not be persisted; keeping in memory only")
            return
        kept = {n.id for n in written}
        self._unsaved = {n.id for n in items if n.id not in kept}
        self._dropped.clear()

    def reload(self) -> None:
        """Forget unsaved local changes and re-read the store."""
        with self._lock:
            self._unsaved.clear()
            self._dropped.clear()
            self._items = []
            self._refresh()

    def replace_all(self, items: list[dict]) -> int:
        """Swap the whole log (restore from backup)."""
        restored = [Notification.from_dict(r) for r in items if isinstance(r, dict) and r.get("id")]
        restored = restored[: self.retention]

        def swap(current: list[Notification]) -> int:
            current[:] = [replace(n) for n in restored]
            return len(current)

        with self._lock:
            self._unsaved.clear()
            self._dropped.clear()
            return self._apply(swap)

    # ------------------------------------------------------------------
    # listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[dict], Any]) -> Callable[[], None]:
        """Subscribe; returns a function that unsubscribes."""
        with self._lock:
            self._listeners.append(callback)
        return lambda: self.remove_listener(callback)

    def remove_listener(self, callback: Callable[[dict], Any]) -> None:
        with self._lock:
            self._listeners = [cb for cb in self._listeners if cb is not callback]

    def _emit(self, event: dict) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                self.logger.exception("Notification listener failed on %s", event.get("type"))

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def create(
        self,
        type: str,
        message: str,
        severity: str = SEVERITY_INFO,
        data: dict | None = None,
    ) -> dict:
        if severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}")
        if not type or not str(type).strip():
            raise ValidationError("type is required")

        notification = Notification(
            id=uuid.uuid4().hex,
            type=str(type).strip(),
            message=str(message or ""),
            severity=severity,
            timestamp=self.clock(),
            data=dict(data or {}),
        )

        def prepend(items: list[Notification]) -> None:
            items.insert(0, replace(notification))
            del items[self.retention:]

        with self._lock:
            self._apply(prepend)

        snapshot = notification.to_dict()
        self._emit({"type": "created", "notification": snapshot})
        return snapshot

    def mark_as_read(self, notification_id: str) -> bool:
        now = self.clock()

        def mark(items: list[Notification]) -> dict | None:
            target = next((n for n in items if n.id == notification_id), None)
            if target is None:
                return None
            if not target.read:
                target.read = True
                target.read_at = now
            return target.to_dict()

        with self._lock:
            self._refresh()
            if not any(n.id == notification_id for n in self._items):
                return False
            snapshot = self._apply(mark)
        if snapshot is None:
            return False

        self._emit({"type": "read", "notification": snapshot})
        return True

    def mark_all_as_read(self) -> int:
        now = self.clock()

        def mark(items: list[Notification]) -> int:
            changed = 0
            for n in items:
                if not n.read:
                    n.read = True
                    n.read_at = now
                    changed += 1
            return changed

        with self._lock:
            self._refresh()
            changed = self._apply(mark) if any(not n.read for n in self._items) else 0

        self._emit({"type": "all_read", "count": changed})
        return changed

    def delete(self, notification_id: str) -> bool:
        def drop(items: list[Notification]) -> bool:
            before = len(items)
            items[:] = [n for n in items if n.id != notification_id]
            return len(items) != before

        with self._lock:
            self._refresh()
            removed = any(n.id == notification_id for n in self._items) and self._apply(drop)

        if removed:
            self._emit({"type": "deleted", "id": notification_id})
        return removed

    def clear_old(self, days_old: int = 30) -> int:
        """Drop notifications older than `days_old` days. Returns how many were removed."""
        if days_old < 0:
            raise ValidationError("days_old must be >= 0")
        try:
            cutoff = self.clock() - timedelta(days=days_old)
        except OverflowError:
            cutoff = datetime.min

        def prune(items: list[Notification]) -> int:
            before = len(items)
            items[:] = [n for n in items if n.timestamp >= cutoff]
            return before - len(items)

        with self._lock:
            self._refresh()
            removed = self._apply(prune) if any(n.timestamp < cutoff for n in self._items) else 0

        self._emit({"type": "cleared", "count": removed})
        return removed

    def get_unread_count(self) -> int:
        with self._lock:
            self._refresh()
            return sum(1 for n in self._items if not n.read)

    def get_by_severity(self, severity: str) -> list[dict]:
        if severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}")
        with self._lock:
            self._refresh()
            return [n.to_dict() for n in self._items if n.severity == severity]

    def get_all(self, *, unread_only: bool = False) -> list[dict]:
        with self._lock:
            self._refresh()
            return [n.to_dict() for n in self._items if not (unread_only and n.read)]
