# Overview: Key-value persistence collaborator backed by the storage_entries table.

from __future__ import annotations

import json
from typing import Any, Callable

from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import PersistenceError
from ..extensions import db
from ..models import StorageEntry
from .concurrency import run_with_retry


class DatabaseKeyValueStore:
    """
    get(key) -> value | None, set(key, value) -> None or PersistenceError,
    update(key, mutate) -> written value or PersistenceError.

    Values are JSON-serializable arrays/objects. Each write commits on its
    own so callers must not hold uncommitted ledger changes in the session.
    Several processes may share one database: get() always re-reads the row
    and update() holds the row's write lock from read to commit.
    """

    def __init__(self, *, max_value_bytes: int | None = None):
        self.max_value_bytes = max_value_bytes

    def _encode(self, key: str, value: Any) -> str:
        text = json.dumps(value, sort_keys=True)
        if self.max_value_bytes is not None and len(text.encode("utf-8")) > self.max_value_bytes:
            raise PersistenceError(f"Storage quota exceeded for {key} ({len(text)} bytes)")
        return text

    def _decode(self, key: str, text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError as exc:
            raise PersistenceError(f"Stored value for {key} is not valid JSON") from exc

    def get(self, key: str) -> Any:
        try:
            row = db.session.get(StorageEntry, key, populate_existing=True)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"Failed to read {key}: {exc}") from exc
        if row is None:
            return None
        return self._decode(key, row.value)

    def set(self, key: str, value: Any) -> None:
        text = self._encode(key, value)
        try:
            row = db.session.get(StorageEntry, key, populate_existing=True)
            if row is None:
                db.session.add(StorageEntry(key=key, value=text))
            else:
                row.value = text
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"Failed to write {key}: {exc}") from exc

    def _ensure_row(self, key: str) -> None:
        if db.session.get(StorageEntry, key) is not None:
            return
        db.session.add(StorageEntry(key=key, value="null"))
        try:
            db.session.commit()
        except IntegrityError:
            # Another writer created the row first
            db.session.rollback()

    def update(self, key: str, mutate: Callable[[Any], Any]) -> Any:
        """
        Atomic read-modify-write of one key.

        `mutate` receives the stored value (None when absent) and returns the
        value to store. It runs again from a fresh read when the database
        reports a lock conflict, so it must not depend on earlier calls.
        """
        def _op():
            self._ensure_row(key)
            # Writing first takes the lock on SQLite as well as on row-locking databases
            db.session.execute(
                sql_update(StorageEntry)
                .where(StorageEntry.key == key)
                .values(updated_at=db.func.now())
                .execution_options(synchronize_session=False)
            )
            row = db.session.get(StorageEntry, key, populate_existing=True)
            value = mutate(self._decode(key, row.value))
            row.value = self._encode(key, value)
            db.session.commit()
            return value

        try:
            return run_with_retry(_op)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"Failed to update {key}: {exc}") from exc
        except Exception:
            db.session.rollback()
            raise

    def delete(self, key: str) -> None:
        try:
            db.session.query(StorageEntry).filter_by(key=key).delete()
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"Failed to delete {key}: {exc}") from exc
