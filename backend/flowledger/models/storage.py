from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class StorageEntry(db.Model):
    """
    Generic key-value row backing the persistence collaborator.

    Values are JSON text (arrays/objects). The sync queue and the
    notification log each live under one logical key.
    """
    __tablename__ = "storage_entries"

    key = db.Column(db.String(128), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "size": len(self.value or ""),
            "updated_at": to_utc_z(self.updated_at),
        }
