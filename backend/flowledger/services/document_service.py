# Overview: Atomic identifier allocation for ledger records.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .concurrency import run_with_retry


DOCUMENT_PREFIXES = {
    "BATCH": "BAT",
    "DISPATCH": "DSP",
    "RECEIPT": "REC",
    "INCIDENT": "INC",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def next_document_number(
    *,
    document_type: str,
    prefix: str | None = None,
    pad: int = 6,
) -> str:
    """
    Atomically allocate the next identifier for a record type.

    Uses an UPDATE ... SET next_number = next_number + 1 so concurrent
    writers never receive the same number. Does not commit.
    """
    def _op() -> str:
        if not document_type:
            raise DocumentSequenceError("document_type is required")
        resolved_prefix = prefix or DOCUMENT_PREFIXES.get(document_type)
        if not resolved_prefix:
            raise DocumentSequenceError(f"No prefix registered for {document_type}")

        stmt = (
            update(DocumentSequence)
            .where(DocumentSequence.document_type == document_type)
            .values(next_number=DocumentSequence.next_number + 1)
        )

        result = db.session.execute(stmt)
        if result.rowcount:
            db.session.flush()
            current = (
                db.session.query(DocumentSequence.next_number)
                .filter_by(document_type=document_type)
                .scalar()
            )
            next_num = current - 1
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(DocumentSequence(document_type=document_type, next_number=2))
                next_num = 1
            except IntegrityError:
                # Another writer created the row first
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                db.session.flush()
                current = (
                    db.session.query(DocumentSequence.next_number)
                    .filter_by(document_type=document_type)
                    .scalar()
                )
                next_num = current - 1

        return f"{resolved_prefix}-{next_num:0{pad}d}"

    return run_with_retry(_op)
