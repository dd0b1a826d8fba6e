# Overview: Service-layer allocation of human-readable document numbers.

from __future__ import annotations

from sqlalchemy import select, update

from ..errors import ValidationError
from ..models import DocumentSequence
from ..time_utils import utcnow

DOC_ORDER = "ORDER"
DOC_INVOICE = "INVOICE"

DOCUMENT_PREFIXES = {
    DOC_ORDER: "ORD",
    DOC_INVOICE: "INV",
}


class DocumentNumberService:
    """
    Allocates ORD-YYYYMMDD-00001 / INV-YYYYMMDD-00001 style numbers.

    Runs inside the caller's transaction: the counter increment commits or
    rolls back together with the document that uses it.
    """

    def __init__(self, session, *, pad: int = 5):
        self.session = session
        self.pad = pad

    def _bump(self, document_type: str) -> int | None:
        stmt = (
            update(DocumentSequence)
            .where(DocumentSequence.document_type == document_type)
            .values(next_number=DocumentSequence.next_number + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if not result.rowcount:
            return None
        current = self.session.execute(
            select(DocumentSequence.next_number).where(DocumentSequence.document_type == document_type)
        ).scalar_one()
        return current - 1

    def next_number(self, document_type: str) -> str:
        """
        Atomically allocate the next number for a document type.

        The first allocation inserts the sequence row; a concurrent first
        insert loses on the unique document_type and surfaces as
        IntegrityError, which callers retry as a whole unit of work.
        """
        prefix = DOCUMENT_PREFIXES.get(document_type)
        if not prefix:
            raise ValidationError(f"Unknown document type: {document_type}")

        number = self._bump(document_type)
        if number is None:
            self.session.add(DocumentSequence(document_type=document_type, next_number=2))
            self.session.flush()
            number = 1

        return f"{prefix}-{utcnow():%Y%m%d}-{number:0{self.pad}d}"
