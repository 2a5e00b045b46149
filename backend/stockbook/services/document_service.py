# Overview: Atomic document numbering for sales, transfers, credit memos, counts and petty cash.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..models import DocumentSequence


DOC_SALE = "SALE"
DOC_TRANSFER = "TRANSFER"
DOC_CREDIT_MEMO = "CREDIT_MEMO"
DOC_COUNT = "COUNT"
DOC_PETTY_CASH_FUND = "PETTY_CASH_FUND"
DOC_PETTY_CASH_TXN = "PETTY_CASH_TXN"

PREFIXES = {
    DOC_SALE: "INV",
    DOC_TRANSFER: "TRF",
    DOC_CREDIT_MEMO: "CM",
    DOC_COUNT: "CNT",
    DOC_PETTY_CASH_FUND: "PCF",
    DOC_PETTY_CASH_TXN: "PCT",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current(session, document_type: str) -> int:
    return (
        session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )


def next_document_number(session, document_type: str, *, pad: int = 6) -> str:
    """
    Allocate the next number for a document type inside the caller's transaction.

    The counter is bumped with a single UPDATE so concurrent writers serialize
    on the sequence row. The first number of a type inserts the row inside a
    savepoint; losing that race falls back to the UPDATE path.
    """
    if document_type not in PREFIXES:
        raise DocumentSequenceError(f"Unknown document type: {document_type}")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = session.execute(stmt)
    if result.rowcount:
        next_num = _current(session, document_type) - 1
    else:
        try:
            with session.begin_nested():
                session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current(session, document_type) - 1

    return f"{PREFIXES[document_type]}-{next_num:0{pad}d}"
