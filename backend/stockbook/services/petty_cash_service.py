# Overview: Petty cash funds, cash issued to employees and the box balance.

"""
Petty cash service.

Balance rule:
    available = approved funds
                - amount issued on every non-cancelled transaction
                + amount returned on settled and approved transactions

Spent cash never comes back. Issuing cash is refused when it would take the
available balance below zero. Balance reads and issues run under one
in-process lock so two issues cannot both pass the check.
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import PettyCashFund, PettyCashTransaction
from ..validation import ValidationError, coerce_price_cents
from stockbook.time_utils import coerce_datetime, utcnow
from .concurrency import lock_for_update, named_lock, run_with_retry
from .document_service import DOC_PETTY_CASH_FUND, DOC_PETTY_CASH_TXN, next_document_number


CASH_BOX = "petty_cash"


class PettyCashError(Exception):
    """Raised for petty cash operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _positive_cents(value, field: str) -> int:
    cents = coerce_price_cents(value, field)
    if cents <= 0:
        raise ValidationError(f"{field} must be > 0")
    return cents


def _coerce_date(value, field: str) -> date:
    if value is None:
        return utcnow().date()
    try:
        parsed = coerce_datetime(value, field=field)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if parsed is None:
        raise ValidationError(f"{field} must be an ISO-8601 date")
    return parsed.date()


def _sum(column, *criteria) -> int:
    return int(db.session.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar())


def get_available_balance() -> int:
    """Cash that can still be issued, in cents."""
    funds = _sum(PettyCashFund.amount_cents, PettyCashFund.status == PettyCashFund.STATUS_APPROVED)
    issued = _sum(
        PettyCashTransaction.amount_issued_cents,
        PettyCashTransaction.status.in_(PettyCashTransaction.OUTSTANDING_STATUSES),
    )
    returned = _sum(
        PettyCashTransaction.amount_returned_cents,
        PettyCashTransaction.status.in_(
            (PettyCashTransaction.STATUS_SETTLED, PettyCashTransaction.STATUS_APPROVED)
        ),
    )
    return funds - issued + returned


# =============================================================================
# Funds
# =============================================================================

def create_fund(
    amount_cents: int,
    fund_date=None,
    description: str | None = None,
    user_id: int | None = None,
) -> PettyCashFund:
    """Record cash put into the box; it counts once approved."""
    amount = _positive_cents(amount_cents, "amount_cents")
    day = _coerce_date(fund_date, "fund_date")

    def _op():
        fund = PettyCashFund(
            reference=next_document_number(db.session, DOC_PETTY_CASH_FUND),
            fund_date=day,
            amount_cents=amount,
            description=description,
            status=PettyCashFund.STATUS_PENDING,
            created_by_user_id=user_id,
        )
        db.session.add(fund)
        db.session.commit()
        return fund

    return run_with_retry(_op)


def _lock_fund(fund_id: int) -> PettyCashFund:
    fund = lock_for_update(db.session.query(PettyCashFund).filter_by(id=fund_id)).first()
    if fund is None:
        raise PettyCashError("Petty cash fund not found")
    return fund


def approve_fund(fund_id: int, user_id: int | None = None) -> PettyCashFund:
    def _op():
        fund = _lock_fund(fund_id)
        if fund.status == PettyCashFund.STATUS_APPROVED:
            raise PettyCashError("Fund is already approved")
        if fund.status != PettyCashFund.STATUS_PENDING:
            raise PettyCashError(f"Cannot approve a fund with status {fund.status}")
        fund.status = PettyCashFund.STATUS_APPROVED
        fund.approved_by_user_id = user_id
        fund.approved_at = utcnow()
        db.session.commit()
        current_app.logger.info("Petty cash fund %s approved: %d cents", fund.reference, fund.amount_cents)
        return fund

    with named_lock(CASH_BOX):
        return run_with_retry(_op)


def reject_fund(fund_id: int, reason: str = "") -> PettyCashFund:
    def _op():
        fund = _lock_fund(fund_id)
        if fund.status != PettyCashFund.STATUS_PENDING:
            raise PettyCashError(f"Cannot reject a fund with status {fund.status}")
        fund.status = PettyCashFund.STATUS_REJECTED
        if reason:
            fund.description = f"{fund.description}\nRejected: {reason}" if fund.description else f"Rejected: {reason}"
        db.session.commit()
        return fund

    return run_with_retry(_op)


def list_funds(status: str | None = None, date_from=None, date_to=None) -> list[PettyCashFund]:
    query = db.session.query(PettyCashFund)
    if status:
        query = query.filter(PettyCashFund.status == status)
    if date_from is not None:
        query = query.filter(PettyCashFund.fund_date >= _coerce_date(date_from, "date_from"))
    if date_to is not None:
        query = query.filter(PettyCashFund.fund_date <= _coerce_date(date_to, "date_to"))
    return query.order_by(PettyCashFund.fund_date.desc(), PettyCashFund.id.desc()).all()


# =============================================================================
# Transactions
# =============================================================================

def issue_cash(
    employee_name: str,
    purpose: str,
    amount_issued_cents: int,
    transaction_date=None,
    description: str | None = None,
    user_id: int | None = None,
) -> PettyCashTransaction:
    """
    Hand cash to an employee.

    Raises:
        ValidationError: missing employee/purpose or non-positive amount
        PettyCashError: the available balance cannot cover the amount
    """
    if not employee_name or not str(employee_name).strip():
        raise ValidationError("employee_name is required")
    if not purpose or not str(purpose).strip():
        raise ValidationError("purpose is required")
    amount = _positive_cents(amount_issued_cents, "amount_issued_cents")
    day = _coerce_date(transaction_date, "transaction_date")

    def _op():
        available = get_available_balance()
        if available < amount:
            raise PettyCashError(
                "Insufficient petty cash fund balance",
                details={"available_cents": available, "requested_cents": amount},
            )
        txn = PettyCashTransaction(
            reference=next_document_number(db.session, DOC_PETTY_CASH_TXN),
            transaction_date=day,
            employee_name=str(employee_name).strip()[:128],
            purpose=str(purpose).strip()[:255],
            description=description,
            amount_issued_cents=amount,
            amount_spent_cents=0,
            amount_returned_cents=0,
            balance_before_cents=available,
            balance_after_cents=available - amount,
            status=PettyCashTransaction.STATUS_ISSUED,
            issued_by_user_id=user_id,
        )
        db.session.add(txn)
        db.session.commit()
        current_app.logger.info(
            "Petty cash %s issued to %s: %d cents, balance %d",
            txn.reference, txn.employee_name, amount, txn.balance_after_cents,
        )
        return txn

    with named_lock(CASH_BOX):
        return run_with_retry(_op)


def _lock_transaction(transaction_id: int) -> PettyCashTransaction:
    txn = lock_for_update(
        db.session.query(PettyCashTransaction).filter_by(id=transaction_id)
    ).first()
    if txn is None:
        raise PettyCashError("Petty cash transaction not found")
    return txn


def settle_transaction(
    transaction_id: int,
    amount_spent_cents: int,
    amount_returned_cents: int,
    remarks: str | None = None,
) -> PettyCashTransaction:
    """
    Account for issued cash. Spent plus returned must equal the issued amount.
    """
    spent = coerce_price_cents(amount_spent_cents, "amount_spent_cents")
    returned = coerce_price_cents(amount_returned_cents, "amount_returned_cents")

    def _op():
        txn = _lock_transaction(transaction_id)
        if txn.status != PettyCashTransaction.STATUS_ISSUED:
            raise PettyCashError("Transaction cannot be settled because it is not in issued status")
        remaining = txn.amount_issued_cents - spent - returned
        if remaining != 0:
            raise PettyCashError(
                "Settlement amount does not match",
                details={"remaining_cents": remaining},
            )
        txn.amount_spent_cents = spent
        txn.amount_returned_cents = returned
        if remarks is not None:
            txn.remarks = remarks
        txn.status = PettyCashTransaction.STATUS_SETTLED
        txn.settled_at = utcnow()
        db.session.commit()
        return txn

    with named_lock(CASH_BOX):
        return run_with_retry(_op)


def approve_transaction(transaction_id: int, user_id: int | None = None) -> PettyCashTransaction:
    def _op():
        txn = _lock_transaction(transaction_id)
        if txn.status != PettyCashTransaction.STATUS_SETTLED:
            raise PettyCashError("Transaction cannot be approved because it is not settled")
        txn.status = PettyCashTransaction.STATUS_APPROVED
        txn.approved_by_user_id = user_id
        db.session.commit()
        return txn

    return run_with_retry(_op)


def cancel_transaction(transaction_id: int, reason: str | None = None) -> PettyCashTransaction:
    def _op():
        txn = _lock_transaction(transaction_id)
        if txn.status not in (PettyCashTransaction.STATUS_ISSUED, PettyCashTransaction.STATUS_SETTLED):
            raise PettyCashError(f"Transaction cannot be cancelled because it is in {txn.status} status")
        txn.status = PettyCashTransaction.STATUS_CANCELLED
        if reason:
            txn.remarks = f"{txn.remarks} | Cancelled: {reason}" if txn.remarks else f"Cancelled: {reason}"
        db.session.commit()
        return txn

    with named_lock(CASH_BOX):
        return run_with_retry(_op)


def list_transactions(
    employee_name: str | None = None,
    status: str | None = None,
    date_from=None,
    date_to=None,
) -> list[PettyCashTransaction]:
    query = db.session.query(PettyCashTransaction)
    if employee_name:
        query = query.filter(PettyCashTransaction.employee_name == employee_name)
    if status:
        query = query.filter(PettyCashTransaction.status == status)
    if date_from is not None:
        query = query.filter(PettyCashTransaction.transaction_date >= _coerce_date(date_from, "date_from"))
    if date_to is not None:
        query = query.filter(PettyCashTransaction.transaction_date <= _coerce_date(date_to, "date_to"))
    return query.order_by(
        PettyCashTransaction.transaction_date.desc(), PettyCashTransaction.id.desc()
    ).all()


def get_petty_cash_stats() -> dict:
    outstanding = PettyCashTransaction.status.in_(PettyCashTransaction.OUTSTANDING_STATUSES)
    accounted = PettyCashTransaction.status.in_(
        (PettyCashTransaction.STATUS_SETTLED, PettyCashTransaction.STATUS_APPROVED)
    )
    by_status = dict(
        db.session.query(PettyCashTransaction.status, func.count(PettyCashTransaction.id))
        .group_by(PettyCashTransaction.status)
        .all()
    )
    return {
        "total_funds_cents": _sum(
            PettyCashFund.amount_cents, PettyCashFund.status == PettyCashFund.STATUS_APPROVED
        ),
        "pending_funds_cents": _sum(
            PettyCashFund.amount_cents, PettyCashFund.status == PettyCashFund.STATUS_PENDING
        ),
        "total_issued_cents": _sum(PettyCashTransaction.amount_issued_cents, outstanding),
        "total_spent_cents": _sum(PettyCashTransaction.amount_spent_cents, accounted),
        "total_returned_cents": _sum(PettyCashTransaction.amount_returned_cents, accounted),
        "available_balance_cents": get_available_balance(),
        "total_transactions": sum(by_status.values()),
        "issued_transactions": by_status.get(PettyCashTransaction.STATUS_ISSUED, 0),
        "settled_transactions": by_status.get(PettyCashTransaction.STATUS_SETTLED, 0),
        "approved_transactions": by_status.get(PettyCashTransaction.STATUS_APPROVED, 0),
        "cancelled_transactions": by_status.get(PettyCashTransaction.STATUS_CANCELLED, 0),
    }
