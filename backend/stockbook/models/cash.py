from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, utcnow


class PettyCashFund(db.Model):
    """
    Cash added to the petty cash box.

    Only APPROVED funds count towards the available balance.
    """
    __tablename__ = "petty_cash_funds"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_petty_cash_funds_reference"),
        db.CheckConstraint("amount_cents > 0", name="ck_petty_cash_funds_amount_pos"),
        {"sqlite_autoincrement": True},
    )

    STATUS_PENDING = "pending"
    STATUS_APPROVED = "approved"
    STATUS_REJECTED = "rejected"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False)
    fund_date = db.Column(db.Date, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "fund_date": self.fund_date.isoformat() if self.fund_date else None,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "created_at": to_utc_z(self.created_at),
        }


class PettyCashTransaction(db.Model):
    """
    Cash issued to an employee and later accounted for.

    LIFECYCLE:
    1. ISSUED: cash handed out; leaves the available balance
    2. SETTLED: amount_spent + amount_returned == amount_issued
    3. APPROVED: settlement reviewed
    4. CANCELLED: from ISSUED or SETTLED; the full issue goes back to the box

    balance_before/after_cents snapshot the available balance at issue time.
    """
    __tablename__ = "petty_cash_transactions"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_petty_cash_txn_reference"),
        db.CheckConstraint("amount_issued_cents > 0", name="ck_petty_cash_txn_issued_pos"),
        {"sqlite_autoincrement": True},
    )

    STATUS_ISSUED = "issued"
    STATUS_SETTLED = "settled"
    STATUS_APPROVED = "approved"
    STATUS_CANCELLED = "cancelled"
    OUTSTANDING_STATUSES = (STATUS_ISSUED, STATUS_SETTLED, STATUS_APPROVED)

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False)
    transaction_date = db.Column(db.Date, nullable=False)
    employee_name = db.Column(db.String(128), nullable=False, index=True)
    purpose = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    amount_issued_cents = db.Column(db.Integer, nullable=False)
    amount_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_returned_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=STATUS_ISSUED, index=True)
    remarks = db.Column(db.Text, nullable=True)

    issued_by_user_id = db.Column(db.Integer, nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    settled_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_cents(self) -> int:
        return self.amount_issued_cents - self.amount_spent_cents - self.amount_returned_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "employee_name": self.employee_name,
            "purpose": self.purpose,
            "description": self.description,
            "amount_issued_cents": self.amount_issued_cents,
            "amount_spent_cents": self.amount_spent_cents,
            "amount_returned_cents": self.amount_returned_cents,
            "remaining_cents": self.remaining_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "status": self.status,
            "remarks": self.remarks,
            "issued_by_user_id": self.issued_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at),
        }
