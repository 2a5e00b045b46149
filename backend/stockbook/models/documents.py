from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, utcnow


class Sale(db.Model):
    """
    Sale document.

    A sale is created already completed: price resolution, FIFO allocation and
    the inventory decrement happen in the same transaction as the insert.
    Cancelling reverses the allocation for every item.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"
    STATUS_PARTIALLY_RETURNED = "partially_returned"
    STATUS_RETURNED = "returned"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(24), nullable=False, default=STATUS_COMPLETED, index=True)
    price_tier = db.Column(db.String(16), nullable=False, default="regular")

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    other_charges_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    cogs_cents = db.Column(db.Integer, nullable=False, default=0)
    profit_cents = db.Column(db.Integer, nullable=False, default=0)

    remarks = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    items = db.relationship("SaleItem", back_populates="sale", order_by="SaleItem.id", lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_cost_drift(self) -> bool:
        return any(item.cost_degraded for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "status": self.status,
            "price_tier": self.price_tier,
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "other_charges_cents": self.other_charges_cents,
            "total_cents": self.total_cents,
            "cogs_cents": self.cogs_cents,
            "profit_cents": self.profit_cents,
            "remarks": self.remarks,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """Line item with the resolved sold price and the FIFO cost snapshot."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    price_tier = db.Column(db.String(16), nullable=False)
    price_source = db.Column(db.String(16), nullable=False)  # override, bracket, flat, manual
    sold_price_cents = db.Column(db.Integer, nullable=False)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)  # basis points
    total_sold_cents = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)
    cost_degraded = db.Column(db.Boolean, nullable=False, default=False)
    cost_shortfall = db.Column(db.Integer, nullable=False, default=0)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - self.returned_quantity

    @property
    def profit_cents(self) -> int:
        return self.total_sold_cents - self.total_cost_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "returned_quantity": self.returned_quantity,
            "price_tier": self.price_tier,
            "price_source": self.price_source,
            "sold_price_cents": self.sold_price_cents,
            "discount_bps": self.discount_bps,
            "total_sold_cents": self.total_sold_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "cost_degraded": self.cost_degraded,
            "cost_shortfall": self.cost_shortfall,
            "profit_cents": self.profit_cents,
        }


class Transfer(db.Model):
    """
    Outbound transfer to a warehouse.

    LIFECYCLE:
    1. IN_TRANSIT: created; inventory already allocated out (FIFO)
    2. COMPLETED: delivered (tracking only, no inventory effect)
    3. CANCELLED: allocation reversed and inventory restored
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.UniqueConstraint("transfer_number", name="uq_transfers_number"),
        {"sqlite_autoincrement": True},
    )

    STATUS_IN_TRANSIT = "in_transit"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"

    id = db.Column(db.Integer, primary_key=True)
    transfer_number = db.Column(db.String(64), nullable=False)
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_IN_TRANSIT, index=True)
    total_value_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)
    delivery_date = db.Column(db.DateTime, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    warehouse = db.relationship("Warehouse", backref=db.backref("transfers", lazy=True))
    items = db.relationship("TransferItem", back_populates="transfer", order_by="TransferItem.id", lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "to_warehouse_id": self.to_warehouse_id,
            "status": self.status,
            "total_value_cents": self.total_value_cents,
            "notes": self.notes,
            "delivery_date": to_utc_z(self.delivery_date),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "items": [item.to_dict() for item in self.items],
        }


class TransferItem(db.Model):
    __tablename__ = "transfer_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)
    cost_degraded = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.String(255), nullable=True)

    transfer = db.relationship("Transfer", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "cost_degraded": self.cost_degraded,
            "notes": self.notes,
        }


class SaleReturn(db.Model):
    """
    Credit memo against a sale.

    LIFECYCLE:
    1. APPROVED: created; restockable items are back in inventory
    2. COMPLETED: refund settled
    3. REJECTED: restocked quantities taken out again
    """
    __tablename__ = "sale_returns"
    __table_args__ = (
        db.UniqueConstraint("credit_memo_number", name="uq_sale_returns_memo"),
        {"sqlite_autoincrement": True},
    )

    STATUS_APPROVED = "approved"
    STATUS_REJECTED = "rejected"
    STATUS_COMPLETED = "completed"

    REFUND_NONE = "none"
    REFUND_CASH = "cash"
    REFUND_CREDIT = "store_credit"
    REFUND_METHODS = (REFUND_NONE, REFUND_CASH, REFUND_CREDIT)

    id = db.Column(db.Integer, primary_key=True)
    credit_memo_number = db.Column(db.String(64), nullable=False)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    user_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_APPROVED, index=True)
    refund_method = db.Column(db.String(16), nullable=False, default=REFUND_NONE)
    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    remarks = db.Column(db.Text, nullable=True)

    return_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    items = db.relationship("SaleReturnItem", back_populates="sale_return", order_by="SaleReturnItem.id", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credit_memo_number": self.credit_memo_number,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "status": self.status,
            "refund_method": self.refund_method,
            "refund_amount_cents": self.refund_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "remarks": self.remarks,
            "return_date": to_utc_z(self.return_date),
            "completed_at": to_utc_z(self.completed_at),
            "items": [item.to_dict() for item in self.items],
        }


class SaleReturnItem(db.Model):
    __tablename__ = "sale_return_items"
    __table_args__ = {"sqlite_autoincrement": True}

    CONDITION_NEW = "new"
    CONDITION_GOOD = "good"
    CONDITION_DAMAGED = "damaged"
    CONDITION_EXPIRED = "expired"
    CONDITION_DEFECTIVE = "defective"
    CONDITIONS = (CONDITION_NEW, CONDITION_GOOD, CONDITION_DAMAGED, CONDITION_EXPIRED, CONDITION_DEFECTIVE)
    RESTOCKABLE_CONDITIONS = (CONDITION_NEW, CONDITION_GOOD)

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)

    return_reason = db.Column(db.String(32), nullable=False, default="other")
    condition = db.Column(db.String(16), nullable=False, default=CONDITION_GOOD)

    sale_return = db.relationship("SaleReturn", back_populates="items")
    sale_item = db.relationship("SaleItem")

    @property
    def is_returnable_to_inventory(self) -> bool:
        return self.condition in self.RESTOCKABLE_CONDITIONS

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "discount_bps": self.discount_bps,
            "subtotal_cents": self.subtotal_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "return_reason": self.return_reason,
            "condition": self.condition,
            "is_returnable_to_inventory": self.is_returnable_to_inventory,
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: Prevent race conditions when generating invoice, transfer and
    credit memo numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
