from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, utcnow


class PurchaseBatch(db.Model):
    """
    One received-goods line; the unit of FIFO cost tracking.

    INVARIANTS:
    - 0 <= consumed_quantity <= received_quantity
    - fully_consumed == (consumed_quantity == received_quantity)
    - Only fifo_service mutates consumed_quantity. Batches are never deleted.

    FIFO order is (received_at, id) ascending. consume_seq stamps the order in
    which batches were last drawn from (per product); reversal gives units
    back in descending consume_seq, so a backdated receipt consumed after a
    newer one is restored first.
    """
    __tablename__ = "purchase_batches"
    __table_args__ = (
        db.Index("ix_batches_product_received", "product_id", "received_at", "id"),
        db.CheckConstraint("consumed_quantity >= 0", name="ck_batches_consumed_nonneg"),
        db.CheckConstraint("consumed_quantity <= received_quantity", name="ck_batches_consumed_le_received"),
        {"sqlite_autoincrement": True},
    )

    SOURCE_RECEIVE = "RECEIVE"
    SOURCE_ADJUSTMENT = "ADJUSTMENT"
    SOURCE_RETURN = "RETURN"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    received_quantity = db.Column(db.Integer, nullable=False)
    consumed_quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    fully_consumed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    consume_seq = db.Column(db.Integer, nullable=True)

    received_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    source = db.Column(db.String(16), nullable=False, default=SOURCE_RECEIVE)
    reference = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return self.received_quantity - self.consumed_quantity

    @property
    def total_cost_cents(self) -> int:
        return self.received_quantity * self.unit_cost_cents

    def sync_consumed_flag(self) -> None:
        self.fully_consumed = self.consumed_quantity >= self.received_quantity

    def __repr__(self) -> str:
        return (
            f"<PurchaseBatch id={self.id} product_id={self.product_id} "
            f"consumed={self.consumed_quantity}/{self.received_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "received_quantity": self.received_quantity,
            "consumed_quantity": self.consumed_quantity,
            "available_quantity": self.available_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "fully_consumed": self.fully_consumed,
            "consume_seq": self.consume_seq,
            "received_at": to_utc_z(self.received_at),
            "source": self.source,
            "reference": self.reference,
        }


class InventoryRecord(db.Model):
    """
    Aggregate on-hand quantity and running average cost, one row per product.

    The allocator locks this row (SELECT ... FOR UPDATE) for every
    allocate/reverse; version_id catches lost updates on backends that ignore
    the lock.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.UniqueConstraint("product_id", name="uq_inventory_product"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    avg_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    last_received_at = db.Column(db.DateTime, nullable=True)
    recount_needed = db.Column(db.Boolean, nullable=False, default=False)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", backref=db.backref("inventory", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def apply_receipt(self, quantity: int, unit_cost_cents: int) -> None:
        """Fold a receipt into the running average (half-up cents)."""
        new_total_qty = self.quantity + quantity
        if new_total_qty > 0 and unit_cost_cents >= 0:
            total = self.quantity * self.avg_cost_cents + quantity * unit_cost_cents
            self.avg_cost_cents = (total + new_total_qty // 2) // new_total_qty
        self.quantity = new_total_qty
        self.last_received_at = utcnow()

    def is_low_stock(self) -> bool:
        reorder = self.product.reorder_level if self.product else 0
        return self.quantity <= reorder

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "avg_cost_cents": self.avg_cost_cents,
            "last_received_at": to_utc_z(self.last_received_at),
            "recount_needed": self.recount_needed,
            "version_id": self.version_id,
        }


class InventoryLog(db.Model):
    """
    Append-only movement log.

    - Written inside the same DB transaction as the movement it records.
    - No updates/deletes.
    """
    __tablename__ = "inventory_logs"
    __table_args__ = (
        db.Index("ix_inventory_logs_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    TYPE_PURCHASE = "purchase"
    TYPE_SALES = "sales"
    TYPE_ADJUSTMENT_IN = "adjustment_in"
    TYPE_ADJUSTMENT_OUT = "adjustment_out"
    TYPE_RETURN = "return"
    TYPE_TRANSFER_IN = "transfer_in"
    TYPE_TRANSFER_OUT = "transfer_out"

    REF_RECEIVE = "receive"
    REF_SALE = "sale"
    REF_SALE_CANCEL = "sale_cancel"
    REF_ADJUSTMENT = "adjustment"
    REF_RETURN = "sale_return"
    REF_RETURN_REJECT = "return_reject"
    REF_TRANSFER = "transfer"
    REF_INVENTORY_COUNT = "inventory_count"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=True)

    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)
    cost_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "transaction_type": self.transaction_type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "quantity": self.quantity,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "cost_cents": self.cost_cents,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryAdjustment(db.Model):
    """Manual stock correction (addition, reduction, damage, loss, return)."""
    __tablename__ = "inventory_adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    TYPE_ADDITION = "addition"
    TYPE_REDUCTION = "reduction"
    TYPE_DAMAGE = "damage"
    TYPE_LOSS = "loss"
    TYPE_RETURN = "return"

    # Posted only by a finalized physical count
    TYPE_COUNT = "count"

    INBOUND_TYPES = (TYPE_ADDITION, TYPE_RETURN)
    OUTBOUND_TYPES = (TYPE_REDUCTION, TYPE_DAMAGE, TYPE_LOSS)

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=True)

    adjustment_type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "adjustment_type": self.adjustment_type,
            "quantity": self.quantity,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "reason": self.reason,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryCount(db.Model):
    """
    Physical inventory count.

    LIFECYCLE:
    1. DRAFT: created with counted lines; system quantities snapshotted
    2. IN_PROGRESS: lines edited after creation
    3. FINALIZED: counted quantities posted to inventory and batches
    4. CANCELLED: abandoned before finalizing
    """
    __tablename__ = "inventory_counts"
    __table_args__ = (
        db.UniqueConstraint("count_number", name="uq_inventory_counts_number"),
        {"sqlite_autoincrement": True},
    )

    STATUS_DRAFT = "draft"
    STATUS_IN_PROGRESS = "in_progress"
    STATUS_FINALIZED = "finalized"
    STATUS_CANCELLED = "cancelled"
    EDITABLE_STATUSES = (STATUS_DRAFT, STATUS_IN_PROGRESS)

    id = db.Column(db.Integer, primary_key=True)
    count_number = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_DRAFT, index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    finalized_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    finalized_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "InventoryCountItem",
        back_populates="count",
        cascade="all, delete-orphan",
        order_by="InventoryCountItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_editable(self) -> bool:
        return self.status in self.EDITABLE_STATUSES

    @property
    def discrepancy_count(self) -> int:
        return sum(1 for item in self.items if item.variance_quantity != 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "count_number": self.count_number,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "finalized_by_user_id": self.finalized_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "finalized_at": to_utc_z(self.finalized_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "discrepancy_count": self.discrepancy_count,
            "items": [item.to_dict() for item in self.items],
        }


class InventoryCountItem(db.Model):
    """One counted product; system_quantity is the on-hand figure when counted."""
    __tablename__ = "inventory_count_items"
    __table_args__ = (
        db.UniqueConstraint("count_id", "product_id", name="uq_count_items_product"),
        db.CheckConstraint("counted_quantity >= 0", name="ck_count_items_counted_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    count_id = db.Column(db.Integer, db.ForeignKey("inventory_counts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    system_quantity = db.Column(db.Integer, nullable=False)
    counted_quantity = db.Column(db.Integer, nullable=False)
    # Filled in on finalize
    posted_quantity_before = db.Column(db.Integer, nullable=True)
    adjustment_id = db.Column(db.Integer, db.ForeignKey("inventory_adjustments.id"), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    count = db.relationship("InventoryCount", back_populates="items")

    @property
    def variance_quantity(self) -> int:
        return self.counted_quantity - self.system_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "count_id": self.count_id,
            "product_id": self.product_id,
            "system_quantity": self.system_quantity,
            "counted_quantity": self.counted_quantity,
            "variance_quantity": self.variance_quantity,
            "posted_quantity_before": self.posted_quantity_before,
            "adjustment_id": self.adjustment_id,
            "notes": self.notes,
        }
