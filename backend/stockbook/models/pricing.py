from __future__ import annotations

from sqlalchemy import and_, or_

from ..extensions import db
from stockbook.time_utils import to_utc_z, utcnow


class QuantityRangeMixin:
    """
    Inclusive [min_quantity, max_quantity] range; max_quantity NULL is unbounded.

    Shared by BracketTier and CustomerPriceOverride so Python-side and SQL-side
    matching cannot drift apart.
    """

    def contains_quantity(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity

    @classmethod
    def covering(cls, quantity: int):
        """SQL filter: rows whose range contains quantity."""
        return and_(
            cls.min_quantity <= quantity,
            or_(cls.max_quantity.is_(None), cls.max_quantity >= quantity),
        )

    @property
    def quantity_range(self) -> str:
        if self.max_quantity is None:
            return f"{self.min_quantity}+"
        if self.min_quantity == self.max_quantity:
            return str(self.min_quantity)
        return f"{self.min_quantity} - {self.max_quantity}"


class PriceBracket(db.Model):
    """
    Quantity-bracket price table for a product.

    At most one bracket per product has is_selected=True. Selection is only
    changed through bracket_service.activate_bracket / deactivate_bracket_pricing,
    which run the deselect-all-then-select-one transition in one transaction.
    """
    __tablename__ = "price_brackets"
    __table_args__ = (
        db.Index("ix_price_brackets_product_selected", "product_id", "is_selected"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_to = db.Column(db.DateTime, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", backref=db.backref("brackets", lazy=True))
    tiers = db.relationship(
        "BracketTier",
        back_populates="bracket",
        cascade="all, delete-orphan",
        order_by=lambda: [BracketTier.price_tier, BracketTier.min_quantity, BracketTier.id],
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_tiers: bool = True) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "is_selected": self.is_selected,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_tiers:
            data["tiers"] = [t.to_dict() for t in self.tiers]
        return data


class BracketTier(QuantityRangeMixin, db.Model):
    """
    One row of a bracket: a price for a quantity range and price tier.

    Competing tiers may share a range and price tier; resolution takes the
    lowest price among active matches.
    """
    __tablename__ = "bracket_tiers"
    __table_args__ = (
        db.Index("ix_bracket_tiers_bracket_tier", "bracket_id", "price_tier", "is_active"),
        db.CheckConstraint("price_cents >= 0", name="ck_bracket_tiers_price_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bracket_id = db.Column(db.Integer, db.ForeignKey("price_brackets.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)
    price_tier = db.Column(db.String(16), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    label = db.Column(db.String(64), nullable=True)

    bracket = db.relationship("PriceBracket", back_populates="tiers")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bracket_id": self.bracket_id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "quantity_range": self.quantity_range,
            "price_cents": self.price_cents,
            "price_tier": self.price_tier,
            "is_active": self.is_active,
            "label": self.label,
        }


class CustomerPriceOverride(QuantityRangeMixin, db.Model):
    """
    Customer-and-product price that bypasses bracket and flat pricing.

    Overlapping active rows for one customer+product are deactivated when a new
    row is written (custom_pricing_service). Residual overlap is resolved at read
    time: highest min_quantity, then latest effective_from, then highest id.
    """
    __tablename__ = "customer_price_overrides"
    __table_args__ = (
        db.Index("ix_overrides_customer_product_active", "customer_id", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)
    label = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_to = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    customer = db.relationship("Customer", backref=db.backref("price_overrides", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "product_id": self.product_id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "quantity_range": self.quantity_range,
            "price_cents": self.price_cents,
            "label": self.label,
            "is_active": self.is_active,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
        }
