from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Product master data.

    PRICING:
    - use_bracket_pricing=False: the flat ProductPrice row effective now applies.
    - use_bracket_pricing=True: the selected PriceBracket applies first and the
      flat price is the fallback when no tier covers the quantity.
    The flag is owned by bracket_service; do not flip it directly.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    reorder_level = db.Column(db.Integer, nullable=False, default=0)
    use_bracket_pricing = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "reorder_level": self.reorder_level,
            "use_bracket_pricing": self.use_bracket_pricing,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductPrice(db.Model):
    """
    Flat (traditional) price record, one field per price tier.

    Several rows may exist per product; the active row whose effective window
    contains "now" applies, latest effective_from first.
    """
    __tablename__ = "product_prices"
    __table_args__ = (
        db.Index("ix_product_prices_product_active", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    regular_price_cents = db.Column(db.Integer, nullable=False, default=0)
    wholesale_price_cents = db.Column(db.Integer, nullable=False, default=0)
    walk_in_price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_to = db.Column(db.DateTime, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("prices", lazy=True))

    def price_for_tier(self, price_tier: str) -> int | None:
        return {
            "regular": self.regular_price_cents,
            "wholesale": self.wholesale_price_cents,
            "walk_in": self.walk_in_price_cents,
        }.get(price_tier)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "regular_price_cents": self.regular_price_cents,
            "wholesale_price_cents": self.wholesale_price_cents,
            "walk_in_price_cents": self.walk_in_price_cents,
            "cost_price_cents": self.cost_price_cents,
            "is_active": self.is_active,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "created_by_user_id": self.created_by_user_id,
        }


class Customer(db.Model):
    """
    Customer master data.

    Valued customers may carry product-specific CustomerPriceOverride rows that
    take precedence over bracket and flat pricing.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_number = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    is_valued_customer = db.Column(db.Boolean, nullable=False, default=False, index=True)
    valued_since = db.Column(db.DateTime, nullable=True)
    valued_customer_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_number": self.contact_number,
            "email": self.email,
            "address": self.address,
            "is_valued_customer": self.is_valued_customer,
            "valued_since": to_utc_z(self.valued_since),
            "valued_customer_notes": self.valued_customer_notes,
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    """Transfer destination."""
    __tablename__ = "warehouses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "is_active": self.is_active,
        }
