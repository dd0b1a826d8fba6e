from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


PRODUCT_CATEGORIES = ("cement", "aggregate", "sand", "other")
PRODUCT_UNITS = ("bags", "tons", "kg", "m3", "units")

TX_INBOUND = "INBOUND"
TX_OUTBOUND = "OUTBOUND"
TX_ADJUSTMENT = "ADJUSTMENT"
TRANSACTION_TYPES = (TX_INBOUND, TX_OUTBOUND, TX_ADJUSTMENT)


class Product(db.Model):
    """
    Catalog entry for a construction material.

    STOCK: stock_quantity is only ever changed by a single conditional
    UPDATE statement (see ProductService), so it carries no version column.
    Every change is paired with an InventoryTransaction row.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_nonnegative"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_products_price_nonnegative"),
        db.CheckConstraint("reorder_level >= 0", name="ck_products_reorder_nonnegative"),
        db.CheckConstraint(
            "tax_rate_bps >= 0 AND tax_rate_bps <= 10000", name="ck_products_tax_rate_range"
        ),
        db.Index("ix_products_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(32), nullable=False, default="other")
    unit = db.Column(db.String(16), nullable=False, default="units")

    # Authoritative storage in minor units
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=1500)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    reorder_level = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    extension_data = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.reorder_level

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "unit": self.unit,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "stock_quantity": self.stock_quantity,
            "reorder_level": self.reorder_level,
            "is_low_stock": self.is_low_stock,
            "is_active": self.is_active,
            "extension_data": self.extension_data or {},
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryTransaction(db.Model):
    """
    Append-only audit row for one stock change.

    quantity is signed: INBOUND > 0, OUTBOUND < 0, ADJUSTMENT either way.
    Rows are never updated or deleted (enforced in models.immutability).
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.CheckConstraint(
            "after_quantity = before_quantity + quantity", name="ck_inventory_tx_balance"
        ),
        db.CheckConstraint("after_quantity >= 0", name="ck_inventory_tx_after_nonnegative"),
        db.Index("ix_inventory_tx_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)  # INBOUND, OUTBOUND, ADJUSTMENT
    quantity = db.Column(db.Integer, nullable=False)
    before_quantity = db.Column(db.Integer, nullable=False)
    after_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    # Order number, INIT-STOCK, delivery note, ...
    reference = db.Column(db.String(64), nullable=True, index=True)
    performed_by = db.Column(db.String(128), nullable=True)
    extension_data = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": self.quantity,
            "before_quantity": self.before_quantity,
            "after_quantity": self.after_quantity,
            "reason": self.reason,
            "reference": self.reference,
            "performed_by": self.performed_by,
            "extension_data": self.extension_data or {},
            "occurred_at": to_utc_z(self.occurred_at),
        }
