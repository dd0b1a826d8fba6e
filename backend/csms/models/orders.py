from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


ORDER_PENDING = "Pending"
ORDER_CONFIRMED = "Confirmed"
ORDER_OUT_FOR_DELIVERY = "Out for Delivery"
ORDER_DELIVERED = "Delivered"
ORDER_CANCELLED = "Cancelled"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
)

PAYMENT_UNPAID = "unpaid"
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

ORDER_PAYMENT_STATUSES = (
    PAYMENT_UNPAID,
    PAYMENT_PENDING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
)


class Order(db.Model):
    """
    Customer order for delivered construction materials.

    TOTALS: subtotal/tax/total are derived from the lines by
    services.pricing and written once at placement.

    LIFECYCLE:
    Pending -> Confirmed -> Out for Delivery -> Delivered
    Pending/Confirmed/Out for Delivery -> Cancelled
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.CheckConstraint("subtotal_cents >= 0", name="ck_orders_subtotal_nonnegative"),
        db.CheckConstraint("tax_cents >= 0", name="ck_orders_tax_nonnegative"),
        db.CheckConstraint("total_cents = subtotal_cents + tax_cents", name="ck_orders_total"),
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=ORDER_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_UNPAID, index=True)

    # All amounts in minor units
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_overridden = db.Column(db.Boolean, nullable=False, default=False)
    currency = db.Column(db.String(3), nullable=False, default="SAR")

    # {"line1", "line2", "city", "notes"}
    delivery_address = db.Column(db.JSON, nullable=True)
    delivery_eta = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    extension_data = db.Column(db.JSON, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy="dynamic"))
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.line_number",
        cascade="all, delete-orphan",
    )
    timeline = db.relationship(
        "OrderTimelineEntry",
        back_populates="order",
        order_by="OrderTimelineEntry.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in (ORDER_DELIVERED, ORDER_CANCELLED)

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_overridden": self.tax_overridden,
            "currency": self.currency,
            "delivery_address": self.delivery_address or {},
            "delivery_eta": to_utc_z(self.delivery_eta),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "invoice_id": self.invoice.id if self.invoice else None,
            "extension_data": self.extension_data or {},
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["timeline"] = [entry.to_dict() for entry in self.timeline]
        return data


class OrderLine(db.Model):
    """Snapshot of a product at the moment the order was placed."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_line_number"),
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        db.CheckConstraint(
            "line_total_cents = quantity * unit_price_cents", name="ck_order_lines_line_total"
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "line_total_cents": self.line_total_cents,
        }


class OrderTimelineEntry(db.Model):
    """Append-only status history for an order."""
    __tablename__ = "order_timeline_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="timeline")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
