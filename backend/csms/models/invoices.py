from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..time_utils import as_naive_utc, to_utc_z, utcnow


INVOICE_DRAFT = "Draft"
INVOICE_SENT = "Sent"
INVOICE_PARTIALLY_PAID = "Partially Paid"
INVOICE_PAID = "Paid"
INVOICE_OVERDUE = "Overdue"
INVOICE_CANCELLED = "Cancelled"

INVOICE_STATUSES = (
    INVOICE_DRAFT,
    INVOICE_SENT,
    INVOICE_PARTIALLY_PAID,
    INVOICE_PAID,
    INVOICE_OVERDUE,
    INVOICE_CANCELLED,
)

# Statuses from which money can still be applied
INVOICE_PAYABLE_STATUSES = (
    INVOICE_DRAFT,
    INVOICE_SENT,
    INVOICE_PARTIALLY_PAID,
    INVOICE_OVERDUE,
)


class Invoice(db.Model):
    """
    Billing document issued from exactly one order.

    BALANCE: balance_cents = total_cents - amount_paid_cents is always
    computed, never stored. The CHECK constraint keeps amount_paid within
    [0, total].

    OVERDUE: reported by effective_status as soon as due_date has passed,
    and persisted by the periodic mark-overdue sweep.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        db.UniqueConstraint("order_id", name="uq_invoices_order_id"),
        db.CheckConstraint(
            "amount_paid_cents >= 0 AND amount_paid_cents <= total_cents",
            name="ck_invoices_amount_paid_range",
        ),
        db.CheckConstraint("total_cents = subtotal_cents + tax_cents", name="ck_invoices_total"),
        db.Index("ix_invoices_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=INVOICE_DRAFT, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="SAR")

    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    extension_data = db.Column(db.JSON, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("invoice", uselist=False))
    customer = db.relationship("Customer")
    lines = db.relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="InvoiceLine.line_number",
        cascade="all, delete-orphan",
    )
    timeline = db.relationship(
        "InvoiceTimelineEntry",
        back_populates="invoice",
        order_by="InvoiceTimelineEntry.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_cents(self) -> int:
        return self.total_cents - self.amount_paid_cents

    def is_past_due(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return as_naive_utc(self.due_date) < now

    def effective_status(self, now: datetime | None = None) -> str:
        if self.status in (INVOICE_PAID, INVOICE_CANCELLED):
            return self.status
        if self.is_past_due(now):
            return INVOICE_OVERDUE
        return self.status

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "status": self.effective_status(),
            "stored_status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "balance_cents": self.balance_cents,
            "currency": self.currency,
            "due_date": to_utc_z(self.due_date),
            "sent_at": to_utc_z(self.sent_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "notes": self.notes,
            "extension_data": self.extension_data or {},
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["timeline"] = [entry.to_dict() for entry in self.timeline]
        return data


class InvoiceLine(db.Model):
    """Copy of an order line at issue time."""
    __tablename__ = "invoice_lines"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "line_number", name="uq_invoice_lines_invoice_line_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    invoice = db.relationship("Invoice", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_number": self.line_number,
            "order_line_id": self.order_line_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "line_total_cents": self.line_total_cents,
        }


class InvoiceTimelineEntry(db.Model):
    """Append-only status history for an invoice."""
    __tablename__ = "invoice_timeline_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="timeline")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "note": self.note,
            "amount_cents": self.amount_cents,
            "occurred_at": to_utc_z(self.occurred_at),
        }
