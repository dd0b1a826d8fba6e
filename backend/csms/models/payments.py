from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


PAY_PENDING = "pending"
PAY_PROCESSING = "processing"
PAY_SUCCEEDED = "succeeded"
PAY_FAILED = "failed"
PAY_CANCELLED = "cancelled"
PAY_REFUNDED = "refunded"
PAY_PARTIALLY_REFUNDED = "partially_refunded"

PAYMENT_STATUSES = (
    PAY_PENDING,
    PAY_PROCESSING,
    PAY_SUCCEEDED,
    PAY_FAILED,
    PAY_CANCELLED,
    PAY_REFUNDED,
    PAY_PARTIALLY_REFUNDED,
)

# Money has been captured and may be (partly) refunded
PAY_REFUNDABLE_STATUSES = (PAY_SUCCEEDED, PAY_PARTIALLY_REFUNDED)


class Payment(db.Model):
    """
    Local record of one processor payment attempt.

    The row is created (status pending) BEFORE the processor call so that the
    processor object can carry our payment id in its metadata. Webhooks find
    the row again by session id, payment intent id or charge id.

    REFUNDS: refund_amount_cents is cumulative and never exceeds amount_cents.
    """
    __tablename__ = "processor_payments"
    __table_args__ = (
        db.UniqueConstraint("stripe_session_id", name="uq_processor_payments_session"),
        db.UniqueConstraint("stripe_payment_intent_id", name="uq_processor_payments_intent"),
        db.UniqueConstraint("stripe_charge_id", name="uq_processor_payments_charge"),
        db.CheckConstraint("amount_cents > 0", name="ck_processor_payments_amount_positive"),
        db.CheckConstraint(
            "refund_amount_cents >= 0 AND refund_amount_cents <= amount_cents",
            name="ck_processor_payments_refund_range",
        ),
        db.Index("ix_processor_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Processor identifiers (nullable until known)
    stripe_session_id = db.Column(db.String(255), nullable=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    stripe_charge_id = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="SAR")
    status = db.Column(db.String(32), nullable=False, default=PAY_PENDING, index=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=True)
    receipt_email = db.Column(db.String(255), nullable=True)
    receipt_url = db.Column(db.String(512), nullable=True)

    # Card / wallet details reported by the processor
    payment_method_type = db.Column(db.String(32), nullable=True)
    card_brand = db.Column(db.String(32), nullable=True)
    card_last4 = db.Column(db.String(4), nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    refund_reason = db.Column(db.String(255), nullable=True)

    error_code = db.Column(db.String(64), nullable=True)
    error_message = db.Column(db.String(512), nullable=True)

    extension_data = db.Column(db.JSON, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    succeeded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    customer = db.relationship("Customer")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_cents(self) -> int:
        if self.status not in PAY_REFUNDABLE_STATUSES:
            return 0
        return self.amount_cents - self.refund_amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_session_id": self.stripe_session_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_charge_id": self.stripe_charge_id,
            "stripe_customer_id": self.stripe_customer_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "order_id": self.order_id,
            "invoice_id": self.invoice_id,
            "customer_id": self.customer_id,
            "description": self.description,
            "receipt_email": self.receipt_email,
            "receipt_url": self.receipt_url,
            "payment_method": {
                "type": self.payment_method_type,
                "brand": self.card_brand,
                "last4": self.card_last4,
            },
            "refund_amount_cents": self.refund_amount_cents,
            "refundable_cents": self.refundable_cents,
            "refund_reason": self.refund_reason,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "extension_data": self.extension_data or {},
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "succeeded_at": to_utc_z(self.succeeded_at),
            "failed_at": to_utc_z(self.failed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refunded_at": to_utc_z(self.refunded_at),
        }


class PaymentWebhookEvent(db.Model):
    """
    Processor event that has already been handled.

    The unique event_id is the idempotency key: a replayed delivery fails
    the insert and is acknowledged without side effects.
    """
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        db.UniqueConstraint("event_id", name="uq_payment_webhook_events_event_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("processor_payments.id"), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    payment = db.relationship("Payment", backref=db.backref("webhook_events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payment_id": self.payment_id,
            "received_at": to_utc_z(self.received_at),
        }
