# Overview: Service-layer operations for processor payments; initiation, refunds and webhook reconciliation.

"""
Payment Reconciliation Service

INITIATION:
The local Payment row is inserted (pending) and flushed BEFORE the
processor call so its id travels in the processor object's metadata; the
row is then keyed by the session/intent id and committed. A failed
processor call rolls everything back.

WEBHOOKS (at-least-once, possibly out of order):
- signature verified by the gateway before anything else
- idempotency: every handled event id is stored in payment_webhook_events
  (unique). A replayed id is acknowledged without side effects.
- effects of "succeeded" apply only on the transition INTO succeeded, so
  checkout.session.completed and payment_intent.succeeded for the same
  checkout count once
- a success on an order that is already paid is kept but flagged
  duplicate_payment so it can be refunded
- payment not found -> NotFoundError (non-2xx, the processor retries)
- any other failure propagates so the event is not acknowledged

REFUNDS:
The processor refund is created first; local state changes only after it
succeeds. charge.refunded carries the cumulative refunded amount, and only
the delta over what is already recorded locally is applied.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadySettledError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models import Payment, PaymentWebhookEvent
from ..models.invoices import INVOICE_CANCELLED, INVOICE_PAID
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_UNPAID,
)
from ..models.payments import (
    PAY_CANCELLED,
    PAY_FAILED,
    PAY_PARTIALLY_REFUNDED,
    PAY_PENDING,
    PAY_PROCESSING,
    PAY_REFUNDABLE_STATUSES,
    PAY_REFUNDED,
    PAY_SUCCEEDED,
    PAYMENT_STATUSES,
)
from ..schemas import REFUND_REASONS
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry

logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_EXPIRED = "checkout.session.expired"
EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"

HANDLED_EVENT_TYPES = (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_CHECKOUT_EXPIRED,
    EVENT_INTENT_SUCCEEDED,
    EVENT_INTENT_FAILED,
    EVENT_CHARGE_REFUNDED,
)

# Stored on the payment when money arrived but was not applied to its order or invoice
ERROR_INVOICE_OVERPAYMENT = "invoice_overpayment"
ERROR_INVOICE_NOT_PAYABLE = "invoice_not_payable"
ERROR_DUPLICATE_PAYMENT = "duplicate_payment"
UNAPPLIED_ERROR_CODES = (ERROR_INVOICE_OVERPAYMENT, ERROR_INVOICE_NOT_PAYABLE, ERROR_DUPLICATE_PAYMENT)

MAX_PER_PAGE = 100


def _metadata_payment_id(obj: dict) -> int | None:
    raw = (obj.get("metadata") or {}).get("payment_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _refund_reason_for_processor(reason: str | None) -> str | None:
    """Map free-text reasons onto the processor's enum; anything else is requested_by_customer."""
    if not reason:
        return None
    normalized = reason.strip().lower().replace(" ", "_")
    if normalized in REFUND_REASONS:
        return normalized
    return "requested_by_customer"


class PaymentService:
    def __init__(self, session, *, gateway, orders, invoices):
        self.session = session
        self.gateway = gateway
        self.orders = orders
        self.invoices = invoices

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        query = self.session.query(Payment).filter(Payment.id == payment_id)
        if for_update:
            query = lock_for_update(query)
        payment = query.first()
        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})
        return payment

    def list_payments(
        self,
        *,
        status: str | None = None,
        customer_id: int | None = None,
        order_id: int | None = None,
        invoice_id: int | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> dict:
        if status is not None and status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {status}")
        page = max(page, 1)
        per_page = max(1, min(per_page, MAX_PER_PAGE))

        query = self.session.query(Payment)
        if status is not None:
            query = query.filter(Payment.status == status)
        if customer_id is not None:
            query = query.filter(Payment.customer_id == customer_id)
        if order_id is not None:
            query = query.filter(Payment.order_id == order_id)
        if invoice_id is not None:
            query = query.filter(Payment.invoice_id == invoice_id)

        total = query.count()
        items = (
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return {
            "items": items,
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        }

    def get_checkout_session(self, session_id: str):
        """
        Processor view of a checkout session plus the local payment keyed by it.

        Returns:
            (session_details, payment or None)
        """
        session_id = (session_id or "").strip()
        if not session_id:
            raise ValidationError("session_id is required")
        details = self.gateway.retrieve_checkout_session(session_id)
        payment = self.session.query(Payment).filter_by(stripe_session_id=session_id).first()
        return details, payment

    # =========================================================================
    # INITIATION
    # =========================================================================

    def _stripe_customer_id(self, customer) -> str | None:
        if customer.stripe_customer_id:
            return customer.stripe_customer_id
        if not customer.email:
            return None
        customer.stripe_customer_id = self.gateway.ensure_customer(
            email=customer.email, name=customer.full_name, customer_id=customer.id
        )
        return customer.stripe_customer_id

    def create_checkout_session(self, order_id: int) -> tuple[Payment, str, str | None]:
        """
        Start hosted checkout for an order.

        Charges the order total, or the open balance when the order has an
        invoice. Only one open session per order.

        Returns:
            (payment, session_id, session_url)

        Raises:
            NotFoundError, AlreadySettledError (order or invoice paid),
            InvalidTransitionError (order cancelled),
            ConflictError (a session is still open), ProcessorError
        """
        def _op():
            order = self.orders.get_order(order_id, for_update=True)
            if order.status == ORDER_CANCELLED:
                raise InvalidTransitionError("Cannot pay for a cancelled order", {"order_id": order_id})
            if order.payment_status == PAYMENT_PAID:
                raise AlreadySettledError("Order is already paid", {"order_id": order_id})

            invoice = order.invoice
            if invoice is not None and invoice.status == INVOICE_PAID:
                raise AlreadySettledError("Order invoice is already paid", {"order_id": order_id, "invoice_id": invoice.id})
            if invoice is not None and invoice.status == INVOICE_CANCELLED:
                invoice = None

            open_payment = (
                self.session.query(Payment)
                .filter(
                    Payment.order_id == order.id,
                    Payment.stripe_session_id.isnot(None),
                    Payment.status.in_((PAY_PENDING, PAY_PROCESSING)),
                )
                .first()
            )
            if open_payment is not None:
                raise ConflictError(
                    "A checkout session is already open for this order",
                    {
                        "order_id": order_id,
                        "payment_id": open_payment.id,
                        "session_id": open_payment.stripe_session_id,
                    },
                )

            amount = invoice.balance_cents if invoice is not None else order.total_cents
            customer = order.customer
            stripe_customer_id = self._stripe_customer_id(customer)

            payment = Payment(
                amount_cents=amount,
                currency=order.currency,
                status=PAY_PENDING,
                order_id=order.id,
                invoice_id=invoice.id if invoice is not None else None,
                customer_id=customer.id,
                stripe_customer_id=stripe_customer_id,
                description=f"Order {order.order_number}",
                receipt_email=customer.email,
            )
            self.session.add(payment)
            self.session.flush()

            result = self.gateway.create_checkout_session(
                payment_id=payment.id,
                order=order,
                stripe_customer_id=stripe_customer_id,
                customer_email=customer.email,
                invoice=invoice,
            )
            payment.stripe_session_id = result.id
            if result.payment_intent_id:
                payment.stripe_payment_intent_id = result.payment_intent_id
            order.payment_status = PAYMENT_PENDING
            self.session.commit()
            logger.info("Checkout session %s created for order %s", result.id, order.order_number)
            return payment, result.id, result.url

        return run_with_retry(self.session, _op)

    def create_payment_intent(self, invoice_id: int, amount_cents: int | None = None) -> tuple[Payment, str | None]:
        """
        Start an embedded card payment against an invoice.

        amount_cents defaults to the invoice balance.

        Returns:
            (payment, client_secret)
        """
        def _op():
            invoice = self.invoices.get_invoice(invoice_id, for_update=True)
            if invoice.status == INVOICE_CANCELLED:
                raise InvalidTransitionError("Cannot pay a cancelled invoice", {"invoice_id": invoice_id})
            if invoice.status == INVOICE_PAID or invoice.balance_cents <= 0:
                raise AlreadySettledError("Invoice is already paid", {"invoice_id": invoice_id})

            amount = invoice.balance_cents if amount_cents is None else amount_cents
            if amount <= 0:
                raise ValidationError("amount_cents must be positive")
            if amount > invoice.balance_cents:
                raise AlreadySettledError(
                    f"Payment of {amount} exceeds balance of {invoice.balance_cents}",
                    {"invoice_id": invoice_id, "balance_cents": invoice.balance_cents},
                )

            customer = invoice.customer
            stripe_customer_id = self._stripe_customer_id(customer)
            payment = Payment(
                amount_cents=amount,
                currency=invoice.currency,
                status=PAY_PENDING,
                order_id=invoice.order_id,
                invoice_id=invoice.id,
                customer_id=customer.id,
                stripe_customer_id=stripe_customer_id,
                description=f"Invoice {invoice.invoice_number}",
                receipt_email=customer.email,
            )
            self.session.add(payment)
            self.session.flush()

            result = self.gateway.create_payment_intent(
                payment_id=payment.id,
                amount_cents=amount,
                currency=invoice.currency,
                stripe_customer_id=stripe_customer_id,
                description=payment.description,
                metadata={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
            )
            payment.stripe_payment_intent_id = result.id
            self.session.commit()
            logger.info("Payment intent %s created for invoice %s", result.id, invoice.invoice_number)
            return payment, result.client_secret

        return run_with_retry(self.session, _op)

    # =========================================================================
    # REFUNDS
    # =========================================================================

    def refund(self, payment_id: int, amount_cents: int | None = None, reason: str | None = None):
        """
        Refund all or part of a captured payment.

        Returns:
            (refund_result, payment)

        Raises:
            InvalidTransitionError: payment not captured
            AlreadySettledError: nothing left to refund, or amount too large
            ProcessorError / ProcessorUnavailableError: nothing changes locally
        """
        def _op():
            payment = self.get_payment(payment_id, for_update=True)
            if payment.status not in PAY_REFUNDABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Payment is not refundable (status {payment.status})",
                    {"payment_id": payment_id, "status": payment.status},
                )
            remaining = payment.refundable_cents
            if remaining <= 0:
                raise AlreadySettledError("Payment is already fully refunded", {"payment_id": payment_id})

            amount = remaining if amount_cents is None else amount_cents
            if amount <= 0:
                raise ValidationError("amount_cents must be positive")
            if amount > remaining:
                raise AlreadySettledError(
                    f"Refund of {amount} exceeds refundable amount of {remaining}",
                    {"payment_id": payment_id, "refundable_cents": remaining},
                )

            result = self.gateway.create_refund(
                payment_intent_id=payment.stripe_payment_intent_id,
                charge_id=payment.stripe_charge_id,
                amount_cents=amount,
                reason=_refund_reason_for_processor(reason),
                idempotency_key=f"csms-refund-{payment.id}-{payment.refund_amount_cents + amount}",
            )

            self._apply_refund(payment, payment.refund_amount_cents + amount, reason=reason)
            self.session.commit()
            logger.info("Refunded %d of payment %s (refund %s)", amount, payment.id, result.id)
            return result, payment

        return run_with_retry(self.session, _op)

    def _apply_refund(self, payment: Payment, cumulative_cents: int, *, reason: str | None = None) -> int:
        """
        Record a new cumulative refunded amount and propagate the delta.

        Returns the delta applied (0 when already recorded).
        """
        if cumulative_cents > payment.amount_cents:
            logger.warning(
                "Payment %s reports %d refunded on a %d payment; capping",
                payment.id, cumulative_cents, payment.amount_cents,
            )
            cumulative_cents = payment.amount_cents
        delta = cumulative_cents - payment.refund_amount_cents
        if delta <= 0:
            return 0

        payment.refund_amount_cents = cumulative_cents
        payment.status = PAY_REFUNDED if cumulative_cents >= payment.amount_cents else PAY_PARTIALLY_REFUNDED
        payment.refunded_at = utcnow()
        if reason:
            payment.refund_reason = reason

        # Money that was never applied to the order or invoice comes back without touching them
        if payment.error_code in UNAPPLIED_ERROR_CODES:
            return delta

        if payment.order is not None:
            payment.order.payment_status = PAYMENT_REFUNDED

        invoice = payment.invoice
        if invoice is not None:
            # Only money that actually reached the invoice can come back off it
            reversible = min(delta, invoice.amount_paid_cents)
            if reversible > 0:
                self.invoices.reverse_payment_locked(
                    invoice, reversible, note=f"Refund on payment {payment.id}"
                )
        return delta

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def handle_webhook(self, payload: bytes | str, signature: str | None) -> dict:
        """
        Verify, de-duplicate and apply one processor event.

        Returns:
            {"received": True, "event_id", "type", "duplicate", "handled"}

        Raises:
            InvalidSignatureError: 400, processor retries
            NotFoundError: payment not visible yet, processor retries
        """
        event = self.gateway.construct_event(payload, signature)
        event_id = event["id"]
        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        ack = {"received": True, "event_id": event_id, "type": event_type, "duplicate": False, "handled": False}

        def _op():
            if self._event_seen(event_id):
                logger.info("Skipping duplicate webhook event %s (%s)", event_id, event_type)
                return {**ack, "duplicate": True}

            payment = None
            handled = event_type in HANDLED_EVENT_TYPES
            if handled:
                payment = self._find_payment(event_type, obj)
                self._dispatch(event_type, obj, payment)
            else:
                logger.info("Ignoring unhandled webhook event type %s (%s)", event_type, event_id)

            self.session.add(
                PaymentWebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    payment_id=payment.id if payment is not None else None,
                    payload=event,
                )
            )
            self.session.commit()
            return {**ack, "handled": handled}

        try:
            return run_with_retry(self.session, _op)
        except IntegrityError:
            # Concurrent delivery of the same event committed first
            if self._event_seen(event_id):
                logger.info("Webhook event %s was processed concurrently", event_id)
                return {**ack, "duplicate": True}
            raise

    def _event_seen(self, event_id: str) -> bool:
        return (
            self.session.query(PaymentWebhookEvent.id).filter_by(event_id=event_id).first()
            is not None
        )

    def _find_payment(self, event_type: str, obj: dict) -> Payment:
        query = self.session.query(Payment)
        payment = None
        object_id = obj.get("id")

        if event_type in (EVENT_CHECKOUT_COMPLETED, EVENT_CHECKOUT_EXPIRED) and object_id:
            payment = lock_for_update(query.filter(Payment.stripe_session_id == object_id)).first()
        elif event_type in (EVENT_INTENT_SUCCEEDED, EVENT_INTENT_FAILED) and object_id:
            payment = lock_for_update(query.filter(Payment.stripe_payment_intent_id == object_id)).first()
        elif event_type == EVENT_CHARGE_REFUNDED:
            if object_id:
                payment = lock_for_update(query.filter(Payment.stripe_charge_id == object_id)).first()
            intent_id = obj.get("payment_intent")
            if payment is None and intent_id:
                payment = lock_for_update(query.filter(Payment.stripe_payment_intent_id == intent_id)).first()

        if payment is None:
            payment_id = _metadata_payment_id(obj)
            if payment_id is not None:
                payment = lock_for_update(query.filter(Payment.id == payment_id)).first()

        if payment is None:
            logger.warning("No payment found for %s object %s", event_type, object_id)
            raise NotFoundError(
                "Payment not found for event", {"event_type": event_type, "object_id": object_id}
            )
        return payment

    def _dispatch(self, event_type: str, obj: dict, payment: Payment) -> None:
        if event_type == EVENT_CHECKOUT_COMPLETED:
            self._on_checkout_completed(payment, obj)
        elif event_type == EVENT_CHECKOUT_EXPIRED:
            self._on_checkout_expired(payment, obj)
        elif event_type == EVENT_INTENT_SUCCEEDED:
            self._on_intent_succeeded(payment, obj)
        elif event_type == EVENT_INTENT_FAILED:
            self._on_intent_failed(payment, obj)
        elif event_type == EVENT_CHARGE_REFUNDED:
            self._on_charge_refunded(payment, obj)

    def _on_checkout_completed(self, payment: Payment, session_obj: dict) -> None:
        intent_id = session_obj.get("payment_intent")
        if intent_id and not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = intent_id
        if session_obj.get("customer") and not payment.stripe_customer_id:
            payment.stripe_customer_id = session_obj["customer"]
        email = (session_obj.get("customer_details") or {}).get("email")
        if email and not payment.receipt_email:
            payment.receipt_email = email

        # Delayed payment methods complete the session before money moves
        if session_obj.get("payment_status") not in (None, "paid", "no_payment_required"):
            if payment.status == PAY_PENDING:
                payment.status = PAY_PROCESSING
            return
        self._mark_succeeded(payment, amount_cents=session_obj.get("amount_total"))

    def _on_checkout_expired(self, payment: Payment, session_obj: dict) -> None:
        if payment.status not in (PAY_PENDING, PAY_PROCESSING):
            return
        payment.status = PAY_CANCELLED
        payment.cancelled_at = utcnow()
        order = payment.order
        if order is not None and order.payment_status == PAYMENT_PENDING:
            order.payment_status = PAYMENT_UNPAID

    def _on_intent_succeeded(self, payment: Payment, intent: dict) -> None:
        if not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = intent.get("id")
        charge_id = intent.get("latest_charge")
        if isinstance(charge_id, dict):
            self._capture_charge_details(payment, charge_id)
        elif charge_id and not payment.stripe_charge_id:
            payment.stripe_charge_id = charge_id
        method_types = intent.get("payment_method_types") or []
        if method_types and not payment.payment_method_type:
            payment.payment_method_type = method_types[0]
        self._mark_succeeded(payment, amount_cents=intent.get("amount_received"))

    def _on_intent_failed(self, payment: Payment, intent: dict) -> None:
        if payment.status in (PAY_SUCCEEDED, PAY_PARTIALLY_REFUNDED, PAY_REFUNDED):
            logger.warning(
                "Ignoring payment_failed for payment %s already %s", payment.id, payment.status
            )
            return
        error = intent.get("last_payment_error") or {}
        payment.status = PAY_FAILED
        payment.failed_at = utcnow()
        payment.error_code = error.get("decline_code") or error.get("code")
        payment.error_message = error.get("message")

        # A failed payment never cancels the order
        order = payment.order
        if order is not None and order.payment_status != PAYMENT_PAID:
            order.payment_status = PAYMENT_FAILED

    def _on_charge_refunded(self, payment: Payment, charge: dict) -> None:
        self._capture_charge_details(payment, charge)
        self._apply_refund(payment, int(charge.get("amount_refunded") or 0))

    def _capture_charge_details(self, payment: Payment, charge: dict) -> None:
        if charge.get("id") and not payment.stripe_charge_id:
            payment.stripe_charge_id = charge["id"]
        if charge.get("receipt_url"):
            payment.receipt_url = charge["receipt_url"]
        details = charge.get("payment_method_details") or {}
        if details.get("type"):
            payment.payment_method_type = details["type"]
        card = details.get("card") or {}
        if card.get("brand"):
            payment.card_brand = card["brand"]
        if card.get("last4"):
            payment.card_last4 = card["last4"]

    def _mark_succeeded(self, payment: Payment, *, amount_cents: int | None) -> None:
        """
        Move a payment into succeeded and propagate to order and invoice.

        A second success signal for the same payment is a no-op. A payment
        that previously failed may still succeed (the customer retried on
        the same intent).
        """
        if payment.status in (PAY_SUCCEEDED, PAY_REFUNDED, PAY_PARTIALLY_REFUNDED):
            return
        if amount_cents is not None and int(amount_cents) != payment.amount_cents:
            logger.warning(
                "Payment %s succeeded for %s but %d was requested",
                payment.id, amount_cents, payment.amount_cents,
            )

        payment.status = PAY_SUCCEEDED
        payment.succeeded_at = utcnow()
        payment.error_code = None
        payment.error_message = None

        order = payment.order
        invoice = payment.invoice
        if invoice is None and order is not None and order.payment_status == PAYMENT_PAID:
            # Another payment already settled this order; keep the money refundable
            logger.error(
                "Payment %s succeeded on already paid order %s", payment.id, order.order_number
            )
            payment.error_code = ERROR_DUPLICATE_PAYMENT
            payment.error_message = f"Order {order.order_number} was already paid"
            return

        if invoice is not None:
            try:
                self.invoices.apply_payment_locked(
                    invoice,
                    payment.amount_cents,
                    payment=payment,
                    note=f"Card payment {payment.id} received",
                )
            except AlreadySettledError as exc:
                logger.error(
                    "Payment %s could not be applied to invoice %s: %s",
                    payment.id, invoice.invoice_number, exc.message,
                )
                payment.error_code = ERROR_INVOICE_OVERPAYMENT
                payment.error_message = exc.message
            except InvalidTransitionError as exc:
                logger.error(
                    "Payment %s received for non-payable invoice %s: %s",
                    payment.id, invoice.invoice_number, exc.message,
                )
                payment.error_code = ERROR_INVOICE_NOT_PAYABLE
                payment.error_message = exc.message

        if order is None or payment.error_code is not None:
            return
        # With an invoice the order is paid only once the invoice is
        if invoice is None or invoice.status == INVOICE_PAID:
            order.payment_status = PAYMENT_PAID
            if order.status == ORDER_PENDING:
                self.orders.advance_status(order, ORDER_CONFIRMED, "Payment received")


__all__ = ["PaymentService", "HANDLED_EVENT_TYPES"]
