# Overview: Service-layer operations for invoices; issue, payment application and overdue sweep.

"""
Invoice Engine

An invoice is a frozen copy of one order's lines and totals. Money applied
to it moves it Draft/Sent -> Partially Paid -> Paid; refunds move it back.
balance = total - amount_paid is computed on the model, never stored.

Overdue is derived on read (Invoice.effective_status) and persisted by
mark_overdue(), which the CLI runs on a schedule.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadySettledError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models import Invoice, InvoiceLine, InvoiceTimelineEntry, Payment
from ..models.invoices import (
    INVOICE_CANCELLED,
    INVOICE_DRAFT,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PARTIALLY_PAID,
    INVOICE_PAYABLE_STATUSES,
    INVOICE_SENT,
    INVOICE_STATUSES,
)
from ..models.orders import ORDER_CANCELLED
from ..models.payments import PAY_PARTIALLY_REFUNDED, PAY_SUCCEEDED
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .document_service import DOC_INVOICE, DocumentNumberService
from .pricing import compute_totals

logger = logging.getLogger(__name__)


class InvoiceService:
    def __init__(
        self,
        session,
        *,
        orders,
        documents: DocumentNumberService,
        payment_term_days: int = 30,
    ):
        self.session = session
        self.orders = orders
        self.documents = documents
        self.payment_term_days = payment_term_days

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_invoice(self, invoice_id: int, *, for_update: bool = False) -> Invoice:
        query = self.session.query(Invoice).filter(Invoice.id == invoice_id)
        if for_update:
            query = lock_for_update(query)
        invoice = query.first()
        if not invoice:
            raise NotFoundError("Invoice not found", {"invoice_id": invoice_id})
        return invoice

    def list_invoices(
        self,
        *,
        status: str | None = None,
        customer_id: int | None = None,
        overdue: bool = False,
    ) -> list[Invoice]:
        """
        status filters on the effective status, so "Overdue" also returns
        invoices the sweep has not reached yet.
        """
        if status is not None and status not in INVOICE_STATUSES:
            raise ValidationError(f"Invalid invoice status: {status}")

        query = self.session.query(Invoice)
        if customer_id is not None:
            query = query.filter(Invoice.customer_id == customer_id)
        invoices = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()

        now = utcnow()
        if overdue:
            status = INVOICE_OVERDUE
        if status is not None:
            invoices = [inv for inv in invoices if inv.effective_status(now) == status]
        return invoices

    # =========================================================================
    # ISSUE / SEND / CANCEL
    # =========================================================================

    def issue_from_order(self, order_id: int, *, due_in_days: int | None = None, notes: str | None = None) -> Invoice:
        """
        Create the invoice for an order, copying its lines and totals.

        Raises:
            NotFoundError: order missing
            InvalidTransitionError: order cancelled
            ConflictError: order already invoiced
        """
        days = self.payment_term_days if due_in_days is None else due_in_days
        if days < 0:
            raise ValidationError("due_in_days must be >= 0")

        def _op() -> Invoice:
            order = self.orders.get_order(order_id, for_update=True)
            if order.status == ORDER_CANCELLED:
                raise InvalidTransitionError("Cannot invoice a cancelled order", {"order_id": order_id})
            if order.invoice is not None:
                raise ConflictError(
                    f"Order {order.order_number} already has invoice {order.invoice.invoice_number}",
                    {"order_id": order_id, "invoice_id": order.invoice.id},
                )

            lines = [
                InvoiceLine(
                    order_line_id=line.id,
                    line_number=line.line_number,
                    product_id=line.product_id,
                    sku=line.sku,
                    name=line.name,
                    unit=line.unit,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    tax_rate_bps=line.tax_rate_bps,
                    line_total_cents=line.line_total_cents,
                )
                for line in order.lines
            ]
            # Recomputed rather than copied blindly; an explicit tax override carries over.
            totals = compute_totals(lines, order.tax_cents if order.tax_overridden else None)

            now = utcnow()
            invoice = Invoice(
                invoice_number=self.documents.next_number(DOC_INVOICE),
                order=order,
                customer_id=order.customer_id,
                status=INVOICE_DRAFT,
                subtotal_cents=totals.subtotal_cents,
                tax_cents=totals.tax_cents,
                total_cents=totals.total_cents,
                amount_paid_cents=0,
                currency=order.currency,
                due_date=now + timedelta(days=days),
                notes=notes,
                lines=lines,
            )
            invoice.timeline.append(
                InvoiceTimelineEntry(
                    status=INVOICE_DRAFT,
                    note=f"Invoice issued for order {order.order_number}",
                    occurred_at=now,
                )
            )
            self.session.add(invoice)
            self._carry_order_payments(invoice, order)
            self.session.commit()
            logger.info("Issued invoice %s for order %s", invoice.invoice_number, order.order_number)
            return invoice

        return run_with_retry(self.session, _op, retry_on=(IntegrityError,))

    def _carry_order_payments(self, invoice: Invoice, order) -> None:
        """Apply money already captured on the order to its new invoice."""
        captured = (
            self.session.query(Payment)
            .filter(
                Payment.order_id == order.id,
                Payment.invoice_id.is_(None),
                Payment.error_code.is_(None),
                Payment.status.in_((PAY_SUCCEEDED, PAY_PARTIALLY_REFUNDED)),
            )
            .order_by(Payment.id.asc())
            .all()
        )
        for payment in captured:
            net = min(payment.amount_cents - payment.refund_amount_cents, invoice.balance_cents)
            if net <= 0:
                continue
            self.apply_payment_locked(
                invoice,
                net,
                payment=payment,
                note=f"Card payment {payment.id} received before invoicing",
            )

    def send_invoice(self, invoice_id: int) -> Invoice:
        def _op():
            invoice = self.get_invoice(invoice_id, for_update=True)
            if invoice.status != INVOICE_DRAFT:
                raise InvalidTransitionError(
                    f"Only Draft invoices can be sent (status is {invoice.status})",
                    {"from": invoice.status, "to": INVOICE_SENT},
                )
            now = utcnow()
            invoice.status = INVOICE_SENT
            invoice.sent_at = now
            self._timeline(invoice, INVOICE_SENT, "Invoice sent to customer", occurred_at=now)
            self.session.commit()
            return invoice

        return run_with_retry(self.session, _op)

    def cancel_locked(self, invoice: Invoice, reason: str | None) -> None:
        """Cancel an already-loaded invoice inside the caller's transaction."""
        if invoice.status in (INVOICE_PAID, INVOICE_CANCELLED):
            raise InvalidTransitionError(
                f"Cannot cancel an invoice that is {invoice.status}",
                {"from": invoice.status, "to": INVOICE_CANCELLED},
            )
        if invoice.amount_paid_cents > 0:
            raise InvalidTransitionError(
                "Cannot cancel an invoice with payments applied; refund first",
                {"amount_paid_cents": invoice.amount_paid_cents},
            )
        now = utcnow()
        invoice.status = INVOICE_CANCELLED
        invoice.cancelled_at = now
        invoice.cancellation_reason = reason
        self._timeline(invoice, INVOICE_CANCELLED, reason or "Invoice cancelled", occurred_at=now)

    def cancel_invoice(self, invoice_id: int, reason: str | None = None) -> Invoice:
        def _op():
            invoice = self.get_invoice(invoice_id, for_update=True)
            self.cancel_locked(invoice, reason)
            self.session.commit()
            return invoice

        return run_with_retry(self.session, _op)

    # =========================================================================
    # MONEY
    # =========================================================================

    def apply_payment_locked(
        self,
        invoice: Invoice,
        amount_cents: int,
        *,
        payment: Payment | None = None,
        note: str | None = None,
    ) -> Invoice:
        """
        Apply money to a loaded invoice without committing.

        Raises:
            ValidationError: amount <= 0
            InvalidTransitionError: invoice cancelled
            AlreadySettledError: invoice paid, or amount exceeds the balance
        """
        if amount_cents <= 0:
            raise ValidationError("Payment amount must be positive")
        if invoice.status == INVOICE_CANCELLED:
            raise InvalidTransitionError("Cannot apply payment to a cancelled invoice", {"invoice_id": invoice.id})
        if invoice.status == INVOICE_PAID or invoice.balance_cents <= 0:
            raise AlreadySettledError("Invoice is already paid", {"invoice_id": invoice.id})
        if invoice.status not in INVOICE_PAYABLE_STATUSES:
            raise InvalidTransitionError(f"Cannot apply payment to a {invoice.status} invoice")
        if amount_cents > invoice.balance_cents:
            raise AlreadySettledError(
                f"Payment of {amount_cents} exceeds balance of {invoice.balance_cents}",
                {"invoice_id": invoice.id, "balance_cents": invoice.balance_cents, "amount_cents": amount_cents},
            )

        now = utcnow()
        invoice.amount_paid_cents += amount_cents
        if invoice.balance_cents == 0:
            invoice.status = INVOICE_PAID
            invoice.paid_at = now
        else:
            invoice.status = INVOICE_PARTIALLY_PAID
        if payment is not None:
            payment.invoice = invoice

        self._timeline(
            invoice,
            invoice.status,
            note or f"Payment of {amount_cents} {invoice.currency} received",
            amount_cents=amount_cents,
            occurred_at=now,
        )
        return invoice

    def apply_payment(
        self,
        invoice_id: int,
        amount_cents: int,
        *,
        payment: Payment | None = None,
        note: str | None = None,
    ) -> Invoice:
        def _op():
            invoice = self.get_invoice(invoice_id, for_update=True)
            self.apply_payment_locked(invoice, amount_cents, payment=payment, note=note)
            self.session.commit()
            return invoice

        return run_with_retry(self.session, _op)

    def reverse_payment_locked(self, invoice: Invoice, amount_cents: int, *, note: str | None = None) -> Invoice:
        """Take refunded money back off a loaded invoice without committing."""
        if amount_cents <= 0:
            raise ValidationError("Refund amount must be positive")
        if amount_cents > invoice.amount_paid_cents:
            raise AlreadySettledError(
                f"Refund of {amount_cents} exceeds amount paid of {invoice.amount_paid_cents}",
                {"invoice_id": invoice.id, "amount_paid_cents": invoice.amount_paid_cents},
            )

        now = utcnow()
        invoice.amount_paid_cents -= amount_cents
        invoice.paid_at = None
        if invoice.status != INVOICE_CANCELLED:
            if invoice.amount_paid_cents > 0:
                invoice.status = INVOICE_PARTIALLY_PAID
            elif invoice.sent_at is not None:
                invoice.status = INVOICE_SENT
            else:
                invoice.status = INVOICE_DRAFT
            if invoice.is_past_due(now):
                invoice.status = INVOICE_OVERDUE

        self._timeline(
            invoice,
            invoice.status,
            note or f"Refund of {amount_cents} {invoice.currency}",
            amount_cents=-amount_cents,
            occurred_at=now,
        )
        return invoice

    def reverse_payment(self, invoice_id: int, amount_cents: int, *, note: str | None = None) -> Invoice:
        def _op():
            invoice = self.get_invoice(invoice_id, for_update=True)
            self.reverse_payment_locked(invoice, amount_cents, note=note)
            self.session.commit()
            return invoice

        return run_with_retry(self.session, _op)

    # =========================================================================
    # OVERDUE SWEEP
    # =========================================================================

    def mark_overdue(self, now: datetime | None = None) -> list[Invoice]:
        """Persist Overdue for every open invoice past its due date."""
        now = now or utcnow()

        def _op():
            candidates = lock_for_update(
                self.session.query(Invoice).filter(
                    Invoice.status.in_((INVOICE_DRAFT, INVOICE_SENT, INVOICE_PARTIALLY_PAID)),
                    Invoice.due_date < now,
                )
            ).all()
            for invoice in candidates:
                invoice.status = INVOICE_OVERDUE
                self._timeline(invoice, INVOICE_OVERDUE, "Payment due date passed", occurred_at=now)
            self.session.commit()
            if candidates:
                logger.info("Marked %d invoice(s) overdue", len(candidates))
            return candidates

        return run_with_retry(self.session, _op)

    def _timeline(
        self,
        invoice: Invoice,
        status: str,
        note: str,
        *,
        amount_cents: int | None = None,
        occurred_at: datetime | None = None,
    ) -> None:
        invoice.timeline.append(
            InvoiceTimelineEntry(
                status=status,
                note=note,
                amount_cents=amount_cents,
                occurred_at=occurred_at or utcnow(),
            )
        )
