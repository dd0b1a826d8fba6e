# Overview: Service-layer operations for orders; placement, status machine and cancellation.

"""
Order Engine

PLACEMENT is one database transaction:
1. allocate the order number
2. for every line, atomically reserve stock and log an OUTBOUND transaction
3. compute totals from the line snapshots
4. insert the order (Pending, unpaid) with its first timeline entry
Any failure rolls the whole unit back, so no stock is ever deducted for an
order that does not exist. Lock contention and sequence races retry the
whole unit.

STATE MACHINE:
Pending -> Confirmed -> Out for Delivery -> Delivered
Pending / Confirmed / Out for Delivery -> Cancelled
Delivered and Cancelled are terminal.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from ..models import Order, OrderLine, OrderTimelineEntry
from ..models.inventory import TX_INBOUND, TX_OUTBOUND
from ..models.invoices import INVOICE_CANCELLED, INVOICE_PAID
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_PAYMENT_STATUSES,
    ORDER_PENDING,
    ORDER_STATUSES,
)
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .customer_service import CustomerService
from .document_service import DOC_ORDER, DocumentNumberService
from .inventory_service import InventoryLogService
from .pricing import compute_totals, line_total
from .product_service import ProductService

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    ORDER_PENDING: frozenset({ORDER_CONFIRMED, ORDER_CANCELLED}),
    ORDER_CONFIRMED: frozenset({ORDER_OUT_FOR_DELIVERY, ORDER_CANCELLED}),
    ORDER_OUT_FOR_DELIVERY: frozenset({ORDER_DELIVERED, ORDER_CANCELLED}),
    ORDER_DELIVERED: frozenset(),
    ORDER_CANCELLED: frozenset(),
}

CANCELLATION_RESTOCK_REASON = "Order cancelled"


def can_transition(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, frozenset())


class OrderService:
    def __init__(
        self,
        session,
        *,
        products: ProductService,
        inventory_log: InventoryLogService,
        customers: CustomerService,
        documents: DocumentNumberService,
        currency: str = "SAR",
    ):
        self.session = session
        self.products = products
        self.inventory_log = inventory_log
        self.customers = customers
        self.documents = documents
        self.currency = currency
        # Set by build_services; invoices and orders reference each other
        self.invoices = None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_order(self, order_id: int, *, for_update: bool = False) -> Order:
        query = self.session.query(Order).filter(Order.id == order_id)
        if for_update:
            query = lock_for_update(query)
        order = query.first()
        if not order:
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    def get_by_number(self, order_number: str) -> Order:
        order = self.session.query(Order).filter_by(order_number=order_number).first()
        if not order:
            raise NotFoundError("Order not found", {"order_number": order_number})
        return order

    def list_orders(
        self,
        *,
        customer_id: int | None = None,
        status: str | None = None,
        payment_status: str | None = None,
    ) -> list[Order]:
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {status}")
        if payment_status is not None and payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {payment_status}")

        query = self.session.query(Order)
        if customer_id is not None:
            query = query.filter(Order.customer_id == customer_id)
        if status is not None:
            query = query.filter(Order.status == status)
        if payment_status is not None:
            query = query.filter(Order.payment_status == payment_status)
        return query.order_by(Order.created_at.desc(), Order.id.desc()).all()

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    def place_order(
        self,
        *,
        items: list,
        customer_ref: str | None = None,
        customer_email: str | None = None,
        customer_name: str | None = None,
        delivery_address: dict | None = None,
        delivery_eta: datetime | None = None,
        tax_override_cents: int | None = None,
        extension_data: dict | None = None,
    ) -> Order:
        """
        Validate stock, deduct inventory and persist a Pending order atomically.

        Args:
            items: objects with product_id and quantity (see schemas.OrderLineRequest)

        Raises:
            ValidationError: no lines, bad quantity, missing customer
            ProductNotFoundError / ProductInactiveError / OutOfStockError /
            InsufficientStockError: first line that cannot be served
        """
        if not items:
            raise ValidationError("Order must contain at least one item")
        for item in items:
            if item.quantity <= 0:
                raise ValidationError("quantity must be positive", {"product_id": item.product_id})

        def _op() -> Order:
            customer = self.customers.resolve(
                external_ref=customer_ref, email=customer_email, full_name=customer_name
            )
            order_number = self.documents.next_number(DOC_ORDER)

            lines: list[OrderLine] = []
            for line_number, item in enumerate(items, start=1):
                before, after = self.products.reserve_stock(item.product_id, item.quantity)
                product = self.products.get(item.product_id)
                self.inventory_log.record(
                    product_id=product.id,
                    tx_type=TX_OUTBOUND,
                    quantity=-item.quantity,
                    before_quantity=before,
                    after_quantity=after,
                    reason="Order placed",
                    reference=order_number,
                )
                lines.append(
                    OrderLine(
                        product_id=product.id,
                        line_number=line_number,
                        sku=product.sku,
                        name=product.name,
                        unit=product.unit,
                        quantity=item.quantity,
                        unit_price_cents=product.unit_price_cents,
                        tax_rate_bps=product.tax_rate_bps,
                        line_total_cents=line_total(item.quantity, product.unit_price_cents),
                    )
                )

            totals = compute_totals(lines, tax_override_cents)
            order = Order(
                order_number=order_number,
                customer_id=customer.id,
                status=ORDER_PENDING,
                subtotal_cents=totals.subtotal_cents,
                tax_cents=totals.tax_cents,
                total_cents=totals.total_cents,
                tax_overridden=totals.tax_overridden,
                currency=self.currency,
                delivery_address=delivery_address,
                delivery_eta=delivery_eta,
                extension_data=extension_data or None,
                lines=lines,
            )
            order.timeline.append(OrderTimelineEntry(status=ORDER_PENDING, note="Order created"))
            self.session.add(order)
            self.session.commit()
            logger.info(
                "Placed order %s for customer %s: %d line(s), total %d",
                order.order_number, customer.id, len(lines), order.total_cents,
            )
            return order

        return run_with_retry(self.session, _op, retry_on=(IntegrityError,))

    # =========================================================================
    # STATUS MACHINE
    # =========================================================================

    def _apply_status(self, order: Order, new_status: str, note: str | None) -> None:
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {new_status}")
        if not can_transition(order.status, new_status):
            raise InvalidTransitionError(
                f"Cannot change order status from {order.status} to {new_status}",
                {"from": order.status, "to": new_status},
            )
        now = utcnow()
        order.status = new_status
        if new_status == ORDER_DELIVERED:
            order.delivered_at = now
        order.timeline.append(
            OrderTimelineEntry(
                status=new_status,
                note=note or f"Order status changed to {new_status}",
                occurred_at=now,
            )
        )

    def advance_status(self, order: Order, new_status: str, note: str | None = None) -> None:
        """
        Move a loaded order along the state machine without committing.

        Used by payment reconciliation inside its own unit of work.
        Cancellation must go through cancel_order so stock is restored.
        """
        if new_status == ORDER_CANCELLED:
            raise ValidationError("Use cancel_order to cancel an order")
        self._apply_status(order, new_status, note)

    def update_status(self, order_id: int, new_status: str, note: str | None = None) -> Order:
        if new_status == ORDER_CANCELLED:
            return self.cancel_order(order_id, reason=note)

        def _op():
            order = self.get_order(order_id, for_update=True)
            self._apply_status(order, new_status, note)
            self.session.commit()
            return order

        return run_with_retry(self.session, _op)

    def update_order(
        self,
        order_id: int,
        *,
        status: str | None = None,
        payment_status: str | None = None,
        delivery_eta: datetime | None = None,
        cancellation_reason: str | None = None,
        note: str | None = None,
    ) -> Order:
        """Administrative PATCH: status (via the state machine), payment status, ETA."""
        if status == ORDER_CANCELLED:
            order = self.cancel_order(order_id, reason=cancellation_reason or note)
            if payment_status is None and delivery_eta is None:
                return order
            status = None
        if payment_status is not None and payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {payment_status}")

        def _op():
            order = self.get_order(order_id, for_update=True)
            if status is not None:
                self._apply_status(order, status, note)
            if payment_status is not None:
                order.payment_status = payment_status
            if delivery_eta is not None:
                order.delivery_eta = delivery_eta
            self.session.commit()
            return order

        return run_with_retry(self.session, _op)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel_order(self, order_id: int, reason: str | None = None) -> Order:
        """
        Cancel an order and put its stock back.

        Each line is released with an INBOUND "Order cancelled" transaction
        referencing the order number. A linked invoice with nothing paid is
        cancelled too; one that has received money is left for a refund.

        Raises:
            InvalidTransitionError: order already Delivered or Cancelled
        """
        def _op():
            order = self.get_order(order_id, for_update=True)
            if order.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot cancel an order that is {order.status}",
                    {"from": order.status, "to": ORDER_CANCELLED},
                )

            for line in order.lines:
                before, after = self.products.release_stock(line.product_id, line.quantity)
                self.inventory_log.record(
                    product_id=line.product_id,
                    tx_type=TX_INBOUND,
                    quantity=line.quantity,
                    before_quantity=before,
                    after_quantity=after,
                    reason=CANCELLATION_RESTOCK_REASON,
                    reference=order.order_number,
                )

            self._apply_status(order, ORDER_CANCELLED, reason or "Order cancelled")
            order.cancelled_at = utcnow()
            order.cancellation_reason = reason

            invoice = order.invoice
            if (
                invoice is not None
                and invoice.status not in (INVOICE_PAID, INVOICE_CANCELLED)
                and invoice.amount_paid_cents == 0
                and self.invoices is not None
            ):
                self.invoices.cancel_locked(invoice, f"Order {order.order_number} cancelled")

            self.session.commit()
            logger.info("Cancelled order %s (%s)", order.order_number, reason or "no reason")
            return order

        return run_with_retry(self.session, _op)
