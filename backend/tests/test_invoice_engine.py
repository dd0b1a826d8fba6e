"""
Invoice engine tests: issue from order, money application, overdue handling.
"""

import re
from datetime import timedelta

import pytest

from csms.errors import (
    AlreadySettledError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from csms.models import InvoiceTimelineEntry
from csms.models.invoices import (
    INVOICE_CANCELLED,
    INVOICE_DRAFT,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PARTIALLY_PAID,
    INVOICE_SENT,
)
from csms.time_utils import utcnow


@pytest.fixture
def order(make_product, place_order):
    cement = make_product(unit_price_cents=2550, stock_quantity=500)
    sand = make_product(unit_price_cents=3500, category="sand", unit="tons", stock_quantity=100)
    return place_order([(cement, 100), (sand, 2)])


def test_issue_copies_order(services, order):
    invoice = services.invoices.issue_from_order(order.id, notes="Net 30")

    assert re.match(r"^INV-\d{8}-\d{5}$", invoice.invoice_number)
    assert invoice.status == INVOICE_DRAFT
    assert invoice.order_id == order.id
    assert invoice.customer_id == order.customer_id
    assert invoice.subtotal_cents == order.subtotal_cents == 262000
    assert invoice.tax_cents == order.tax_cents == 39300
    assert invoice.total_cents == order.total_cents == 301300
    assert invoice.amount_paid_cents == 0
    assert invoice.balance_cents == 301300
    assert [line.sku for line in invoice.lines] == [line.sku for line in order.lines]
    assert invoice.lines[0].order_line_id == order.lines[0].id
    assert invoice.notes == "Net 30"

    due_in = invoice.due_date - invoice.created_at
    assert timedelta(days=29, hours=23) < due_in <= timedelta(days=30, minutes=1)


def test_issue_carries_tax_override(services, make_product, place_order):
    order = place_order([(make_product(unit_price_cents=1000), 5)], tax_override_cents=123)

    invoice = services.invoices.issue_from_order(order.id)

    assert invoice.tax_cents == 123
    assert invoice.total_cents == 5123


def test_one_invoice_per_order(services, order):
    services.invoices.issue_from_order(order.id)

    with pytest.raises(ConflictError):
        services.invoices.issue_from_order(order.id)


def test_cannot_invoice_cancelled_order(services, order):
    services.orders.cancel_order(order.id)

    with pytest.raises(InvalidTransitionError):
        services.invoices.issue_from_order(order.id)


def test_issue_validates_input(services, order):
    with pytest.raises(NotFoundError):
        services.invoices.issue_from_order(9999)
    with pytest.raises(ValidationError):
        services.invoices.issue_from_order(order.id, due_in_days=-1)


def test_send_only_from_draft(services, order):
    invoice = services.invoices.issue_from_order(order.id)

    invoice = services.invoices.send_invoice(invoice.id)
    assert invoice.status == INVOICE_SENT
    assert invoice.sent_at is not None

    with pytest.raises(InvalidTransitionError):
        services.invoices.send_invoice(invoice.id)


def test_partial_then_full_payment(db_session, services, order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.send_invoice(invoice.id)

    invoice = services.invoices.apply_payment(invoice.id, 100000, note="Bank transfer 5512")
    assert invoice.status == INVOICE_PARTIALLY_PAID
    assert invoice.amount_paid_cents == 100000
    assert invoice.balance_cents == 201300
    assert invoice.paid_at is None

    invoice = services.invoices.apply_payment(invoice.id, 201300)
    assert invoice.status == INVOICE_PAID
    assert invoice.balance_cents == 0
    assert invoice.paid_at is not None

    amounts = [
        e.amount_cents
        for e in db_session.query(InvoiceTimelineEntry).filter_by(invoice_id=invoice.id).order_by(InvoiceTimelineEntry.id)
    ]
    assert amounts == [None, None, 100000, 201300]


def test_overpayment_is_rejected(services, order):
    invoice = services.invoices.issue_from_order(order.id)

    with pytest.raises(AlreadySettledError) as exc:
        services.invoices.apply_payment(invoice.id, invoice.total_cents + 1)
    assert exc.value.details["balance_cents"] == invoice.total_cents

    services.invoices.apply_payment(invoice.id, invoice.total_cents)
    with pytest.raises(AlreadySettledError):
        services.invoices.apply_payment(invoice.id, 1)


def test_payment_amount_must_be_positive(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    with pytest.raises(ValidationError):
        services.invoices.apply_payment(invoice.id, 0)


def test_cancel_rules(services, order, make_product, place_order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.apply_payment(invoice.id, 1000)

    with pytest.raises(InvalidTransitionError):
        services.invoices.cancel_invoice(invoice.id, "Customer dispute")

    other = services.invoices.issue_from_order(place_order([(make_product(), 1)]).id)
    other = services.invoices.cancel_invoice(other.id, "Issued by mistake")
    assert other.status == INVOICE_CANCELLED
    assert other.cancellation_reason == "Issued by mistake"

    with pytest.raises(InvalidTransitionError):
        services.invoices.apply_payment(other.id, 100)


def test_reverse_payment_reopens_invoice(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.send_invoice(invoice.id)
    services.invoices.apply_payment(invoice.id, invoice.total_cents)

    invoice = services.invoices.reverse_payment(invoice.id, 1300)
    assert invoice.status == INVOICE_PARTIALLY_PAID
    assert invoice.paid_at is None
    assert invoice.balance_cents == 1300

    invoice = services.invoices.reverse_payment(invoice.id, invoice.amount_paid_cents)
    assert invoice.status == INVOICE_SENT
    assert invoice.amount_paid_cents == 0

    with pytest.raises(AlreadySettledError):
        services.invoices.reverse_payment(invoice.id, 1)


def test_overdue_is_reported_before_the_sweep(services, order):
    invoice = services.invoices.issue_from_order(order.id, due_in_days=0)
    later = utcnow() + timedelta(days=1)

    assert invoice.status == INVOICE_DRAFT
    assert invoice.effective_status(later) == INVOICE_OVERDUE
    assert invoice.is_past_due(later)


def test_mark_overdue_sweep(services, order, make_product, place_order):
    overdue = services.invoices.issue_from_order(order.id, due_in_days=1)
    current = services.invoices.issue_from_order(place_order([(make_product(), 1)]).id, due_in_days=60)
    paid = services.invoices.issue_from_order(place_order([(make_product(), 1)]).id, due_in_days=1)
    services.invoices.apply_payment(paid.id, paid.total_cents)

    swept = services.invoices.mark_overdue(now=utcnow() + timedelta(days=2))

    assert [inv.id for inv in swept] == [overdue.id]
    assert services.invoices.get_invoice(overdue.id).status == INVOICE_OVERDUE
    assert services.invoices.get_invoice(current.id).status == INVOICE_DRAFT
    assert services.invoices.get_invoice(paid.id).status == INVOICE_PAID

    # An overdue invoice still accepts money
    invoice = services.invoices.apply_payment(overdue.id, overdue.total_cents)
    assert invoice.status == INVOICE_PAID


def test_list_invoices_by_effective_status(services, order, make_product, place_order):
    due_now = services.invoices.issue_from_order(order.id, due_in_days=0)
    open_invoice = services.invoices.issue_from_order(place_order([(make_product(), 1)]).id)

    overdue_ids = [inv.id for inv in services.invoices.list_invoices(overdue=True)]
    assert overdue_ids == [due_now.id]
    assert [inv.id for inv in services.invoices.list_invoices(status=INVOICE_DRAFT)] == [open_invoice.id]
    assert len(services.invoices.list_invoices(customer_id=order.customer_id)) == 2

    with pytest.raises(ValidationError):
        services.invoices.list_invoices(status="Void")
