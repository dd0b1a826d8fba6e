"""
Payment reconciliation tests: initiation, webhook idempotency, failures and refunds.

Webhook deliveries are signed with the test secret and verified by the real
Stripe signature check.
"""

import pytest
import stripe

from csms.errors import (
    AlreadySettledError,
    ConflictError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    ProcessorError,
    ProcessorUnavailableError,
)
from csms.models import Payment, PaymentWebhookEvent
from csms.models.invoices import INVOICE_PAID, INVOICE_PARTIALLY_PAID
from csms.models.orders import (
    ORDER_CONFIRMED,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_UNPAID,
)
from csms.models.payments import (
    PAY_CANCELLED,
    PAY_FAILED,
    PAY_PARTIALLY_REFUNDED,
    PAY_PENDING,
    PAY_PROCESSING,
    PAY_REFUNDED,
    PAY_SUCCEEDED,
)
from csms.services.payment_service import ERROR_DUPLICATE_PAYMENT, ERROR_INVOICE_OVERPAYMENT

from .conftest import WEBHOOK_SECRET, sign_payload, stripe_event


@pytest.fixture
def order(make_product, place_order):
    return place_order([(make_product(unit_price_cents=2550, stock_quantity=500), 100)])


def deliver(services, event, secret=WEBHOOK_SECRET):
    payload, signature = sign_payload(event, secret=secret)
    return services.payments.handle_webhook(payload.encode("utf-8"), signature)


def checkout_completed(payment, *, intent_id="pi_checkout_1", payment_status="paid", event_id=None):
    return stripe_event(
        "checkout.session.completed",
        {
            "id": payment.stripe_session_id,
            "object": "checkout.session",
            "payment_intent": intent_id,
            "payment_status": payment_status,
            "amount_total": payment.amount_cents,
            "customer_details": {"email": "buyer@example.com"},
            "metadata": {"payment_id": str(payment.id)},
        },
        event_id=event_id,
    )


def intent_event(event_type, intent_id, amount, *, error=None, event_id=None):
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
        "latest_charge": "ch_test_1",
        "payment_method_types": ["card"],
    }
    if error:
        obj["last_payment_error"] = error
    return stripe_event(event_type, obj, event_id=event_id)


def charge_refunded(intent_id, amount_refunded, *, event_id=None):
    return stripe_event(
        "charge.refunded",
        {
            "id": "ch_test_1",
            "object": "charge",
            "payment_intent": intent_id,
            "amount_refunded": amount_refunded,
            "receipt_url": "https://pay.stripe.test/receipts/ch_test_1",
            "payment_method_details": {"type": "card", "card": {"brand": "visa", "last4": "4242"}},
        },
        event_id=event_id,
    )


def paid_checkout(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)
    deliver(services, checkout_completed(payment))
    return services.payments.get_payment(payment.id)


# =============================================================================
# INITIATION
# =============================================================================

def test_checkout_session_creates_pending_payment(services, gateway, order):
    payment, session_id, url = services.payments.create_checkout_session(order.id)

    assert payment.status == PAY_PENDING
    assert payment.amount_cents == order.total_cents == 293250
    assert payment.stripe_session_id == session_id
    assert url.startswith("https://")
    assert payment.stripe_customer_id.startswith("cus_test_")
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PENDING

    (call,) = gateway.calls_for("checkout.session.create")
    assert call["payment_id"] == payment.id
    assert call["amount_cents"] == 293250


def test_processor_customer_is_created_once(services, gateway, order):
    first, _, _ = services.payments.create_checkout_session(order.id)
    deliver(services, stripe_event("checkout.session.expired", {"id": first.stripe_session_id, "object": "checkout.session"}))
    services.payments.create_checkout_session(order.id)

    assert len(gateway.calls_for("customer.create")) == 1


def test_second_checkout_while_one_is_open_is_rejected(db_session, services, gateway, order):
    first, session_id, _ = services.payments.create_checkout_session(order.id)

    with pytest.raises(ConflictError) as exc:
        services.payments.create_checkout_session(order.id)

    assert exc.value.status_code == 409
    assert exc.value.details["payment_id"] == first.id
    assert exc.value.details["session_id"] == session_id
    assert len(gateway.calls_for("checkout.session.create")) == 1
    assert db_session.query(Payment).count() == 1


def test_checkout_charges_only_the_invoice_balance(services, gateway, order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.apply_payment(invoice.id, 100000, note="Bank transfer")

    payment, _, _ = services.payments.create_checkout_session(order.id)

    assert payment.amount_cents == 193250
    assert payment.invoice_id == invoice.id
    (call,) = gateway.calls_for("checkout.session.create")
    assert call["amount_cents"] == 193250
    assert call["line_items"] == [f"Balance of {invoice.invoice_number}"]

    deliver(services, checkout_completed(payment))

    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.error_code is None
    invoice = services.invoices.get_invoice(invoice.id)
    assert invoice.status == INVOICE_PAID
    assert invoice.balance_cents == 0
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PAID


def test_checkout_rejected_when_invoice_already_paid(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.apply_payment(invoice.id, invoice.total_cents)

    with pytest.raises(AlreadySettledError):
        services.payments.create_checkout_session(order.id)


def test_invoice_issued_after_checkout_carries_the_payment(services, gateway, order):
    payment = paid_checkout(services, order)

    invoice = services.invoices.issue_from_order(order.id)

    assert invoice.status == INVOICE_PAID
    assert invoice.amount_paid_cents == invoice.total_cents == payment.amount_cents
    assert services.payments.get_payment(payment.id).invoice_id == invoice.id
    with pytest.raises(AlreadySettledError):
        services.payments.create_payment_intent(invoice.id)
    assert gateway.calls_for("payment_intent.create") == []


def test_invoice_issued_after_partial_refund_carries_the_net_amount(services, order):
    payment = paid_checkout(services, order)
    services.payments.refund(payment.id, 93250)

    invoice = services.invoices.issue_from_order(order.id)

    assert invoice.status == INVOICE_PARTIALLY_PAID
    assert invoice.amount_paid_cents == 200000
    assert invoice.balance_cents == 93250


def test_processor_outage_rolls_back(db_session, services, gateway, order):
    gateway.fail("checkout.session.create", stripe.APIConnectionError("Network is unreachable"))

    with pytest.raises(ProcessorUnavailableError) as exc:
        services.payments.create_checkout_session(order.id)

    assert exc.value.status_code == 503
    assert db_session.query(Payment).count() == 0
    assert services.orders.get_order(order.id).payment_status == PAYMENT_UNPAID


def test_processor_rejection_maps_to_502(services, gateway, order):
    gateway.fail(
        "customer.create",
        stripe.InvalidRequestError("Invalid email address", param="email", code="email_invalid"),
    )

    with pytest.raises(ProcessorError) as exc:
        services.payments.create_checkout_session(order.id)

    assert exc.value.status_code == 502
    assert exc.value.details["code"] == "email_invalid"


def test_cannot_pay_cancelled_or_paid_order(services, order, make_product, place_order):
    paid_checkout(services, order)
    with pytest.raises(AlreadySettledError):
        services.payments.create_checkout_session(order.id)

    cancelled = place_order([(make_product(), 1)])
    services.orders.cancel_order(cancelled.id)
    with pytest.raises(InvalidTransitionError):
        services.payments.create_checkout_session(cancelled.id)


def test_payment_intent_for_invoice_balance(services, gateway, order):
    invoice = services.invoices.issue_from_order(order.id)
    services.invoices.apply_payment(invoice.id, 93250)

    payment, client_secret = services.payments.create_payment_intent(invoice.id)

    assert client_secret.startswith("pi_test_")
    assert payment.amount_cents == 200000
    assert payment.invoice_id == invoice.id
    assert gateway.calls_for("payment_intent.create")[0]["amount_cents"] == 200000

    with pytest.raises(AlreadySettledError):
        services.payments.create_payment_intent(invoice.id, 200001)


# =============================================================================
# WEBHOOKS
# =============================================================================

def test_checkout_completed_marks_everything_paid(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)

    ack = deliver(services, checkout_completed(payment))

    assert ack["received"] is True
    assert ack["handled"] is True
    assert ack["duplicate"] is False
    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.stripe_payment_intent_id == "pi_checkout_1"
    assert payment.succeeded_at is not None
    order = services.orders.get_order(order.id)
    assert order.payment_status == PAYMENT_PAID
    assert order.status == ORDER_CONFIRMED
    assert order.timeline[-1].note == "Payment received"


def test_replayed_event_has_no_effect(db_session, services, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment, _, _ = services.payments.create_checkout_session(order.id)
    event = checkout_completed(payment, event_id="evt_replay_1")

    first = deliver(services, event)
    second = deliver(services, event)

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert db_session.query(PaymentWebhookEvent).filter_by(event_id="evt_replay_1").count() == 1
    invoice = services.invoices.get_invoice(invoice.id)
    assert invoice.status == INVOICE_PAID
    assert invoice.amount_paid_cents == invoice.total_cents


def test_replayed_intent_success_applies_money_once(db_session, services, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment, _ = services.payments.create_payment_intent(invoice.id, 100000)
    event = intent_event(
        "payment_intent.succeeded", payment.stripe_payment_intent_id, 100000, event_id="evt_partial_1"
    )

    first = deliver(services, event)
    second = deliver(services, event)

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    invoice = services.invoices.get_invoice(invoice.id)
    assert invoice.amount_paid_cents == 100000
    assert invoice.status == INVOICE_PARTIALLY_PAID
    assert invoice.balance_cents == 193250
    # A partly paid invoice does not settle the order
    order = services.orders.get_order(order.id)
    assert order.payment_status == PAYMENT_UNPAID
    assert order.status == ORDER_PENDING


def test_success_on_already_paid_order_is_flagged(services, order):
    stale, _, _ = services.payments.create_checkout_session(order.id)
    deliver(services, stripe_event("checkout.session.expired", {"id": stale.stripe_session_id, "object": "checkout.session"}))
    paid_checkout(services, order)

    # The customer still completed the abandoned session's payment
    deliver(
        services,
        stripe_event(
            "payment_intent.succeeded",
            {"id": "pi_stale", "amount_received": stale.amount_cents, "metadata": {"payment_id": str(stale.id)}},
        ),
    )

    stale = services.payments.get_payment(stale.id)
    assert stale.status == PAY_SUCCEEDED
    assert stale.error_code == ERROR_DUPLICATE_PAYMENT

    _, stale = services.payments.refund(stale.id)
    assert stale.status == PAY_REFUNDED
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PAID


def test_checkout_and_intent_success_count_once(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment, _, _ = services.payments.create_checkout_session(order.id)
    assert payment.invoice_id == invoice.id

    deliver(services, checkout_completed(payment, intent_id="pi_both"))
    deliver(services, intent_event("payment_intent.succeeded", "pi_both", payment.amount_cents))

    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.error_code is None
    assert payment.stripe_charge_id == "ch_test_1"
    assert services.invoices.get_invoice(invoice.id).amount_paid_cents == invoice.total_cents


def test_delayed_checkout_waits_for_intent(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)

    deliver(services, checkout_completed(payment, intent_id="pi_delayed", payment_status="unpaid"))
    assert services.payments.get_payment(payment.id).status == PAY_PROCESSING
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PENDING

    deliver(services, intent_event("payment_intent.succeeded", "pi_delayed", payment.amount_cents))
    assert services.payments.get_payment(payment.id).status == PAY_SUCCEEDED
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PAID


def test_payment_failed_keeps_order_open(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment, _ = services.payments.create_payment_intent(invoice.id)

    deliver(
        services,
        intent_event(
            "payment_intent.payment_failed",
            payment.stripe_payment_intent_id,
            payment.amount_cents,
            error={"code": "card_declined", "decline_code": "insufficient_funds", "message": "Your card has insufficient funds."},
        ),
    )

    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_FAILED
    assert payment.error_code == "insufficient_funds"
    assert payment.error_message == "Your card has insufficient funds."
    order = services.orders.get_order(order.id)
    assert order.payment_status == PAYMENT_FAILED
    assert order.status == ORDER_PENDING

    # Customer retries on the same intent
    deliver(services, intent_event("payment_intent.succeeded", payment.stripe_payment_intent_id, payment.amount_cents))
    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.error_code is None
    assert services.invoices.get_invoice(invoice.id).status == INVOICE_PAID


def test_late_failure_does_not_undo_success(services, order):
    payment = paid_checkout(services, order)

    deliver(services, intent_event("payment_intent.payment_failed", payment.stripe_payment_intent_id, 0, error={"code": "card_declined"}))

    assert services.payments.get_payment(payment.id).status == PAY_SUCCEEDED
    assert services.orders.get_order(order.id).payment_status == PAYMENT_PAID


def test_checkout_expired_resets_order(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)

    deliver(services, stripe_event("checkout.session.expired", {"id": payment.stripe_session_id, "object": "checkout.session"}))

    assert services.payments.get_payment(payment.id).status == PAY_CANCELLED
    assert services.orders.get_order(order.id).payment_status == PAYMENT_UNPAID


def test_overpaid_invoice_is_flagged_not_rejected(services, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment, _, _ = services.payments.create_checkout_session(order.id)
    services.invoices.apply_payment(invoice.id, 1000, note="Cash deposit")

    ack = deliver(services, checkout_completed(payment))

    assert ack["handled"] is True
    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.error_code == ERROR_INVOICE_OVERPAYMENT
    assert services.invoices.get_invoice(invoice.id).amount_paid_cents == 1000


def test_bad_signature_is_rejected(db_session, services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)

    with pytest.raises(InvalidSignatureError):
        deliver(services, checkout_completed(payment), secret="whsec_wrong")
    with pytest.raises(InvalidSignatureError):
        services.payments.handle_webhook(b"{}", None)
    with pytest.raises(InvalidSignatureError):
        services.payments.handle_webhook(b"\xff\xfe{}", "t=1,v1=abc")

    assert services.payments.get_payment(payment.id).status == PAY_PENDING
    assert db_session.query(PaymentWebhookEvent).count() == 0


def test_unhandled_event_type_is_acknowledged(db_session, services):
    ack = deliver(services, stripe_event("customer.created", {"id": "cus_x"}, event_id="evt_other"))

    assert ack == {"received": True, "event_id": "evt_other", "type": "customer.created", "duplicate": False, "handled": False}
    assert db_session.query(PaymentWebhookEvent).filter_by(event_id="evt_other").count() == 1


def test_unknown_payment_is_not_acknowledged(db_session, services):
    event = intent_event("payment_intent.succeeded", "pi_unknown", 1000, event_id="evt_orphan")

    with pytest.raises(NotFoundError):
        deliver(services, event)

    # Not recorded, so the processor's redelivery is processed normally
    assert db_session.query(PaymentWebhookEvent).filter_by(event_id="evt_orphan").count() == 0


def test_metadata_fallback_finds_payment(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)
    event = stripe_event(
        "payment_intent.succeeded",
        {"id": "pi_not_linked", "amount_received": payment.amount_cents, "metadata": {"payment_id": str(payment.id)}},
    )

    ack = deliver(services, event)

    assert ack["handled"] is True
    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.stripe_payment_intent_id == "pi_not_linked"


# =============================================================================
# REFUNDS
# =============================================================================

def test_partial_then_full_refund(services, gateway, order):
    invoice = services.invoices.issue_from_order(order.id)
    payment = paid_checkout(services, order)

    refund, payment = services.payments.refund(payment.id, 93250, reason="Damaged bags")

    assert refund.amount_cents == 93250
    assert payment.status == PAY_PARTIALLY_REFUNDED
    assert payment.refund_amount_cents == 93250
    assert payment.refundable_cents == 200000
    call = gateway.calls_for("refund.create")[0]
    assert call["payment_intent"] == "pi_checkout_1"
    assert call["reason"] == "requested_by_customer"
    assert call["idempotency_key"] == f"csms-refund-{payment.id}-93250"

    invoice = services.invoices.get_invoice(invoice.id)
    assert invoice.status == INVOICE_PARTIALLY_PAID
    assert invoice.amount_paid_cents == invoice.total_cents - 93250
    assert services.orders.get_order(order.id).payment_status == PAYMENT_REFUNDED

    refund, payment = services.payments.refund(payment.id)
    assert refund.amount_cents == 200000
    assert payment.status == PAY_REFUNDED
    assert services.invoices.get_invoice(invoice.id).amount_paid_cents == 0

    with pytest.raises(InvalidTransitionError):
        services.payments.refund(payment.id, 1)


def test_refund_cannot_exceed_remaining(services, order):
    payment = paid_checkout(services, order)

    with pytest.raises(AlreadySettledError):
        services.payments.refund(payment.id, payment.amount_cents + 1)


def test_refund_requires_captured_payment(services, order):
    payment, _, _ = services.payments.create_checkout_session(order.id)
    with pytest.raises(InvalidTransitionError):
        services.payments.refund(payment.id)


def test_refund_processor_failure_changes_nothing(services, gateway, order):
    payment = paid_checkout(services, order)
    gateway.fail("refund.create", stripe.APIConnectionError("timed out"))

    with pytest.raises(ProcessorUnavailableError):
        services.payments.refund(payment.id, 1000)

    payment = services.payments.get_payment(payment.id)
    assert payment.status == PAY_SUCCEEDED
    assert payment.refund_amount_cents == 0


def test_charge_refunded_applies_only_the_delta(services, order):
    payment = paid_checkout(services, order)
    services.payments.refund(payment.id, 10000)

    # Echo of our own refund: cumulative equals what is already recorded
    deliver(services, charge_refunded(payment.stripe_payment_intent_id, 10000))
    payment = services.payments.get_payment(payment.id)
    assert payment.refund_amount_cents == 10000
    assert payment.card_brand == "visa"
    assert payment.card_last4 == "4242"
    assert payment.stripe_charge_id == "ch_test_1"

    # Refund issued from the processor dashboard
    deliver(services, charge_refunded(payment.stripe_payment_intent_id, 25000))
    payment = services.payments.get_payment(payment.id)
    assert payment.refund_amount_cents == 25000
    assert payment.status == PAY_PARTIALLY_REFUNDED

    deliver(services, charge_refunded(payment.stripe_payment_intent_id, payment.amount_cents))
    assert services.payments.get_payment(payment.id).status == PAY_REFUNDED


def test_list_payments_paginates(services, make_product, place_order):
    product = make_product(stock_quantity=100)
    for _ in range(3):
        services.payments.create_checkout_session(place_order([(product, 1)]).id)

    page = services.payments.list_payments(per_page=2)
    assert page["total"] == 3
    assert page["pages"] == 2
    assert len(page["items"]) == 2

    second = services.payments.list_payments(per_page=2, page=2)
    assert len(second["items"]) == 1
    assert services.payments.list_payments(status=PAY_SUCCEEDED)["total"] == 0
