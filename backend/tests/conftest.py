"""
Pytest fixtures for CSMS backend tests.

Provides the application on an in-memory database, a per-test clean
database, the service graph, a Stripe gateway double and webhook signing.
"""

import hashlib
import hmac
import json
import time
import uuid

import pytest
import stripe

from csms import create_app
from csms.extensions import GATEWAY_EXTENSION_KEY, db
from csms.schemas import OrderLineRequest
from csms.services import build_services
from csms.services.stripe_gateway import (
    CheckoutSessionDetails,
    CheckoutSessionResult,
    PaymentIntentResult,
    RefundResult,
    StripeGateway,
)

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    """
    Gateway double: outbound calls are recorded instead of sent, but still
    pass through StripeGateway._call so SDK errors are mapped exactly as in
    production. Webhook verification is the real one.
    """

    def __init__(self):
        super().__init__(
            secret_key="sk_test_fake",
            webhook_secret=WEBHOOK_SECRET,
            success_url="http://localhost:3000/payment/success",
            cancel_url="http://localhost:3000/payment/cancel",
        )
        self.reset()

    def reset(self):
        self.calls = []
        self.failures = {}
        self.sessions = {}
        self._counter = 0

    def fail(self, operation: str, exc: Exception):
        """Make the next calls to operation raise exc (a stripe error)."""
        self.failures[operation] = exc

    def _respond(self, operation: str, params: dict):
        self.calls.append((operation, params))
        if operation in self.failures:
            raise self.failures[operation]
        self._counter += 1
        return self._counter

    def _fake(self, operation: str, params: dict) -> int:
        return self._call(operation, self._respond, operation, params)

    def calls_for(self, operation: str) -> list:
        return [params for name, params in self.calls if name == operation]

    def ensure_customer(self, *, email, name, customer_id):
        n = self._fake("customer.create", {"email": email, "name": name, "customer_id": customer_id})
        return f"cus_test_{n}"

    def create_checkout_session(self, *, payment_id, order, stripe_customer_id, customer_email, invoice=None):
        if invoice is not None and invoice.amount_paid_cents > 0:
            amount = invoice.balance_cents
            item_names = [f"Balance of {invoice.invoice_number}"]
        else:
            items = self._order_line_items(order, order.currency.lower())
            amount = sum(i["price_data"]["unit_amount"] * i["quantity"] for i in items)
            item_names = [i["price_data"]["product_data"]["name"] for i in items]
        n = self._fake(
            "checkout.session.create",
            {
                "payment_id": payment_id,
                "order_id": order.id,
                "invoice_id": invoice.id if invoice is not None else None,
                "amount_cents": amount,
                "line_items": item_names,
                "customer": stripe_customer_id,
                "customer_email": customer_email,
            },
        )
        result = CheckoutSessionResult(id=f"cs_test_{n}", url=f"https://checkout.stripe.test/c/cs_test_{n}")
        self.sessions[result.id] = CheckoutSessionDetails(
            id=result.id,
            url=result.url,
            status="open",
            payment_status="unpaid",
            amount_total=amount,
            currency=order.currency.lower(),
            customer_email=customer_email,
        )
        return result

    def _lookup_session(self, session_id):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(
                f"No such checkout.session: '{session_id}'", param="session", code="resource_missing", http_status=404
            )
        return self.sessions[session_id]

    def retrieve_checkout_session(self, session_id):
        self.calls.append(("checkout.session.retrieve", {"session_id": session_id}))
        return self._call("checkout.session.retrieve", self._lookup_session, session_id)

    def create_payment_intent(self, *, payment_id, amount_cents, currency, stripe_customer_id, description, metadata):
        n = self._fake(
            "payment_intent.create",
            {"payment_id": payment_id, "amount_cents": amount_cents, "currency": currency, "metadata": metadata},
        )
        return PaymentIntentResult(id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_x", status="requires_payment_method")

    def create_refund(self, *, payment_intent_id, charge_id, amount_cents, reason, idempotency_key):
        n = self._fake(
            "refund.create",
            {
                "payment_intent": payment_intent_id,
                "charge": charge_id,
                "amount_cents": amount_cents,
                "reason": reason,
                "idempotency_key": idempotency_key,
            },
        )
        return RefundResult(id=f"re_test_{n}", amount_cents=amount_cents, status="succeeded")


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def sign_payload(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
    """Return (payload, Stripe-Signature header) the way Stripe signs deliveries."""
    payload = json.dumps(event)
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, f"t={ts},v1={signature}"


@pytest.fixture(scope='session')
def gateway():
    return FakeStripeGateway()


@pytest.fixture(scope='session')
def app(gateway):
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'STRIPE_SECRET_KEY': 'sk_test_fake',
            'STRIPE_WEBHOOK_SECRET': WEBHOOK_SECRET,
            'LOG_LEVEL': 'WARNING',
        },
        gateway=gateway,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, gateway):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema; Core deletes bypass the append-only guards
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        gateway.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def services(app, db_session):
    return build_services(db_session, app.extensions[GATEWAY_EXTENSION_KEY], app.config)


@pytest.fixture(scope='function')
def make_product(services):
    """Factory creating catalog products through the ledger (stock logged as INIT-STOCK)."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        patch = {
            "sku": f"TST-{counter['n']:03d}",
            "name": f"Test Material {counter['n']}",
            "category": "cement",
            "unit": "bags",
            "unit_price_cents": 2550,
            "tax_rate_bps": 1500,
            "stock_quantity": 500,
            "reorder_level": 50,
        }
        patch.update(overrides)
        return services.products.create_product(patch, performed_by="test")

    return _make


@pytest.fixture(scope='function')
def place_order(services):
    """Factory placing an order for [(product, quantity), ...]."""

    def _place(lines, *, customer_ref="idp|customer-1", customer_email="buyer@example.com", **kwargs):
        return services.orders.place_order(
            items=[OrderLineRequest(product_id=p.id, quantity=q) for p, q in lines],
            customer_ref=customer_ref,
            customer_email=customer_email,
            customer_name="Test Buyer",
            **kwargs,
        )

    return _place
