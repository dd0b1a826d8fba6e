# Overview: The only module that talks to Stripe; maps SDK errors into domain errors.

"""
Stripe gateway.

Every outbound call goes through a StripeClient with a bounded request
timeout and a small number of network retries, and every SDK exception is
translated here:

- stripe.APIConnectionError (network failure, timeout) -> ProcessorUnavailableError (503)
- any other stripe.StripeError                          -> ProcessorError (502)

Only the processor's user-facing message is passed on; raw SDK errors and
keys never leave this module.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import stripe

from ..errors import InvalidSignatureError, ProcessorError, ProcessorUnavailableError, ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class CheckoutSessionResult:
    id: str
    url: str | None
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class CheckoutSessionDetails:
    id: str
    url: str | None
    status: str | None
    payment_status: str | None
    amount_total: int | None
    currency: str | None
    customer_email: str | None = None
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: str | None
    status: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount_cents: int
    status: str


class StripeGateway:
    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        timeout_seconds: int = 10,
        max_network_retries: int = 2,
    ):
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self._secret_key = secret_key
        self._timeout_seconds = timeout_seconds
        self._max_network_retries = max_network_retries
        self._client = None

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            secret_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            success_url=config.get("STRIPE_SUCCESS_URL", ""),
            cancel_url=config.get("STRIPE_CANCEL_URL", ""),
            timeout_seconds=config.get("STRIPE_TIMEOUT_SECONDS", 10),
            max_network_retries=config.get("STRIPE_MAX_NETWORK_RETRIES", 2),
        )

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self._secret_key:
                raise ProcessorUnavailableError("Payment processor is not configured")
            self._client = stripe.StripeClient(
                self._secret_key,
                http_client=stripe.RequestsClient(timeout=self._timeout_seconds),
                max_network_retries=self._max_network_retries,
            )
        return self._client

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe %s failed to connect: %s", operation, exc)
            raise ProcessorUnavailableError(
                "Payment processor is unavailable, please try again", {"operation": operation}
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe %s rejected: code=%s status=%s", operation, exc.code, exc.http_status)
            details = {"operation": operation}
            if exc.code:
                details["code"] = exc.code
            if exc.user_message:
                details["processor_message"] = exc.user_message
            raise ProcessorError("Payment processor error", details)

    # =========================================================================
    # OUTBOUND CALLS
    # =========================================================================

    def ensure_customer(self, *, email: str | None, name: str | None, customer_id: int) -> str:
        customer = self._call(
            "customer.create",
            self.client.customers.create,
            params={
                "email": email,
                "name": name,
                "metadata": {"customer_id": str(customer_id)},
            },
            options={"idempotency_key": f"csms-customer-{customer_id}"},
        )
        return customer.id

    @staticmethod
    def _order_line_items(order, currency: str) -> list[dict]:
        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": line.name, "metadata": {"sku": line.sku}},
                    "unit_amount": line.unit_price_cents,
                },
                "quantity": line.quantity,
            }
            for line in order.lines
        ]
        if order.tax_cents:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": "VAT"},
                        "unit_amount": order.tax_cents,
                    },
                    "quantity": 1,
                }
            )
        return line_items

    def create_checkout_session(
        self,
        *,
        payment_id: int,
        order,
        stripe_customer_id: str | None,
        customer_email: str | None,
        invoice=None,
    ) -> CheckoutSessionResult:
        """
        Hosted checkout for an order: one line item per order line plus one
        for the order's tax, so the charged amount equals order.total_cents.

        With a partly paid invoice, the session charges only its balance as
        a single line item.
        """
        currency = order.currency.lower()
        if invoice is not None and invoice.amount_paid_cents > 0:
            line_items = [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": f"Balance of {invoice.invoice_number}"},
                        "unit_amount": invoice.balance_cents,
                    },
                    "quantity": 1,
                }
            ]
        else:
            line_items = self._order_line_items(order, currency)

        metadata = {
            "payment_id": str(payment_id),
            "order_id": str(order.id),
            "order_number": order.order_number,
        }
        if invoice is not None:
            metadata["invoice_id"] = str(invoice.id)
            metadata["invoice_number"] = invoice.invoice_number
        params = {
            "mode": "payment",
            "line_items": line_items,
            "client_reference_id": order.order_number,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if stripe_customer_id:
            params["customer"] = stripe_customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = self._call(
            "checkout.session.create",
            self.client.checkout.sessions.create,
            params=params,
            options={"idempotency_key": f"csms-checkout-{payment_id}"},
        )
        return CheckoutSessionResult(
            id=session.id,
            url=session.url,
            payment_intent_id=getattr(session, "payment_intent", None),
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionDetails:
        session = self._call(
            "checkout.session.retrieve",
            self.client.checkout.sessions.retrieve,
            session_id,
        )
        customer_details = getattr(session, "customer_details", None)
        return CheckoutSessionDetails(
            id=session.id,
            url=getattr(session, "url", None),
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            amount_total=getattr(session, "amount_total", None),
            currency=getattr(session, "currency", None),
            customer_email=getattr(customer_details, "email", None) if customer_details else None,
            payment_intent_id=getattr(session, "payment_intent", None),
        )

    def create_payment_intent(
        self,
        *,
        payment_id: int,
        amount_cents: int,
        currency: str,
        stripe_customer_id: str | None,
        description: str,
        metadata: dict,
    ) -> PaymentIntentResult:
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "description": description,
            "metadata": {"payment_id": str(payment_id), **{k: str(v) for k, v in metadata.items()}},
            "automatic_payment_methods": {"enabled": True},
        }
        if stripe_customer_id:
            params["customer"] = stripe_customer_id

        intent = self._call(
            "payment_intent.create",
            self.client.payment_intents.create,
            params=params,
            options={"idempotency_key": f"csms-intent-{payment_id}"},
        )
        return PaymentIntentResult(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    def create_refund(
        self,
        *,
        payment_intent_id: str | None,
        charge_id: str | None,
        amount_cents: int,
        reason: str | None,
        idempotency_key: str,
    ) -> RefundResult:
        if not payment_intent_id and not charge_id:
            raise ValidationError("Payment has no processor charge to refund")
        params = {"amount": amount_cents}
        if payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            params["charge"] = charge_id
        if reason:
            params["reason"] = reason

        refund = self._call(
            "refund.create",
            self.client.refunds.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )
        return RefundResult(id=refund.id, amount_cents=refund.amount, status=refund.status)

    # =========================================================================
    # INBOUND EVENTS
    # =========================================================================

    def construct_event(self, payload: bytes | str, signature: str | None) -> dict:
        """
        Verify a webhook delivery and return the decoded event.

        Raises:
            InvalidSignatureError: missing/invalid signature or bad JSON
        """
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise InvalidSignatureError("Webhook secret is not configured")
        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise InvalidSignatureError("Invalid webhook payload")
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise InvalidSignatureError("Invalid webhook payload")
        return event
