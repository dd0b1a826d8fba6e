# Overview: Flask API routes for card payments; checkout, intents, refunds and the processor webhook.

# backend/csms/routes/payments.py
"""
Payment API Routes

DESIGN:
- Initiation endpoints create the local Payment row before redirecting
  the customer to the processor
- The webhook endpoint reads the RAW body; signature verification needs
  the exact bytes the processor signed
- Webhook responses: 200 acknowledged (including duplicates and ignored
  types), 400 bad signature, 404 payment not visible yet, 500 internal
  failure. Anything non-2xx makes the processor redeliver.
"""

from dataclasses import asdict

from flask import Blueprint, jsonify, request

from ..errors import CSMSError
from ..schemas import CheckoutSessionRequest, PaymentIntentRequest, RefundRequest
from .common import arg_int, error_response, get_services, internal_error, json_body

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# INITIATION
# =============================================================================

@payments_bp.post("/create-checkout-session")
def create_checkout_session_route():
    """
    Request body: {"order_id": 12}

    Returns:
        200: {"session_id", "session_url", "payment"}
        400: order cancelled or already paid
        404: order not found
        409: a checkout session is already open for the order
        502/503: processor error / unavailable
    """
    try:
        req = CheckoutSessionRequest.from_json(json_body())
        payment, session_id, session_url = get_services().payments.create_checkout_session(req.order_id)
        return jsonify({"session_id": session_id, "session_url": session_url, "payment": payment.to_dict()})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create checkout session")


@payments_bp.post("/create-payment-intent")
def create_payment_intent_route():
    """Request body: {"invoice_id": 3, "amount_cents": 50000} (amount defaults to the balance)."""
    try:
        req = PaymentIntentRequest.from_json(json_body())
        payment, client_secret = get_services().payments.create_payment_intent(
            req.invoice_id, req.amount_cents
        )
        return jsonify({"client_secret": client_secret, "payment": payment.to_dict()})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create payment intent")


# =============================================================================
# WEBHOOK
# =============================================================================

@payments_bp.post("/webhook")
def webhook_route():
    try:
        result = get_services().payments.handle_webhook(
            request.get_data(),
            request.headers.get("Stripe-Signature"),
        )
        return jsonify(result)
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to process webhook")


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/refund")
def refund_route():
    """
    Request body: {"payment_id": 7, "amount_cents": 10000, "reason": "requested_by_customer"}

    amount_cents defaults to everything still refundable.
    """
    try:
        req = RefundRequest.from_json(json_body())
        refund, payment = get_services().payments.refund(req.payment_id, req.amount_cents, req.reason)
        return jsonify({
            "refund": {"id": refund.id, "amount_cents": refund.amount_cents, "status": refund.status},
            "payment": payment.to_dict(),
        })
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to refund payment")


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("")
def list_payments_route():
    """
    Query params: status, customer_id, order_id, invoice_id, page (default 1), per_page (default 20, max 100)
    """
    try:
        result = get_services().payments.list_payments(
            status=request.args.get("status") or None,
            customer_id=arg_int("customer_id"),
            order_id=arg_int("order_id"),
            invoice_id=arg_int("invoice_id"),
            page=arg_int("page") or 1,
            per_page=arg_int("per_page") or 20,
        )
        result["items"] = [p.to_dict() for p in result["items"]]
        return jsonify(result)
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list payments")


@payments_bp.get("/session/<session_id>")
def get_checkout_session_route(session_id: str):
    """
    Returns:
        200: {"session": {...}, "payment": {...} | null}
        502/503: processor error / unavailable (unknown sessions included)
    """
    try:
        details, payment = get_services().payments.get_checkout_session(session_id)
        return jsonify({
            "session": asdict(details),
            "payment": payment.to_dict() if payment is not None else None,
        })
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to retrieve checkout session")


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    try:
        payment = get_services().payments.get_payment(payment_id)
        data = payment.to_dict()
        data["webhook_events"] = [e.to_dict() for e in payment.webhook_events]
        return jsonify(data)
    except CSMSError as e:
        return error_response(e)
