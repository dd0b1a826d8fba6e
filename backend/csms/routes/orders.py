# Overview: Flask API routes for orders; placement, status updates, cancellation and invoicing.

# backend/csms/routes/orders.py
"""
Order API Routes

- POST   /api/orders                 place an order (stock reserved atomically)
- GET    /api/orders                 list (customer_id, status, payment_status)
- GET    /api/orders/<id>            read with lines and timeline
- PATCH  /api/orders/<id>            status / payment status / ETA
- DELETE /api/orders/<id>?reason=    cancel (stock restored)
- POST   /api/orders/<id>/invoice    issue the order's invoice
"""

from flask import Blueprint, jsonify, request

from ..errors import CSMSError
from ..schemas import CancelRequest, IssueInvoiceRequest, PlaceOrderRequest, UpdateOrderRequest
from .common import arg_int, error_response, get_services, internal_error, json_body

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
def place_order_route():
    """
    Place an order.

    Request body:
    {
        "customer_id": "idp|42",            (or "customer_email")
        "items": [{"product_id": 1, "quantity": 100}],
        "delivery_address": {"line1": "...", "city": "Riyadh"},
        "delivery_eta": "2025-03-01T08:00:00Z"
    }

    Returns:
        201: order
        400: validation, inactive product or stock shortfall
        404: unknown product
    """
    try:
        req = PlaceOrderRequest.from_json(json_body())
        order = get_services().orders.place_order(
            items=req.items,
            customer_ref=req.customer_id,
            customer_email=req.customer_email,
            customer_name=req.customer_name,
            delivery_address=req.delivery_address.to_dict() if req.delivery_address else None,
            delivery_eta=req.delivery_eta,
            tax_override_cents=req.tax_override_cents,
            extension_data=req.extension_data,
        )
        return jsonify(order.to_dict()), 201
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to place order")


@orders_bp.get("")
def list_orders_route():
    try:
        orders = get_services().orders.list_orders(
            customer_id=arg_int("customer_id"),
            status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
        )
        return jsonify({"items": [o.to_dict(include_lines=False) for o in orders], "count": len(orders)})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        return jsonify(get_services().orders.get_order(order_id).to_dict())
    except CSMSError as e:
        return error_response(e)


@orders_bp.patch("/<int:order_id>")
def update_order_route(order_id: int):
    try:
        req = UpdateOrderRequest.from_json(json_body())
        order = get_services().orders.update_order(
            order_id,
            status=req.status,
            payment_status=req.payment_status,
            delivery_eta=req.delivery_eta,
            cancellation_reason=req.cancellation_reason,
            note=req.note,
        )
        return jsonify(order.to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update order")


@orders_bp.delete("/<int:order_id>")
def cancel_order_route(order_id: int):
    """Cancel an order; reason from ?reason= or a JSON body."""
    try:
        reason = request.args.get("reason")
        if reason is None and request.data:
            reason = CancelRequest.from_json(json_body()).reason
        order = get_services().orders.cancel_order(order_id, reason=reason)
        return jsonify(order.to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to cancel order")


@orders_bp.post("/<int:order_id>/invoice")
def issue_invoice_route(order_id: int):
    """Optional body: {"due_in_days": 30, "notes": "..."}; due_in_days may also be a query arg."""
    try:
        req = IssueInvoiceRequest.from_json(json_body())
        invoice = get_services().invoices.issue_from_order(
            order_id,
            due_in_days=arg_int("due_in_days") if req.due_in_days is None else req.due_in_days,
            notes=req.notes,
        )
        return jsonify(invoice.to_dict()), 201
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to issue invoice")
