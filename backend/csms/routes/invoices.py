# Overview: Flask API routes for invoices; reads, sending, offline payments and cancellation.

from flask import Blueprint, jsonify, request

from ..errors import CSMSError
from ..schemas import ApplyInvoicePaymentRequest, CancelRequest
from .common import arg_bool, arg_int, error_response, get_services, internal_error, json_body

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.get("")
def list_invoices_route():
    """
    Query params:
    - status: Draft | Sent | Partially Paid | Paid | Overdue | Cancelled (effective status)
    - customer_id
    - overdue: true to list only overdue invoices
    """
    try:
        invoices = get_services().invoices.list_invoices(
            status=request.args.get("status") or None,
            customer_id=arg_int("customer_id"),
            overdue=arg_bool("overdue"),
        )
        return jsonify({"items": [i.to_dict(include_lines=False) for i in invoices], "count": len(invoices)})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list invoices")


@invoices_bp.get("/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    try:
        invoice = get_services().invoices.get_invoice(invoice_id)
        data = invoice.to_dict()
        data["payments"] = [p.to_dict() for p in invoice.payments]
        return jsonify(data)
    except CSMSError as e:
        return error_response(e)


@invoices_bp.post("/<int:invoice_id>/send")
def send_invoice_route(invoice_id: int):
    try:
        return jsonify(get_services().invoices.send_invoice(invoice_id).to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to send invoice")


@invoices_bp.post("/<int:invoice_id>/payments")
def apply_invoice_payment_route(invoice_id: int):
    """
    Record money received outside the card processor (bank transfer, cash on delivery).

    Request body: {"amount_cents": 100000, "note": "Bank transfer ref 5512"}
    """
    try:
        req = ApplyInvoicePaymentRequest.from_json(json_body())
        invoice = get_services().invoices.apply_payment(invoice_id, req.amount_cents, note=req.note)
        return jsonify(invoice.to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to apply invoice payment")


@invoices_bp.post("/<int:invoice_id>/cancel")
def cancel_invoice_route(invoice_id: int):
    try:
        req = CancelRequest.from_json(json_body())
        return jsonify(get_services().invoices.cancel_invoice(invoice_id, req.reason).to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to cancel invoice")
