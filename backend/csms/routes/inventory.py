# Overview: Flask API routes for stock movements and the inventory transaction log.

from flask import Blueprint, jsonify, request

from ..errors import CSMSError
from ..schemas import AdjustStockRequest, RestockRequest
from .common import arg_datetime, arg_int, error_response, get_services, internal_error, json_body

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/restock")
def restock_route():
    """
    Receive stock for a product (INBOUND).

    Request body:
    {"product_id": 1, "quantity": 50, "reason": "Supplier delivery", "reference": "DN-778"}
    """
    try:
        req = RestockRequest.from_json(json_body())
        services = get_services()
        tx = services.products.restock(
            req.product_id,
            req.quantity,
            reason=req.reason,
            reference=req.reference,
            performed_by=req.performed_by,
        )
        product = services.products.get(req.product_id)
        return jsonify({"transaction": tx.to_dict(), "product": product.to_dict()}), 201
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to restock product")


@inventory_bp.post("/adjust")
def adjust_route():
    """Signed correction (ADJUSTMENT); reason is required."""
    try:
        req = AdjustStockRequest.from_json(json_body())
        services = get_services()
        tx = services.products.adjust_stock(
            req.product_id,
            req.quantity_delta,
            reason=req.reason,
            performed_by=req.performed_by,
        )
        product = services.products.get(req.product_id)
        return jsonify({"transaction": tx.to_dict(), "product": product.to_dict()}), 201
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to adjust stock")


@inventory_bp.get("/transactions")
def list_transactions_route():
    """
    Query params: product_id, type, reference, start, end (ISO-8601), limit (default 200).
    Newest first.
    """
    try:
        transactions = get_services().inventory.list_transactions(
            product_id=arg_int("product_id"),
            tx_type=request.args.get("type") or None,
            reference=request.args.get("reference") or None,
            start=arg_datetime("start"),
            end=arg_datetime("end"),
            limit=arg_int("limit") or 200,
        )
        return jsonify({"items": [tx.to_dict() for tx in transactions], "count": len(transactions)})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list inventory transactions")


@inventory_bp.get("/low-stock")
def low_stock_route():
    try:
        products = get_services().products.low_stock_report()
        return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})
    except CSMSError as e:
        return error_response(e)
