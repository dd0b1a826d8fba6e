# Overview: Flask API routes for the product catalog; parses input and returns JSON responses.

# backend/csms/routes/products.py
"""
Product catalog routes.

Stock is read-only here: it changes through /api/inventory and order
placement only, so every movement lands in the transaction log.
"""
from flask import Blueprint, jsonify, request

from ..errors import CSMSError
from ..models import Product
from ..validation import (
    PRODUCT_CREATE_POLICY,
    PRODUCT_UPDATE_POLICY,
    enforce_rules_product,
    validate_payload,
)
from .common import arg_bool, error_response, get_services, internal_error, json_body

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products():
    """
    List products.

    Query params:
    - category: cement | aggregate | sand | other
    - search: text matched against name, SKU and description
    - active: true (default) | false | all
    - low_stock: true to return only products at or below reorder level
    """
    try:
        products = get_services().products.list_products(
            category=request.args.get("category") or None,
            search=request.args.get("search") or None,
            active=(request.args.get("active") or "true").lower(),
            low_stock=arg_bool("low_stock"),
        )
        return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list products")


@products_bp.post("")
def create_product_route():
    """
    Create a product. Initial stock_quantity is logged as INIT-STOCK.

    Returns:
        201: product
        400: invalid input
        409: duplicate SKU
    """
    try:
        payload = json_body() or {}
        performed_by = payload.pop("performed_by", None) if isinstance(payload, dict) else None
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_CREATE_POLICY, partial=False)
        enforce_rules_product(patch)
        product = get_services().products.create_product(patch, performed_by=performed_by)
        return jsonify(product.to_dict()), 201
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create product")


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        return jsonify(get_services().products.get(product_id).to_dict())
    except CSMSError as e:
        return error_response(e)


@products_bp.put("/<int:product_id>")
def update_product_route(product_id: int):
    try:
        patch = validate_payload(
            model=Product, payload=json_body(), policy=PRODUCT_UPDATE_POLICY, partial=True
        )
        enforce_rules_product(patch)
        product = get_services().products.update_product(product_id, patch)
        return jsonify(product.to_dict())
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update product")


@products_bp.delete("/<int:product_id>")
def delete_product_route(product_id: int):
    """Soft delete; the product stays referenced by orders and the log."""
    try:
        product = get_services().products.deactivate_product(product_id)
        return jsonify({"ok": True, "product": product.to_dict()})
    except CSMSError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to delete product")
