# Overview: Typed request bodies parsed at the HTTP boundary.

"""
Request schemas.

Each dataclass has a from_json() that accepts the decoded JSON body and
either returns a fully-typed instance or raises ValidationError. Unknown
keys are rejected so typos never silently fall through to business logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .models.orders import ORDER_PAYMENT_STATUSES, ORDER_STATUSES
from .time_utils import parse_iso_datetime
from .validation import coerce_int

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def _require_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _reject_unknown(payload: dict, allowed: set[str]) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", {"fields": unknown})


def _int(payload: dict, key: str, *, required: bool = False, minimum: int | None = None) -> int | None:
    raw = payload.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    value = coerce_int(key, raw)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return value


def _str(payload: dict, key: str, *, required: bool = False, max_length: int = 255) -> str | None:
    raw = payload.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{key} must be a string")
    value = raw.strip()
    if required and not value:
        raise ValidationError(f"{key} cannot be blank")
    if len(value) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return value or None


def _datetime(payload: dict, key: str) -> datetime | None:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime")


def _object(payload: dict, key: str) -> dict | None:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(f"{key} must be an object")
    return raw


@dataclass(frozen=True)
class OrderLineRequest:
    product_id: int
    quantity: int

    @classmethod
    def from_json(cls, payload: Any, index: int) -> "OrderLineRequest":
        if not isinstance(payload, dict):
            raise ValidationError(f"items[{index}] must be an object")
        _reject_unknown(payload, {"product_id", "quantity"})
        return cls(
            product_id=_int(payload, "product_id", required=True, minimum=1),
            quantity=_int(payload, "quantity", required=True, minimum=1),
        )


@dataclass(frozen=True)
class DeliveryAddress:
    line1: str
    city: str
    line2: str | None = None
    notes: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "DeliveryAddress":
        if not isinstance(payload, dict):
            raise ValidationError("delivery_address must be an object")
        _reject_unknown(payload, {"line1", "line2", "city", "notes"})
        return cls(
            line1=_str(payload, "line1", required=True),
            city=_str(payload, "city", required=True, max_length=128),
            line2=_str(payload, "line2"),
            notes=_str(payload, "notes", max_length=1000),
        )

    def to_dict(self) -> dict:
        return {"line1": self.line1, "line2": self.line2, "city": self.city, "notes": self.notes}


@dataclass(frozen=True)
class PlaceOrderRequest:
    items: list[OrderLineRequest]
    customer_id: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    delivery_address: DeliveryAddress | None = None
    delivery_eta: datetime | None = None
    tax_override_cents: int | None = None
    extension_data: dict = field(default_factory=dict)

    FIELDS = {
        "items", "customer_id", "customer_email", "customer_name", "delivery_address",
        "delivery_eta", "tax_override_cents", "extension_data",
    }

    @classmethod
    def from_json(cls, payload: Any) -> "PlaceOrderRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, cls.FIELDS)

        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Order must contain at least one item")
        items = [OrderLineRequest.from_json(item, i) for i, item in enumerate(raw_items)]

        customer_id = payload.get("customer_id")
        if isinstance(customer_id, bool) or (
            customer_id is not None and not isinstance(customer_id, (str, int))
        ):
            raise ValidationError("customer_id must be a string")
        customer_email = _str(payload, "customer_email")
        if customer_id is None and not customer_email:
            raise ValidationError("customer_id or customer_email is required")

        address = payload.get("delivery_address")
        return cls(
            items=items,
            customer_id=str(customer_id) if customer_id is not None else None,
            customer_email=customer_email,
            customer_name=_str(payload, "customer_name"),
            delivery_address=DeliveryAddress.from_json(address) if address is not None else None,
            delivery_eta=_datetime(payload, "delivery_eta"),
            tax_override_cents=_int(payload, "tax_override_cents", minimum=0),
            extension_data=_object(payload, "extension_data") or {},
        )


@dataclass(frozen=True)
class UpdateOrderRequest:
    status: str | None = None
    payment_status: str | None = None
    delivery_eta: datetime | None = None
    cancellation_reason: str | None = None
    note: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "UpdateOrderRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"status", "payment_status", "delivery_eta", "cancellation_reason", "note"})
        if not payload:
            raise ValidationError("No fields to update")

        status = _str(payload, "status", max_length=32)
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {status}", {"allowed": list(ORDER_STATUSES)})
        payment_status = _str(payload, "payment_status", max_length=16)
        if payment_status is not None and payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError(
                f"Invalid payment status: {payment_status}", {"allowed": list(ORDER_PAYMENT_STATUSES)}
            )
        return cls(
            status=status,
            payment_status=payment_status,
            delivery_eta=_datetime(payload, "delivery_eta"),
            cancellation_reason=_str(payload, "cancellation_reason"),
            note=_str(payload, "note"),
        )


@dataclass(frozen=True)
class CheckoutSessionRequest:
    order_id: int

    @classmethod
    def from_json(cls, payload: Any) -> "CheckoutSessionRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"order_id"})
        return cls(order_id=_int(payload, "order_id", required=True, minimum=1))


@dataclass(frozen=True)
class PaymentIntentRequest:
    invoice_id: int
    amount_cents: int | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "PaymentIntentRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"invoice_id", "amount_cents"})
        return cls(
            invoice_id=_int(payload, "invoice_id", required=True, minimum=1),
            amount_cents=_int(payload, "amount_cents", minimum=1),
        )


@dataclass(frozen=True)
class RefundRequest:
    payment_id: int
    amount_cents: int | None = None
    reason: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "RefundRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"payment_id", "amount_cents", "reason"})
        return cls(
            payment_id=_int(payload, "payment_id", required=True, minimum=1),
            amount_cents=_int(payload, "amount_cents", minimum=1),
            reason=_str(payload, "reason"),
        )


@dataclass(frozen=True)
class ApplyInvoicePaymentRequest:
    amount_cents: int
    note: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "ApplyInvoicePaymentRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"amount_cents", "note"})
        return cls(
            amount_cents=_int(payload, "amount_cents", required=True),
            note=_str(payload, "note"),
        )


@dataclass(frozen=True)
class RestockRequest:
    product_id: int
    quantity: int
    reason: str | None = None
    reference: str | None = None
    performed_by: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "RestockRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"product_id", "quantity", "reason", "reference", "performed_by"})
        return cls(
            product_id=_int(payload, "product_id", required=True, minimum=1),
            quantity=_int(payload, "quantity", required=True, minimum=1),
            reason=_str(payload, "reason"),
            reference=_str(payload, "reference", max_length=64),
            performed_by=_str(payload, "performed_by", max_length=128),
        )


@dataclass(frozen=True)
class AdjustStockRequest:
    product_id: int
    quantity_delta: int
    reason: str
    performed_by: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "AdjustStockRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"product_id", "quantity_delta", "reason", "performed_by"})
        delta = _int(payload, "quantity_delta", required=True)
        if delta == 0:
            raise ValidationError("quantity_delta must not be zero")
        return cls(
            product_id=_int(payload, "product_id", required=True, minimum=1),
            quantity_delta=delta,
            reason=_str(payload, "reason", required=True),
            performed_by=_str(payload, "performed_by", max_length=128),
        )


@dataclass(frozen=True)
class CancelRequest:
    reason: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "CancelRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"reason"})
        return cls(reason=_str(payload, "reason"))


@dataclass(frozen=True)
class IssueInvoiceRequest:
    due_in_days: int | None = None
    notes: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "IssueInvoiceRequest":
        payload = _require_object(payload)
        _reject_unknown(payload, {"due_in_days", "notes"})
        return cls(
            due_in_days=_int(payload, "due_in_days", minimum=0),
            notes=_str(payload, "notes", max_length=2000),
        )
