# Overview: ORM guards that keep audit and history rows append-only.

from __future__ import annotations

from sqlalchemy import event

from ..errors import ImmutableRecordError
from .inventory import InventoryTransaction
from .invoices import InvoiceTimelineEntry
from .orders import OrderTimelineEntry
from .payments import PaymentWebhookEvent

APPEND_ONLY_MODELS = (
    InventoryTransaction,
    OrderTimelineEntry,
    InvoiceTimelineEntry,
    PaymentWebhookEvent,
)

_registered = False


def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} rows are append-only",
        {"id": target.id, "operation": "update"},
    )


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} rows are append-only",
        {"id": target.id, "operation": "delete"},
    )


def register_immutability_listeners() -> None:
    """Attach before_update/before_delete guards once per process."""
    global _registered
    if _registered:
        return
    for model in APPEND_ONLY_MODELS:
        event.listen(model, "before_update", _reject_update)
        event.listen(model, "before_delete", _reject_delete)
    _registered = True
