# Overview: Service-layer access to the append-only inventory transaction log.

"""
Inventory Transaction Log

Every stock change made by ProductService writes exactly one row here in
the same database transaction. The log has no update or delete operation;
corrections are new ADJUSTMENT rows.
"""

from __future__ import annotations

from datetime import datetime

from ..errors import ValidationError
from ..models import InventoryTransaction
from ..models.inventory import TRANSACTION_TYPES, TX_ADJUSTMENT, TX_INBOUND, TX_OUTBOUND

MAX_LIST_LIMIT = 1000


class InventoryLogService:
    def __init__(self, session):
        self.session = session

    def record(
        self,
        *,
        product_id: int,
        tx_type: str,
        quantity: int,
        before_quantity: int,
        after_quantity: int,
        reason: str | None = None,
        reference: str | None = None,
        performed_by: str | None = None,
        extension_data: dict | None = None,
    ) -> InventoryTransaction:
        """
        Append one transaction row (flushed, not committed).

        Raises:
            ValidationError: unknown type, sign not matching the type, or
                after != before + quantity
        """
        if tx_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type: {tx_type}")
        if quantity == 0:
            raise ValidationError("quantity must not be zero")
        if tx_type == TX_INBOUND and quantity < 0:
            raise ValidationError("INBOUND quantity must be positive")
        if tx_type == TX_OUTBOUND and quantity > 0:
            raise ValidationError("OUTBOUND quantity must be negative")
        if after_quantity != before_quantity + quantity:
            raise ValidationError(
                "after_quantity must equal before_quantity + quantity",
                {"before": before_quantity, "quantity": quantity, "after": after_quantity},
            )

        tx = InventoryTransaction(
            product_id=product_id,
            type=tx_type,
            quantity=quantity,
            before_quantity=before_quantity,
            after_quantity=after_quantity,
            reason=reason,
            reference=reference,
            performed_by=performed_by,
            extension_data=extension_data,
        )
        self.session.add(tx)
        self.session.flush()
        return tx

    def list_transactions(
        self,
        *,
        product_id: int | None = None,
        tx_type: str | None = None,
        reference: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 200,
    ) -> list[InventoryTransaction]:
        """Newest first."""
        if tx_type is not None and tx_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type: {tx_type}")
        limit = max(1, min(limit, MAX_LIST_LIMIT))

        query = self.session.query(InventoryTransaction)
        if product_id is not None:
            query = query.filter(InventoryTransaction.product_id == product_id)
        if tx_type is not None:
            query = query.filter(InventoryTransaction.type == tx_type)
        if reference is not None:
            query = query.filter(InventoryTransaction.reference == reference)
        if start is not None:
            query = query.filter(InventoryTransaction.occurred_at >= start)
        if end is not None:
            query = query.filter(InventoryTransaction.occurred_at <= end)

        return (
            query.order_by(InventoryTransaction.occurred_at.desc(), InventoryTransaction.id.desc())
            .limit(limit)
            .all()
        )


__all__ = ["InventoryLogService", "TX_ADJUSTMENT", "TX_INBOUND", "TX_OUTBOUND"]
