# Overview: Service-layer operations for the product ledger and stock movements.

"""
Product Ledger

STOCK SAFETY:
Stock is never read-then-written. Every change is a single conditional
UPDATE; for decrements the WHERE clause carries stock_quantity >= q and
is_active, so two concurrent orders can never both take the last units.
Zero affected rows is diagnosed into a specific error afterwards.

TRANSACTIONS:
reserve_stock/release_stock only flush; the caller (order placement,
cancellation) commits. restock/adjust_stock/catalog writes are complete
units of work and commit themselves.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConflictError,
    InsufficientStockError,
    OutOfStockError,
    ProductInactiveError,
    ProductNotFoundError,
    ValidationError,
)
from ..models import Product
from ..models.inventory import PRODUCT_CATEGORIES, TX_ADJUSTMENT, TX_INBOUND
from .concurrency import run_with_retry
from .inventory_service import InventoryLogService

logger = logging.getLogger(__name__)

INIT_STOCK_REFERENCE = "INIT-STOCK"


class ProductService:
    def __init__(self, session, inventory_log: InventoryLogService, *, default_tax_rate_bps: int = 1500):
        self.session = session
        self.inventory_log = inventory_log
        self.default_tax_rate_bps = default_tax_rate_bps

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get(self, product_id: int) -> Product:
        product = self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError("Product not found", {"product_id": product_id})
        return product

    def get_available(self, product_id: int) -> Product:
        product = self.get(product_id)
        if not product.is_active:
            raise ProductInactiveError(
                f"Product {product.name} is not available", {"product_id": product_id}
            )
        return product

    def list_products(
        self,
        *,
        category: str | None = None,
        search: str | None = None,
        active: str = "true",
        low_stock: bool = False,
    ) -> list[Product]:
        """
        active: "true" (default), "false" or "all".
        """
        if category is not None and category not in PRODUCT_CATEGORIES:
            raise ValidationError(f"category must be one of {', '.join(PRODUCT_CATEGORIES)}")
        if active not in ("true", "false", "all"):
            raise ValidationError("active must be true, false or all")

        query = self.session.query(Product)
        if active != "all":
            query = query.filter(Product.is_active.is_(active == "true"))
        if category:
            query = query.filter(Product.category == category)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Product.name.ilike(pattern),
                    Product.sku.ilike(pattern),
                    Product.description.ilike(pattern),
                )
            )
        if low_stock:
            query = query.filter(Product.stock_quantity <= Product.reorder_level)
        return query.order_by(Product.name.asc(), Product.id.asc()).all()

    def low_stock_report(self) -> list[Product]:
        """Active products at or below their reorder level, emptiest first."""
        return (
            self.session.query(Product)
            .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.reorder_level)
            .order_by(Product.stock_quantity.asc(), Product.name.asc())
            .all()
        )

    # =========================================================================
    # STOCK MOVEMENTS (caller commits)
    # =========================================================================

    def _current_stock(self, product_id: int) -> int:
        product = self.session.get(Product, product_id)
        self.session.refresh(product, attribute_names=["stock_quantity", "updated_at"])
        return product.stock_quantity

    def _diagnose_failed_reserve(self, product_id: int, quantity: int) -> None:
        row = self.session.execute(
            select(Product.name, Product.is_active, Product.stock_quantity).where(Product.id == product_id)
        ).first()
        if row is None:
            raise ProductNotFoundError("Product not found", {"product_id": product_id})
        name, is_active, available = row
        if not is_active:
            raise ProductInactiveError(f"Product {name} is not available", {"product_id": product_id})
        if available <= 0:
            raise OutOfStockError(
                f"{name} is out of stock",
                {"product_id": product_id, "available": 0, "requested": quantity},
            )
        raise InsufficientStockError(
            f"Insufficient stock for {name}: {available} available, {quantity} requested",
            {"product_id": product_id, "available": available, "requested": quantity},
        )

    def reserve_stock(self, product_id: int, quantity: int) -> tuple[int, int]:
        """
        Atomically decrement stock if enough is available.

        Returns:
            (before, after) stock quantities

        Raises:
            ValidationError, ProductNotFoundError, ProductInactiveError,
            OutOfStockError, InsufficientStockError
        """
        if quantity <= 0:
            raise ValidationError("quantity must be positive")

        stmt = (
            update(Product)
            .where(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.stock_quantity >= quantity,
            )
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self._diagnose_failed_reserve(product_id, quantity)

        after = self._current_stock(product_id)
        return after + quantity, after

    def release_stock(self, product_id: int, quantity: int) -> tuple[int, int]:
        """Atomically increment stock. Returns (before, after)."""
        if quantity <= 0:
            raise ValidationError("quantity must be positive")

        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise ProductNotFoundError("Product not found", {"product_id": product_id})

        after = self._current_stock(product_id)
        return after - quantity, after

    # =========================================================================
    # STOCK OPERATIONS (complete units of work)
    # =========================================================================

    def restock(
        self,
        product_id: int,
        quantity: int,
        *,
        reason: str | None = None,
        reference: str | None = None,
        performed_by: str | None = None,
    ):
        """Receive stock; logged as INBOUND."""
        def _op():
            self.get(product_id)
            before, after = self.release_stock(product_id, quantity)
            tx = self.inventory_log.record(
                product_id=product_id,
                tx_type=TX_INBOUND,
                quantity=quantity,
                before_quantity=before,
                after_quantity=after,
                reason=reason or "Restock",
                reference=reference,
                performed_by=performed_by,
            )
            self.session.commit()
            return tx

        return run_with_retry(self.session, _op)

    def adjust_stock(
        self,
        product_id: int,
        quantity_delta: int,
        *,
        reason: str,
        performed_by: str | None = None,
    ):
        """
        Manual correction (damage, count variance); logged as ADJUSTMENT.

        Negative deltas use the same guarded decrement as orders, so an
        adjustment can never take stock below zero.
        """
        if quantity_delta == 0:
            raise ValidationError("quantity_delta must not be zero")
        if not reason or not reason.strip():
            raise ValidationError("reason is required for adjustments")

        def _op():
            product = self.get(product_id)
            if quantity_delta > 0:
                before, after = self.release_stock(product_id, quantity_delta)
            else:
                before, after = self._guarded_decrement(product, -quantity_delta)
            tx = self.inventory_log.record(
                product_id=product_id,
                tx_type=TX_ADJUSTMENT,
                quantity=quantity_delta,
                before_quantity=before,
                after_quantity=after,
                reason=reason.strip(),
                performed_by=performed_by,
            )
            self.session.commit()
            return tx

        return run_with_retry(self.session, _op)

    def _guarded_decrement(self, product: Product, quantity: int) -> tuple[int, int]:
        # Adjustments may also correct stock on inactive products
        stmt = (
            update(Product)
            .where(Product.id == product.id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            available = self._current_stock(product.id)
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}: {available} available, {quantity} requested",
                {"product_id": product.id, "available": available, "requested": quantity},
            )
        after = self._current_stock(product.id)
        return after + quantity, after

    # =========================================================================
    # CATALOG
    # =========================================================================

    def create_product(self, patch: dict, *, performed_by: str | None = None) -> Product:
        """
        Create a product from a validated patch.

        Initial stock is recorded as an INBOUND INIT-STOCK transaction so the
        log always explains the full stock level.
        """
        def _op():
            data = dict(patch)
            initial_stock = data.pop("stock_quantity", None) or 0
            data.setdefault("tax_rate_bps", self.default_tax_rate_bps)

            if self.session.query(Product.id).filter_by(sku=data["sku"]).first():
                raise ConflictError(f"SKU already exists: {data['sku']}", {"sku": data["sku"]})

            product = Product(stock_quantity=initial_stock, **data)
            self.session.add(product)
            try:
                self.session.flush()
            except IntegrityError:
                self.session.rollback()
                raise ConflictError(f"SKU already exists: {data['sku']}", {"sku": data["sku"]})

            if initial_stock:
                self.inventory_log.record(
                    product_id=product.id,
                    tx_type=TX_INBOUND,
                    quantity=initial_stock,
                    before_quantity=0,
                    after_quantity=initial_stock,
                    reason="Initial stock",
                    reference=INIT_STOCK_REFERENCE,
                    performed_by=performed_by,
                )
            self.session.commit()
            logger.info("Created product %s (%s) with stock %d", product.id, product.sku, initial_stock)
            return product

        return run_with_retry(self.session, _op)

    def update_product(self, product_id: int, patch: dict) -> Product:
        """Apply a validated patch. Stock and SKU are not writable here."""
        if "stock_quantity" in patch:
            raise ValidationError("stock_quantity can only change through inventory operations")

        def _op():
            product = self.get(product_id)
            for key, value in patch.items():
                setattr(product, key, value)
            self.session.commit()
            return product

        return run_with_retry(self.session, _op)

    def deactivate_product(self, product_id: int) -> Product:
        """Soft delete: history keeps pointing at the row."""
        def _op():
            product = self.get(product_id)
            product.is_active = False
            self.session.commit()
            return product

        return run_with_retry(self.session, _op)
