# Overview: Wires service objects around one database session and one payment gateway.

from __future__ import annotations

from dataclasses import dataclass

from .customer_service import CustomerService
from .document_service import DocumentNumberService
from .inventory_service import InventoryLogService
from .invoice_service import InvoiceService
from .order_service import OrderService
from .payment_service import PaymentService
from .product_service import ProductService


@dataclass
class Services:
    customers: CustomerService
    documents: DocumentNumberService
    inventory: InventoryLogService
    products: ProductService
    orders: OrderService
    invoices: InvoiceService
    payments: PaymentService


def build_services(session, gateway, config) -> Services:
    """
    Construct the service graph for a session.

    config is any mapping with the CSMS_* / INVOICE_* keys (Flask's
    app.config in the web process).
    """
    currency = config.get("CSMS_CURRENCY", "SAR")

    customers = CustomerService(session)
    documents = DocumentNumberService(session)
    inventory = InventoryLogService(session)
    products = ProductService(
        session,
        inventory,
        default_tax_rate_bps=config.get("DEFAULT_TAX_RATE_BPS", 1500),
    )
    orders = OrderService(
        session,
        products=products,
        inventory_log=inventory,
        customers=customers,
        documents=documents,
        currency=currency,
    )
    invoices = InvoiceService(
        session,
        orders=orders,
        documents=documents,
        payment_term_days=config.get("INVOICE_PAYMENT_TERM_DAYS", 30),
    )
    orders.invoices = invoices
    payments = PaymentService(
        session,
        gateway=gateway,
        orders=orders,
        invoices=invoices,
    )
    return Services(
        customers=customers,
        documents=documents,
        inventory=inventory,
        products=products,
        orders=orders,
        invoices=invoices,
        payments=payments,
    )
