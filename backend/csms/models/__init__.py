from .customers import Customer
from .inventory import Product, InventoryTransaction
from .documents import DocumentSequence
from .orders import Order, OrderLine, OrderTimelineEntry
from .invoices import Invoice, InvoiceLine, InvoiceTimelineEntry
from .payments import Payment, PaymentWebhookEvent

__all__ = [
    'Customer',
    'Product', 'InventoryTransaction',
    'DocumentSequence',
    'Order', 'OrderLine', 'OrderTimelineEntry',
    'Invoice', 'InvoiceLine', 'InvoiceTimelineEntry',
    'Payment', 'PaymentWebhookEvent',
]
