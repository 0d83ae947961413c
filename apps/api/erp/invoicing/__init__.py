from erp.invoicing.client import (
    DraftInvoiceLine,
    DraftInvoiceRequest,
    InvoiceRef,
    InvoicingClient,
    StubInvoicingClient,
)
from erp.invoicing.models import Invoice, InvoiceItem

__all__ = [
    "DraftInvoiceLine",
    "DraftInvoiceRequest",
    "InvoiceRef",
    "InvoicingClient",
    "StubInvoicingClient",
    "Invoice",
    "InvoiceItem",
]
