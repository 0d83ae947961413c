from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp.context import get_correlation_id
from erp.crm.errors import NotFoundError
from erp.invoicing.models import Invoice, InvoiceItem


tracer = trace.get_tracer("erp.invoicing.client")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class DraftInvoiceLine:
    description: str
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    unit: str = "szt."


@dataclass(frozen=True)
class DraftInvoiceRequest:
    client_id: uuid.UUID
    currency: str
    vat_rate: Decimal
    payment_terms_days: int
    lines: list[DraftInvoiceLine]
    created_by: uuid.UUID
    notes: str | None = None
    issue_date: date | None = None


@dataclass(frozen=True)
class InvoiceRef:
    id: uuid.UUID
    number: str


class InvoicingClient(Protocol):
    def create_draft_invoice(self, request: DraftInvoiceRequest) -> InvoiceRef: ...

    def get_invoice(self, invoice_id: uuid.UUID) -> dict[str, Any]: ...


class StubInvoicingClient:
    """Writes draft invoices into the caller's session.

    Nothing is committed here; the CRM side owns the transaction so a failed
    conversion leaves no orphan invoice behind.
    """

    number_prefix = "FV"

    def __init__(self, session: Session):
        self.session = session

    def create_draft_invoice(self, request: DraftInvoiceRequest) -> InvoiceRef:
        with tracer.start_as_current_span("invoicing.create_draft_invoice") as span:
            span.set_attribute("client_id", str(request.client_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            issue_date = request.issue_date or date.today()

            invoice = Invoice(
                number=self._next_number(issue_date),
                client_id=request.client_id,
                status="draft",
                issue_date=issue_date,
                due_date=issue_date + timedelta(days=request.payment_terms_days),
                currency=request.currency,
                notes=request.notes,
                created_by=request.created_by,
            )
            self.session.add(invoice)
            self.session.flush()

            net_total = Decimal("0")
            vat_total = Decimal("0")
            for index, line in enumerate(request.lines):
                net = (line.unit_price * line.quantity).quantize(_CENT, rounding=ROUND_HALF_UP)
                vat = (net * request.vat_rate / Decimal("100")).quantize(_CENT, rounding=ROUND_HALF_UP)
                self.session.add(
                    InvoiceItem(
                        invoice_id=invoice.id,
                        position=index,
                        description=line.description,
                        quantity=line.quantity,
                        unit=line.unit,
                        unit_price=line.unit_price,
                        vat_rate=request.vat_rate,
                        net_amount=net,
                        vat_amount=vat,
                        gross_amount=net + vat,
                    )
                )
                net_total += net
                vat_total += vat

            invoice.net_total = net_total
            invoice.vat_total = vat_total
            invoice.gross_total = net_total + vat_total
            self.session.flush()

            span.set_attribute("invoice_id", str(invoice.id))
            span.set_attribute("invoice_number", invoice.number)
            return InvoiceRef(id=invoice.id, number=invoice.number)

    def get_invoice(self, invoice_id: uuid.UUID) -> dict[str, Any]:
        with tracer.start_as_current_span("invoicing.get_invoice") as span:
            span.set_attribute("invoice_id", str(invoice_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            row = self.session.get(Invoice, invoice_id)
            if row is None:
                raise NotFoundError("invoice not found")
            items = self.session.scalars(
                select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id).order_by(InvoiceItem.position)
            )
            return {
                "id": str(row.id),
                "number": row.number,
                "client_id": str(row.client_id),
                "status": row.status,
                "issue_date": row.issue_date,
                "due_date": row.due_date,
                "currency": row.currency,
                "net_total": row.net_total,
                "vat_total": row.vat_total,
                "gross_total": row.gross_total,
                "notes": row.notes,
                "items": [
                    {
                        "description": item.description,
                        "quantity": item.quantity,
                        "unit": item.unit,
                        "unit_price": item.unit_price,
                        "vat_rate": item.vat_rate,
                        "gross_amount": item.gross_amount,
                    }
                    for item in items
                ],
            }

    def _next_number(self, issue_date: date) -> str:
        prefix = f"{self.number_prefix}/{issue_date.year:04d}/{issue_date.month:02d}/"
        # suffixes are zero-padded, so the lexical max is the highest sequence
        last = self.session.scalar(
            select(func.max(Invoice.number)).where(Invoice.number.startswith(prefix, autoescape=True))
        )
        sequence = int(last.rsplit("/", 1)[1]) if last else 0
        return f"{prefix}{sequence + 1:04d}"
