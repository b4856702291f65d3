"""Invoice domain models.

All amounts are Decimal. Stored totals are rounded to cents; balance_due is
always total_amount - total_paid.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


# Statuses under which the member owes the invoice and a debit should exist
BILLED_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.PAID, InvoiceStatus.OVERDUE})

# Statuses from which entering a billed status books the invoice debit
UNBILLED_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED})


class InvoiceCreate(BaseModel):
    """Data required to open a draft invoice for a member."""

    user_id: UUID
    booking_id: UUID | None = None
    due_date: datetime | None = None
    tax_rate: Decimal | None = Field(None, ge=0, le=1, decimal_places=4)
    notes: str | None = Field(None, max_length=2000)


class Invoice(BaseModel):
    """Full invoice entity as stored."""

    id: UUID
    invoice_number: str | None
    user_id: UUID
    booking_id: UUID | None = None
    status: InvoiceStatus
    subtotal: Decimal = Decimal("0")
    tax_rate: Decimal | None = None
    tax_total: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    balance_due: Decimal = Decimal("0")
    issue_date: datetime | None = None
    due_date: datetime | None = None
    paid_date: datetime | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_billed(self) -> bool:
        """Whether the member currently owes this invoice."""
        return self.status in BILLED_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID


class InvoiceTotalsSync(BaseModel):
    """Outcome of recomputing totals and syncing the invoice debit."""

    invoice_id: UUID
    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal
    balance_due: Decimal
    status: InvoiceStatus | None = None
    previous_status: InvoiceStatus | None = None
    transaction_created: bool = False
    transaction_updated: bool = False
    transaction_id: UUID | None = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status is not None and self.status != self.previous_status
