"""Credit note domain models.

A billed invoice is never edited to lower what a member owes. A credit note
records the correction instead: its lines mirror invoice lines, each rounded
to cents, and applying it credits the member's account for its total.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class CreditNoteStatus(str, Enum):
    """Credit note lifecycle status."""

    DRAFT = "draft"
    APPLIED = "applied"
    CANCELLED = "cancelled"


class CreditNoteItemCreate(BaseModel):
    """One line of a new credit note."""

    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(Decimal("1"), gt=0, max_digits=20, decimal_places=6)
    unit_price: Decimal = Field(..., ge=0, max_digits=20, decimal_places=6)
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=1, decimal_places=4)
    original_invoice_item_id: UUID | None = None


class CreditNoteCreate(BaseModel):
    """Data required to raise a credit note against a billed invoice."""

    original_invoice_id: UUID
    user_id: UUID
    reason: str = Field(..., min_length=1, max_length=500)
    notes: str | None = Field(None, max_length=2000)
    items: list[CreditNoteItemCreate] = Field(..., min_length=1)


class CreditNoteUpdate(BaseModel):
    """Fields that can change while a credit note is still a draft."""

    reason: str | None = Field(None, min_length=1, max_length=500)
    notes: str | None = Field(None, max_length=2000)


class CreditNoteLine(BaseModel):
    """Calculated amounts for one credit note line, each rounded to cents."""

    amount: Decimal
    tax_amount: Decimal
    line_total: Decimal


class CreditNoteItem(BaseModel):
    """Full credit note line as stored."""

    id: UUID
    credit_note_id: UUID
    original_invoice_item_id: UUID | None = None
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}


class CreditNote(BaseModel):
    """Full credit note as stored, with its live lines when loaded."""

    id: UUID
    credit_note_number: str
    original_invoice_id: UUID
    user_id: UUID
    reason: str
    status: CreditNoteStatus
    issue_date: datetime
    applied_date: datetime | None = None
    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal
    notes: str | None = None
    created_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    deleted_by: UUID | None = None
    items: list[CreditNoteItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @property
    def is_draft(self) -> bool:
        return self.status == CreditNoteStatus.DRAFT


class CreditNoteApplication(BaseModel):
    """Outcome of applying a credit note to the member's account."""

    credit_note_id: UUID
    credit_note_number: str
    transaction_id: UUID
    amount_credited: Decimal
    new_balance: Decimal
    applied_date: datetime
