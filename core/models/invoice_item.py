"""Invoice item domain models.

Quantities, unit prices and tax rates are Decimal. Stored items keep their
calculated amounts at full precision; rounding happens only on invoice totals.
Inputs are limited to the scale of their columns (6 places for quantity and
unit price, 4 for tax rate) so the stored amount always equals the stored
quantity times the stored price.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class InvoiceItemCreate(BaseModel):
    """
    Data required to add an item to an invoice.

    Quantity may be negative for refund lines. tax_rate defaults to the
    invoice's rate when omitted.
    """

    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(Decimal("1"), max_digits=20, decimal_places=6)
    unit_price: Decimal = Field(..., max_digits=20, decimal_places=6)
    tax_rate: Decimal | None = Field(None, ge=0, le=1, decimal_places=4)
    chargeable_id: UUID | None = None


class InvoiceItemUpdate(BaseModel):
    """Data that can be updated on an invoice item. All fields optional."""

    description: str | None = Field(None, min_length=1, max_length=500)
    quantity: Decimal | None = Field(None, max_digits=20, decimal_places=6)
    unit_price: Decimal | None = Field(None, max_digits=20, decimal_places=6)
    tax_rate: Decimal | None = Field(None, ge=0, le=1, decimal_places=4)


class InvoiceItem(BaseModel):
    """Full invoice item entity as stored."""

    id: UUID
    invoice_id: UUID
    chargeable_id: UUID | None = None
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    rate_inclusive: Decimal
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}
