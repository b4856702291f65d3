"""Payment domain models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentCreate(BaseModel):
    """Data required to record a payment against an invoice."""

    invoice_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, max_length=50)
    payment_reference: str | None = Field(None, max_length=200)
    notes: str | None = Field(None, max_length=2000)


class Payment(BaseModel):
    """Full payment entity as stored."""

    id: UUID
    invoice_id: UUID
    user_id: UUID
    amount: Decimal
    payment_method: str
    payment_reference: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_reversed(self) -> bool:
        return bool((self.metadata or {}).get("reversal_transaction_id"))
