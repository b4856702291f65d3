"""Ledger transaction domain models.

Transactions are append-only. Amounts are positive magnitudes; direction comes
from the type. A debit increases what a member owes, a credit decreases it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    """Direction of a ledger entry."""

    DEBIT = "debit"
    CREDIT = "credit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"

    @property
    def opposite(self) -> "TransactionType":
        """Type that offsets this one. Only debits and credits have an opposite."""
        if self is TransactionType.DEBIT:
            return TransactionType.CREDIT
        if self is TransactionType.CREDIT:
            return TransactionType.DEBIT
        raise ValueError(f"Transaction type '{self.value}' has no opposite")


class TransactionStatus(str, Enum):
    """Settlement status of a ledger entry."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class LedgerEntryKind(str, Enum):
    """Business origin of an entry, stored as metadata.transaction_type."""

    INVOICE_DEBIT = "invoice_debit"
    PAYMENT_CREDIT = "payment_credit"
    CREDIT_NOTE = "credit_note"
    REVERSAL = "reversal"
    ADJUSTMENT = "adjustment"


class InvoiceDebitData(BaseModel):
    """Input for booking an invoice against a member's account."""

    invoice_id: UUID
    invoice_number: str
    total_amount: Decimal
    user_id: UUID


class PaymentCreditData(BaseModel):
    """Input for crediting a member's account with a payment."""

    user_id: UUID
    amount: Decimal
    invoice_id: UUID
    invoice_number: str
    payment_id: UUID


class CreditNoteCreditData(BaseModel):
    """Input for crediting a member's account with an applied credit note."""

    user_id: UUID
    amount: Decimal
    credit_note_id: UUID
    credit_note_number: str
    invoice_id: UUID


class Transaction(BaseModel):
    """Full ledger transaction as stored."""

    id: UUID
    user_id: UUID
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    reference_number: str | None = None
    reversed_by: UUID | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def kind(self) -> LedgerEntryKind | None:
        """Business origin from metadata, None for untagged entries."""
        value = (self.metadata or {}).get("transaction_type")
        try:
            return LedgerEntryKind(value) if value else None
        except ValueError:
            return None

    @property
    def is_reversal(self) -> bool:
        return "reversal_of" in (self.metadata or {})

    @property
    def is_reversed(self) -> bool:
        """Whether an offsetting entry has been booked against this one."""
        return self.reversed_by is not None
