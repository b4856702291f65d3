"""Account balance result models.

Balances are never stored; these are read-side aggregates over the ledger.
Sign convention: balance = completed credits - completed debits, so a
negative balance is money the member owes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from core.models.transaction import TransactionStatus, TransactionType


class BalanceHistoryItem(BaseModel):
    """A transaction annotated with the balance right after it applied."""

    id: UUID
    type: TransactionType
    amount: Decimal
    description: str
    created_at: datetime
    status: TransactionStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    running_balance: Decimal


class BalanceSummary(BaseModel):
    """Totals for one member's account."""

    user_id: UUID
    current_balance: Decimal
    total_debits: Decimal
    total_credits: Decimal
    pending_amount: Decimal
    last_transaction_date: datetime | None


class OutstandingBalance(BaseModel):
    """A member with a non-zero balance."""

    user_id: UUID
    balance: Decimal
    last_transaction_date: datetime | None


class StatementEntryType(str, Enum):
    """What a statement line records."""

    OPENING_BALANCE = "opening_balance"
    INVOICE = "invoice"
    PAYMENT = "payment"
    CREDIT_NOTE = "credit_note"
    REVERSAL = "reversal"
    ADJUSTMENT = "adjustment"


class AccountStatementEntry(BaseModel):
    """
    One statement line.

    amount is signed like the balance: credits positive, debits negative.
    balance is the running balance after this line.
    """

    date: datetime
    reference: str
    description: str
    amount: Decimal
    balance: Decimal
    entry_type: StatementEntryType
    entry_id: UUID | None = None


class AccountStatement(BaseModel):
    """A member's completed ledger entries in date order with running balances."""

    user_id: UUID
    opening_balance: Decimal
    closing_balance: Decimal
    entries: list[AccountStatementEntry] = Field(default_factory=list)
