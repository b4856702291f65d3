"""
Domain events for the ledger.

Immutable event objects describing state changes that already committed.
Services publish after their unit of work succeeds, so handlers never see a
change that could still roll back.

Event Categories:
- InvoiceEvent: status transitions, invoice fully paid
- PaymentEvent: payment recorded, payment reversed
- TransactionEvent: ledger entry reversed
- CreditNoteApplied: credit note credited to the member
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class LedgerEvent:
    """Base class for all ledger domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(LedgerEvent):
    """Events related to invoice lifecycle."""
    pass


@dataclass(frozen=True)
class InvoiceStatusChanged(InvoiceEvent):
    """Invoice moved between statuses; ledger side effects already applied."""
    invoice: Any = None  # Invoice
    old_status: str = ""
    new_status: str = ""

    @classmethod
    def create(cls, invoice: Any, old_status: str, new_status: str) -> "InvoiceStatusChanged":
        return cls(invoice=invoice, old_status=old_status, new_status=new_status)


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    """Invoice became fully paid."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any) -> "InvoicePaid":
        return cls(invoice=invoice)


# =============================================================================
# PAYMENT EVENTS
# =============================================================================


@dataclass(frozen=True)
class PaymentEvent(LedgerEvent):
    """Events related to payments."""
    pass


@dataclass(frozen=True)
class PaymentRecorded(PaymentEvent):
    """Payment stored, credited to the member and applied to the invoice."""
    payment: Any = None  # Payment
    transaction_id: Any = None

    @classmethod
    def create(cls, payment: Any, transaction_id: Any) -> "PaymentRecorded":
        return cls(payment=payment, transaction_id=transaction_id)


@dataclass(frozen=True)
class PaymentReversed(PaymentEvent):
    """Payment's credit reversed and removed from the invoice."""
    payment: Any = None
    reversal_transaction_id: Any = None
    reason: str = ""

    @classmethod
    def create(cls, payment: Any, reversal_transaction_id: Any, reason: str) -> "PaymentReversed":
        return cls(payment=payment, reversal_transaction_id=reversal_transaction_id, reason=reason)


# =============================================================================
# TRANSACTION EVENTS
# =============================================================================


@dataclass(frozen=True)
class TransactionEvent(LedgerEvent):
    """Events related to ledger entries."""
    pass


@dataclass(frozen=True)
class TransactionReversed(TransactionEvent):
    """An offsetting entry was booked for an existing transaction."""
    user_id: Any = None
    transaction_id: Any = None
    reversal_transaction_id: Any = None
    reason: str = ""

    @classmethod
    def create(
        cls, user_id: Any, transaction_id: Any, reversal_transaction_id: Any, reason: str
    ) -> "TransactionReversed":
        return cls(
            user_id=user_id,
            transaction_id=transaction_id,
            reversal_transaction_id=reversal_transaction_id,
            reason=reason,
        )


# =============================================================================
# CREDIT NOTE EVENTS
# =============================================================================


@dataclass(frozen=True)
class CreditNoteApplied(LedgerEvent):
    """Credit note applied and its credit booked to the member's account."""
    credit_note: Any = None  # CreditNote
    transaction_id: Any = None

    @classmethod
    def create(cls, credit_note: Any, transaction_id: Any) -> "CreditNoteApplied":
        return cls(credit_note=credit_note, transaction_id=transaction_id)
