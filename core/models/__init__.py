"""Core domain models."""

from core.models.invoice import (
    Invoice, InvoiceCreate, InvoiceStatus, InvoiceTotalsSync,
    BILLED_STATUSES, UNBILLED_STATUSES,
)
from core.models.invoice_item import InvoiceItem, InvoiceItemCreate, InvoiceItemUpdate
from core.models.transaction import (
    Transaction, TransactionType, TransactionStatus, LedgerEntryKind,
    InvoiceDebitData, PaymentCreditData, CreditNoteCreditData,
)
from core.models.payment import Payment, PaymentCreate
from core.models.credit_note import (
    CreditNote, CreditNoteCreate, CreditNoteUpdate, CreditNoteStatus,
    CreditNoteItem, CreditNoteItemCreate, CreditNoteLine, CreditNoteApplication,
)
from core.models.balance import (
    BalanceHistoryItem, BalanceSummary, OutstandingBalance,
    AccountStatement, AccountStatementEntry, StatementEntryType,
)

__all__ = [
    # Invoice
    "Invoice", "InvoiceCreate", "InvoiceStatus", "InvoiceTotalsSync",
    "BILLED_STATUSES", "UNBILLED_STATUSES",
    # InvoiceItem
    "InvoiceItem", "InvoiceItemCreate", "InvoiceItemUpdate",
    # Transaction
    "Transaction", "TransactionType", "TransactionStatus", "LedgerEntryKind",
    "InvoiceDebitData", "PaymentCreditData", "CreditNoteCreditData",
    # Payment
    "Payment", "PaymentCreate",
    # CreditNote
    "CreditNote", "CreditNoteCreate", "CreditNoteUpdate", "CreditNoteStatus",
    "CreditNoteItem", "CreditNoteItemCreate", "CreditNoteLine", "CreditNoteApplication",
    # Balance
    "BalanceHistoryItem", "BalanceSummary", "OutstandingBalance",
    "AccountStatement", "AccountStatementEntry", "StatementEntryType",
]
