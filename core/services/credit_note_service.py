"""
Credit notes: corrections to invoices that have already been billed.

A billed invoice's debit is never edited down to fix a mistake. Staff raise
a credit note against the invoice instead. It starts as a draft that can be
reworded or withdrawn (soft deleted). Applying it books a credit for its total
on the member's account and marks it applied, both in one unit of work, after
which it is final.

Line amounts are rounded to cents per line, and the note's totals are sums of
the rounded lines.
"""

import logging
from typing import Any, Iterable, Mapping
from uuid import UUID, uuid4

import psycopg2

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditAction, AuditLogger, compute_changes
from core.config import LedgerConfig
from core.event_bus import EventBus
from core.events import CreditNoteApplied
from core.exceptions import LedgerDataError
from core.models import (
    CreditNote,
    CreditNoteApplication,
    CreditNoteCreate,
    CreditNoteCreditData,
    CreditNoteItem,
    CreditNoteLine,
    CreditNoteStatus,
    CreditNoteUpdate,
    InvoiceStatus,
)
from core.money import ZERO, InvoiceTotals, calculate_item_amounts, round_money, to_decimal
from core.services.invoice_service import InvoiceService
from core.services.transaction_service import TransactionService
from utils.actor_context import peek_current_actor_id
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

Executor = PostgresClient | PostgresTransaction


def calculate_line_item(quantity: Any, unit_price: Any, tax_rate: Any) -> CreditNoteLine:
    """
    Amounts for one credit note line.

    amount = quantity * unit_price, tax_amount = amount * tax_rate and
    line_total = amount + tax_amount, each rounded to cents.
    """
    calculated = calculate_item_amounts(quantity, unit_price, tax_rate)
    return CreditNoteLine(
        amount=round_money(calculated.amount),
        tax_amount=round_money(calculated.tax_amount),
        line_total=round_money(calculated.line_total),
    )


def calculate_totals(lines: Iterable[CreditNoteLine | Mapping[str, Any]]) -> InvoiceTotals:
    """Sum rounded lines into subtotal, tax_total and total_amount."""
    subtotal = ZERO
    tax_total = ZERO
    total_amount = ZERO

    for line in lines:
        if not isinstance(line, Mapping):
            line = line.model_dump()
        subtotal += to_decimal(line.get("amount"))
        tax_total += to_decimal(line.get("tax_amount"))
        total_amount += to_decimal(line.get("line_total"))

    return InvoiceTotals(
        subtotal=round_money(subtotal),
        tax_total=round_money(tax_total),
        total_amount=round_money(total_amount),
    )


class CreditNoteService:
    """Service for credit note operations."""

    calculate_line_item = staticmethod(calculate_line_item)
    calculate_totals = staticmethod(calculate_totals)

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        transactions: TransactionService,
        invoices: InvoiceService,
        config: LedgerConfig | None = None
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.transactions = transactions
        self.invoices = invoices
        self.config = config or LedgerConfig()

    # =========================================================================
    # NUMBERING
    # =========================================================================

    def generate_credit_note_number(self, db: Executor | None = None) -> str:
        """
        Allocate the next number, {PREFIX}-{YYYY-MM}-{NNNN}.

        Shares the invoice numbering function; the counter is kept per prefix.

        Raises:
            LedgerDataError: If allocation fails
        """
        prefix = self.config.credit_note_prefix

        try:
            number = (db or self.postgres).execute_scalar(
                "SELECT generate_invoice_number_with_prefix(%s, %s)",
                (prefix, self.config.invoice_sequence_padding)
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to generate credit note number: {e}") from e

        if not number:
            raise LedgerDataError(f"Failed to generate credit note number: no number for prefix {prefix}")

        return number

    # =========================================================================
    # READS
    # =========================================================================

    def get_by_id(self, credit_note_id: UUID, db: Executor | None = None) -> CreditNote | None:
        """
        Get a credit note with its live lines.

        Returns:
            CreditNote if found and not deleted, None otherwise.
        """
        db = db or self.postgres
        row = db.execute_single(
            "SELECT * FROM credit_notes WHERE id = %s AND deleted_at IS NULL",
            (credit_note_id,)
        )

        if row is None:
            return None

        return CreditNote.model_validate({**row, "items": self._get_items(credit_note_id, db)})

    def _get_items(self, credit_note_id: UUID, db: Executor) -> list[CreditNoteItem]:
        rows = db.execute(
            """
            SELECT * FROM credit_note_items
            WHERE credit_note_id = %s AND deleted_at IS NULL
            ORDER BY created_at ASC
            """,
            (credit_note_id,)
        )
        return [CreditNoteItem.model_validate(row) for row in rows]

    def get_credit_notes_for_invoice(self, invoice_id: UUID) -> list[CreditNote]:
        """Credit notes raised against an invoice, newest first, without lines."""
        rows = self.postgres.execute(
            """
            SELECT * FROM credit_notes
            WHERE original_invoice_id = %s AND deleted_at IS NULL
            ORDER BY created_at DESC
            """,
            (invoice_id,)
        )
        return [CreditNote.model_validate(row) for row in rows]

    def _get_for_update(self, credit_note_id: UUID, db: Executor) -> CreditNote:
        row = db.execute_single(
            "SELECT * FROM credit_notes WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
            (credit_note_id,)
        )
        if row is None:
            raise ValueError(f"Credit note {credit_note_id} not found")

        return CreditNote.model_validate(row)

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_credit_note(self, data: CreditNoteCreate) -> CreditNote:
        """
        Raise a draft credit note against a billed invoice.

        A draft invoice is edited directly instead, and the note must belong
        to the invoice's member.

        Returns:
            Created credit note in DRAFT status, with its lines

        Raises:
            ValueError: If the invoice is not found, still a draft, or owned by another member
            LedgerDataError: If numbering fails
        """
        lines = [
            (item, calculate_line_item(item.quantity, item.unit_price, item.tax_rate))
            for item in data.items
        ]
        totals = calculate_totals(line for _, line in lines)

        credit_note_id = uuid4()
        now = now_utc()

        with self.postgres.transaction() as tx:
            invoice = self.invoices.get_by_id(data.original_invoice_id, db=tx)
            if invoice is None:
                raise ValueError(f"Invoice {data.original_invoice_id} not found")
            if invoice.status == InvoiceStatus.DRAFT:
                raise ValueError(
                    f"Invoice {invoice.id} is a draft; edit the invoice instead of raising a credit note"
                )
            if invoice.user_id != data.user_id:
                raise ValueError(f"User {data.user_id} does not own invoice {invoice.id}")

            number = self.generate_credit_note_number(db=tx)

            row = tx.execute_returning(
                """
                INSERT INTO credit_notes (
                    id, credit_note_number, original_invoice_id, user_id, reason,
                    status, issue_date, subtotal, tax_total, total_amount,
                    notes, created_by, created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s,
                    %s, %s, %s, %s
                )
                RETURNING *
                """,
                (
                    credit_note_id, number, invoice.id, data.user_id, data.reason,
                    CreditNoteStatus.DRAFT.value, now,
                    totals.subtotal, totals.tax_total, totals.total_amount,
                    data.notes, peek_current_actor_id(), now, now
                )
            )[0]

            items = []
            for item, line in lines:
                item_row = tx.execute_returning(
                    """
                    INSERT INTO credit_note_items (
                        id, credit_note_id, original_invoice_item_id, description,
                        quantity, unit_price, tax_rate,
                        amount, tax_amount, line_total,
                        created_at, updated_at
                    ) VALUES (
                        %s, %s, %s, %s,
                        %s, %s, %s,
                        %s, %s, %s,
                        %s, %s
                    )
                    RETURNING *
                    """,
                    (
                        uuid4(), credit_note_id, item.original_invoice_item_id, item.description,
                        item.quantity, item.unit_price, item.tax_rate,
                        line.amount, line.tax_amount, line.line_total,
                        now, now
                    )
                )[0]
                items.append(CreditNoteItem.model_validate(item_row))

            credit_note = CreditNote.model_validate({**row, "items": items})

            self.audit.log_change(
                entity_type="credit_note",
                entity_id=credit_note.id,
                action=AuditAction.CREATE,
                changes={"created": credit_note.model_dump(mode="json")},
                db=tx
            )

        logger.info(
            f"Created credit note {credit_note.credit_note_number} for invoice "
            f"{invoice.invoice_number}: {credit_note.total_amount}"
        )
        return credit_note

    # =========================================================================
    # UPDATE
    # =========================================================================

    def update_draft_credit_note(self, credit_note_id: UUID, data: CreditNoteUpdate) -> CreditNote:
        """
        Reword a draft credit note.

        Raises:
            ValueError: If not found or no longer a draft
        """
        updates = data.model_dump(exclude_none=True)

        with self.postgres.transaction() as tx:
            current = self._get_for_update(credit_note_id, tx)
            if not current.is_draft:
                raise ValueError(
                    f"Credit note {current.credit_note_number} is {current.status.value}; "
                    f"only drafts can be updated"
                )

            if not updates:
                return current

            set_parts = []
            params = []
            for field, value in updates.items():
                set_parts.append(f"{field} = %s")
                params.append(value)

            set_parts.append("updated_at = %s")
            params.append(now_utc())
            params.append(credit_note_id)

            row = tx.execute_returning(
                f"""
                UPDATE credit_notes
                SET {', '.join(set_parts)}
                WHERE id = %s
                RETURNING *
                """,
                tuple(params)
            )[0]

            updated = CreditNote.model_validate(row)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="credit_note",
                    entity_id=credit_note_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    db=tx
                )

        return updated

    # =========================================================================
    # APPLY
    # =========================================================================

    def apply_credit_note(self, credit_note_id: UUID) -> CreditNoteApplication:
        """
        Credit the member's account with a draft credit note's total.

        The ledger credit and the status change commit together. The credit
        is tagged credit_note and carries the note's id, number and invoice.

        Returns:
            Application outcome with the member's balance after the credit

        Raises:
            ValueError: If not found, not a draft, or the total is not positive
            LedgerDataError: If the ledger write fails
        """
        with self.postgres.transaction() as tx:
            current = self._get_for_update(credit_note_id, tx)
            if not current.is_draft:
                raise ValueError(
                    f"Credit note {current.credit_note_number} is {current.status.value}, cannot apply"
                )
            if current.total_amount <= ZERO:
                raise ValueError(
                    f"Credit note {current.credit_note_number} total must be positive, "
                    f"got {current.total_amount}"
                )

            transaction_id = self.transactions.create_credit_note_credit(
                CreditNoteCreditData(
                    user_id=current.user_id,
                    amount=current.total_amount,
                    credit_note_id=current.id,
                    credit_note_number=current.credit_note_number,
                    invoice_id=current.original_invoice_id,
                ),
                db=tx
            )

            now = now_utc()
            row = tx.execute_returning(
                """
                UPDATE credit_notes
                SET status = %s, applied_date = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (CreditNoteStatus.APPLIED.value, now, now, credit_note_id)
            )[0]

            applied = CreditNote.model_validate(row)

            self.audit.log_change(
                entity_type="credit_note",
                entity_id=credit_note_id,
                action=AuditAction.UPDATE,
                changes={
                    "status": {"old": current.status.value, "new": applied.status.value},
                    "transaction_id": str(transaction_id),
                },
                db=tx
            )

        logger.info(
            f"Applied credit note {applied.credit_note_number}: credited {applied.total_amount} "
            f"to user {applied.user_id} ({transaction_id})"
        )
        self.event_bus.publish(CreditNoteApplied.create(applied, transaction_id))

        return CreditNoteApplication(
            credit_note_id=applied.id,
            credit_note_number=applied.credit_note_number,
            transaction_id=transaction_id,
            amount_credited=applied.total_amount,
            new_balance=self.transactions.get_user_account_balance(applied.user_id),
            applied_date=applied.applied_date,
        )

    # =========================================================================
    # DELETE
    # =========================================================================

    def soft_delete_credit_note(self, credit_note_id: UUID, reason: str = "User initiated deletion") -> bool:
        """
        Withdraw a draft credit note and its lines.

        Returns:
            True if deleted, False if not found

        Raises:
            ValueError: If the credit note is no longer a draft
        """
        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                "SELECT * FROM credit_notes WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                (credit_note_id,)
            )
            if row is None:
                return False

            current = CreditNote.model_validate(row)
            if not current.is_draft:
                raise ValueError(
                    f"Credit note {current.credit_note_number} is {current.status.value}; "
                    f"only drafts can be deleted"
                )

            now = now_utc()
            deleted_by = peek_current_actor_id()

            items = tx.execute_returning(
                """
                UPDATE credit_note_items
                SET deleted_at = %s, deleted_by = %s, updated_at = %s
                WHERE credit_note_id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (now, deleted_by, now, credit_note_id)
            )
            tx.execute_returning(
                """
                UPDATE credit_notes
                SET deleted_at = %s, deleted_by = %s, updated_at = %s
                WHERE id = %s
                RETURNING id
                """,
                (now, deleted_by, now, credit_note_id)
            )

            self.audit.log_change(
                entity_type="credit_note",
                entity_id=credit_note_id,
                action=AuditAction.DELETE,
                changes={
                    "deleted": current.model_dump(mode="json"),
                    "reason": reason,
                    "items_deleted": len(items),
                },
                db=tx
            )

        logger.info(f"Deleted credit note {current.credit_note_number} ({reason})")
        return True
