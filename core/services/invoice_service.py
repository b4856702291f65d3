"""
Invoice lifecycle: totals, payments, status and the ledger entries they drive.

Status is derived, not stepped through a transition table. calculate_invoice_status
is re-evaluated whenever payments or totals change, and "overdue" recovers on
its own once the invoice is paid.

Moving an invoice into a billed status (pending, paid, overdue) from draft or
cancelled books its debit. Cancelling a billed invoice reverses that debit.
The invoice row update and the ledger write always share one unit of work:
the row is locked with SELECT ... FOR UPDATE, and both commit or neither does.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import psycopg2

from clients.postgres_client import PostgresClient, PostgresTransaction, unit_of_work
from core.audit import AuditLogger, AuditAction, compute_changes
from core.config import LedgerConfig
from core.event_bus import EventBus
from core.events import InvoicePaid, InvoiceStatusChanged
from core.exceptions import InvalidStatusTransitionError, LedgerDataError
from core.models import (
    BILLED_STATUSES,
    UNBILLED_STATUSES,
    Invoice,
    InvoiceCreate,
    InvoiceDebitData,
    InvoiceStatus,
    InvoiceTotalsSync,
    Transaction,
)
from core.money import ZERO, calculate_invoice_totals, round_money, to_decimal
from core.services.settings_service import LedgerSettings, validate_invoice_prefix
from core.services.transaction_service import TransactionService
from utils.timezone import days_from_now, is_past, now_utc

logger = logging.getLogger(__name__)

Executor = PostgresClient | PostgresTransaction

# Statuses whose clock-relative form can drift between pending and overdue
_OPEN_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.OVERDUE})


def calculate_invoice_status(
    total_amount: Any,
    total_paid: Any,
    due_date: datetime | date | None,
    paid_date: datetime | None
) -> InvoiceStatus:
    """
    Derive an invoice's status from its payment state and the clock.

    1. Paid when paid_date is set, or when something is owed and total_paid
       covers it (overpayment is still paid).
    2. Partially paid: overdue once due_date has passed, else pending.
    3. Unpaid: overdue once due_date has passed, else pending when there is
       something to pay, else draft.

    A naive due_date is read as UTC.
    """
    total = to_decimal(total_amount)
    paid = to_decimal(total_paid)

    if isinstance(due_date, datetime) and due_date.tzinfo is None:
        due_date = due_date.replace(tzinfo=timezone.utc)

    if paid_date is not None or (total > ZERO and paid >= total):
        return InvoiceStatus.PAID

    if is_past(due_date):
        return InvoiceStatus.OVERDUE

    if paid > ZERO or total > ZERO:
        return InvoiceStatus.PENDING

    return InvoiceStatus.DRAFT


def format_fallback_invoice_number(prefix: str, invoice_id: UUID) -> str:
    """Number for a billed invoice that never got a sequential one."""
    return f"{prefix}-{invoice_id}"


class InvoiceService:
    """Service for invoice lifecycle operations."""

    calculate_invoice_status = staticmethod(calculate_invoice_status)

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        transactions: TransactionService,
        settings: LedgerSettings,
        config: LedgerConfig | None = None
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.transactions = transactions
        self.settings = settings
        self.config = config or LedgerConfig()

    # =========================================================================
    # NUMBERING
    # =========================================================================

    def get_invoice_prefix(self) -> str:
        """Configured prefix, or the default if the configured one is not ^[A-Z0-9]+$."""
        return validate_invoice_prefix(
            self.settings.get_invoice_prefix(),
            self.config.default_invoice_prefix
        )

    def generate_invoice_number(self, db: Executor | None = None) -> str:
        """
        Allocate the next number, {PREFIX}-{YYYY-MM}-{NNNN}.

        The counter is per prefix and month, serialized by the database.

        Raises:
            LedgerDataError: If allocation fails
        """
        prefix = self.get_invoice_prefix()

        try:
            number = (db or self.postgres).execute_scalar(
                "SELECT generate_invoice_number_with_prefix(%s, %s)",
                (prefix, self.config.invoice_sequence_padding)
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to generate invoice number: {e}") from e

        if not number:
            raise LedgerDataError(f"Failed to generate invoice number: no number for prefix {prefix}")

        return number

    # =========================================================================
    # READS
    # =========================================================================

    def get_by_id(self, invoice_id: UUID, db: Executor | None = None) -> Invoice | None:
        """
        Get invoice by ID.

        Returns:
            Invoice if found and not deleted, None otherwise.
        """
        row = (db or self.postgres).execute_single(
            "SELECT * FROM invoices WHERE id = %s AND deleted_at IS NULL",
            (invoice_id,)
        )

        if row is None:
            return None

        return Invoice.model_validate(row)

    def list_for_user(
        self,
        user_id: UUID,
        status: InvoiceStatus | None = None,
        limit: int = 50
    ) -> list[Invoice]:
        """Member's invoices, newest first, optionally filtered by status."""
        if status is not None:
            rows = self.postgres.execute(
                """
                SELECT * FROM invoices
                WHERE user_id = %s AND status = %s AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, InvoiceStatus(status).value, limit)
            )
        else:
            rows = self.postgres.execute(
                """
                SELECT * FROM invoices
                WHERE user_id = %s AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit)
            )

        return [Invoice.model_validate(row) for row in rows]

    def list_outstanding(self, user_id: UUID | None = None) -> list[Invoice]:
        """Pending and overdue invoices with money still due, earliest due first."""
        query = """
            SELECT * FROM invoices
            WHERE status IN ('pending', 'overdue')
              AND balance_due > 0
              AND deleted_at IS NULL
        """
        params: tuple = ()
        if user_id is not None:
            query += " AND user_id = %s"
            params = (user_id,)
        query += " ORDER BY due_date ASC NULLS LAST"

        rows = self.postgres.execute(query, params)
        return [Invoice.model_validate(row) for row in rows]

    def get_invoice_transactions(self, invoice_id: UUID) -> list[Transaction]:
        """Ledger entries tagged with the invoice, newest first."""
        return self.transactions.get_invoice_transactions(invoice_id)

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(self, data: InvoiceCreate) -> Invoice:
        """
        Open a draft invoice for a member.

        Totals start at zero and grow as items are added. The tax rate falls
        back to the member's override, then the organization default. The due
        date falls back to the configured number of days from now.

        Returns:
            Created invoice in DRAFT status
        """
        tax_rate = data.tax_rate
        if tax_rate is None:
            tax_rate = self.settings.get_tax_rate_for_user(data.user_id)

        due_date = data.due_date
        if due_date is None:
            due_date = days_from_now(self.settings.get_default_invoice_due_days())

        invoice_id = uuid4()
        now = now_utc()

        with self.postgres.transaction() as tx:
            invoice_number = self.generate_invoice_number(db=tx)

            row = tx.execute_returning(
                """
                INSERT INTO invoices (
                    id, invoice_number, user_id, booking_id, status,
                    subtotal, tax_rate, tax_total, total_amount, total_paid, balance_due,
                    due_date, notes, created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s
                )
                RETURNING *
                """,
                (
                    invoice_id, invoice_number, data.user_id, data.booking_id,
                    InvoiceStatus.DRAFT.value,
                    ZERO, tax_rate, ZERO, ZERO, ZERO, ZERO,
                    due_date, data.notes, now, now
                )
            )[0]

            invoice = Invoice.model_validate(row)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=AuditAction.CREATE,
                changes={"created": invoice.model_dump(mode="json")},
                db=tx
            )

        logger.info(f"Created invoice {invoice.invoice_number} for user {invoice.user_id}")
        return invoice

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _get_for_update(self, invoice_id: UUID, db: Executor) -> Invoice:
        """Lock the invoice row for the rest of the unit of work."""
        row = db.execute_single(
            "SELECT * FROM invoices WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
            (invoice_id,)
        )
        if row is None:
            raise ValueError(f"Invoice {invoice_id} not found")

        return Invoice.model_validate(row)

    def _update_row(self, current: Invoice, updates: dict[str, Any], db: Executor) -> Invoice:
        """Write changed columns and audit the difference."""
        if not updates:
            return current

        set_parts = []
        params = []
        for field, value in updates.items():
            set_parts.append(f"{field} = %s")
            params.append(value.value if isinstance(value, InvoiceStatus) else value)

        set_parts.append("updated_at = %s")
        params.append(now_utc())
        params.append(current.id)

        row = db.execute_returning(
            f"""
            UPDATE invoices
            SET {', '.join(set_parts)}
            WHERE id = %s
            RETURNING *
            """,
            tuple(params)
        )[0]

        updated = Invoice.model_validate(row)

        changes = compute_changes(
            current.model_dump(mode="json"),
            updated.model_dump(mode="json")
        )
        if changes:
            self.audit.log_change(
                entity_type="invoice",
                entity_id=current.id,
                action=AuditAction.UPDATE,
                changes=changes,
                db=db
            )

        return updated

    def _book_debit(self, invoice: Invoice, db: Executor) -> UUID | None:
        """Create-or-reuse the invoice debit. Nothing is booked for a zero total."""
        if invoice.total_amount <= ZERO:
            logger.warning(
                f"Invoice {invoice.id} billed with total {invoice.total_amount}, no debit booked"
            )
            return None

        invoice_number = invoice.invoice_number or format_fallback_invoice_number(
            self.get_invoice_prefix(), invoice.id
        )

        return self.transactions.create_invoice_debit(
            InvoiceDebitData(
                invoice_id=invoice.id,
                invoice_number=invoice_number,
                total_amount=invoice.total_amount,
                user_id=invoice.user_id,
            ),
            db=db
        )

    def publish_status_change(self, invoice: Invoice, old_status: InvoiceStatus) -> None:
        """Announce a committed status change. No-op if the status did not move."""
        if invoice.status == old_status:
            return

        self.event_bus.publish(
            InvoiceStatusChanged.create(invoice, InvoiceStatus(old_status).value, invoice.status.value)
        )
        if invoice.status == InvoiceStatus.PAID:
            self.event_bus.publish(InvoicePaid.create(invoice))

    # =========================================================================
    # LEDGER COUPLING
    # =========================================================================

    def create_invoice_transaction(self, invoice: Invoice, db: Executor | None = None) -> UUID | None:
        """
        Book the debit for a billed invoice.

        Returns:
            Debit transaction ID, or None if the invoice is not billed
        """
        if not invoice.is_billed:
            return None

        return self._book_debit(invoice, db or self.postgres)

    def handle_status_change_transactions(
        self,
        invoice: Invoice,
        old_status: InvoiceStatus | str,
        new_status: InvoiceStatus | str,
        db: Executor | None = None
    ) -> UUID | None:
        """
        Apply the ledger side of a status transition.

        draft/cancelled -> pending/paid/overdue books the debit, or reuses the
        active one. A debit reversed by an earlier cancellation is never
        reused: reinstating books a fresh one. pending/paid/overdue ->
        cancelled reverses the active debit; a missing debit is logged and the
        cancellation goes ahead.

        Returns:
            ID of the debit or reversal written or reused, None if no ledger change
        """
        old = InvoiceStatus(old_status)
        new = InvoiceStatus(new_status)
        db = db or self.postgres

        if old in UNBILLED_STATUSES and new in BILLED_STATUSES:
            return self._book_debit(invoice, db)

        if old in BILLED_STATUSES and new == InvoiceStatus.CANCELLED:
            debit_id = self.transactions.find_invoice_debit_transaction(invoice.id, db=db)
            if debit_id is None:
                logger.warning(
                    f"No debit transaction found for cancelled invoice {invoice.id}, nothing to reverse"
                )
                return None

            number = invoice.invoice_number or str(invoice.id)
            return self.transactions.reverse_transaction(
                debit_id, f"Invoice {number} cancelled", db=db
            )

        return None

    # =========================================================================
    # STATUS
    # =========================================================================

    def update_invoice_status(self, invoice_id: UUID, new_status: InvoiceStatus | str) -> Invoice:
        """
        Move an invoice to a new status together with its ledger side effects.

        Args:
            invoice_id: Invoice UUID
            new_status: Target status

        Returns:
            Updated invoice

        Raises:
            ValueError: If invoice not found
            InvalidStatusTransitionError: If a billed invoice is sent back to draft
        """
        new_status = InvoiceStatus(new_status)

        with self.postgres.transaction() as tx:
            current = self._get_for_update(invoice_id, tx)
            old_status = current.status

            if old_status == new_status:
                return current

            if new_status == InvoiceStatus.DRAFT and old_status in BILLED_STATUSES:
                raise InvalidStatusTransitionError(invoice_id, old_status.value, new_status.value)

            updates: dict[str, Any] = {"status": new_status}
            if new_status in BILLED_STATUSES and current.issue_date is None:
                updates["issue_date"] = now_utc()
            if new_status == InvoiceStatus.PAID and current.paid_date is None:
                updates["paid_date"] = now_utc()
            if new_status in BILLED_STATUSES and not current.invoice_number:
                updates["invoice_number"] = format_fallback_invoice_number(
                    self.get_invoice_prefix(), current.id
                )

            updated = self._update_row(current, updates, tx)
            self.handle_status_change_transactions(updated, old_status, new_status, db=tx)

        logger.info(f"Invoice {invoice_id} status: {old_status.value} -> {new_status.value}")
        self.publish_status_change(updated, old_status)
        return updated

    def refresh_overdue_status(self, invoice_id: UUID) -> Invoice:
        """
        Re-evaluate an open invoice against the clock.

        Only pending and overdue invoices move, and only between those two.

        Raises:
            ValueError: If invoice not found
        """
        current = self.get_by_id(invoice_id)
        if current is None:
            raise ValueError(f"Invoice {invoice_id} not found")

        if current.status not in _OPEN_STATUSES:
            return current

        computed = calculate_invoice_status(
            current.total_amount, current.total_paid, current.due_date, current.paid_date
        )
        if computed == current.status or computed not in _OPEN_STATUSES:
            return current

        return self.update_invoice_status(invoice_id, computed)

    # =========================================================================
    # TOTALS
    # =========================================================================

    def _billed_status_updates(self, current: Invoice, total_amount: Decimal) -> dict[str, Any]:
        """
        Re-derive status and paid_date of a billed invoice after its total moved.

        A billed invoice never falls back to draft, so nothing changes when
        there is nothing left to bill or pay.
        """
        if total_amount <= ZERO and current.total_paid <= ZERO:
            return {}

        status = calculate_invoice_status(
            total_amount, current.total_paid, current.due_date, current.paid_date
        )
        if status not in BILLED_STATUSES:
            return {}

        updates: dict[str, Any] = {"status": status}
        if status == InvoiceStatus.PAID and current.paid_date is None:
            updates["paid_date"] = now_utc()
        return updates

    def _recompute_totals(self, invoice_id: UUID, tx: Executor) -> tuple[Invoice, InvoiceStatus]:
        current = self._get_for_update(invoice_id, tx)

        items = tx.execute(
            """
            SELECT amount, tax_amount FROM invoice_items
            WHERE invoice_id = %s AND deleted_at IS NULL
            """,
            (invoice_id,)
        )

        if not items:
            updates = {
                "subtotal": ZERO,
                "tax_total": ZERO,
                "total_amount": ZERO,
                "balance_due": ZERO,
            }
        else:
            totals = calculate_invoice_totals(items)
            updates = {
                "subtotal": totals.subtotal,
                "tax_total": totals.tax_total,
                "total_amount": totals.total_amount,
                "balance_due": round_money(totals.total_amount - current.total_paid),
            }

        if current.is_billed:
            updates.update(self._billed_status_updates(current, updates["total_amount"]))

        return self._update_row(current, updates, tx), current.status

    def update_invoice_totals(self, invoice_id: UUID, db: PostgresTransaction | None = None) -> Invoice:
        """
        Recompute totals from the invoice's live items.

        An invoice with no items has every total, balance_due included, reset
        to zero. Otherwise balance_due = total_amount - total_paid. A billed
        invoice has its status re-derived in the same unit of work, so one
        whose total drops to what was already paid becomes paid. Draft and
        cancelled invoices keep their status.

        Raises:
            ValueError: If invoice not found
        """
        with unit_of_work(self.postgres, db) as tx:
            updated, old_status = self._recompute_totals(invoice_id, tx)

        if db is None:
            self.publish_status_change(updated, old_status)
        return updated

    def update_invoice_totals_with_transaction_sync(
        self,
        invoice_id: UUID,
        db: PostgresTransaction | None = None
    ) -> InvoiceTotalsSync:
        """
        Recompute totals and bring the invoice debit in line, atomically.

        For a billed invoice, books the debit if there is no active one, or
        corrects the active debit's amount when the total changed. Reversed
        debits are history and never corrected.

        Raises:
            ValueError: If invoice not found
            LedgerDataError: If a ledger write fails
        """
        created = False
        corrected = False
        transaction_id = None

        with unit_of_work(self.postgres, db) as tx:
            invoice, previous_status = self._recompute_totals(invoice_id, tx)

            if invoice.is_billed:
                transaction_id = self.transactions.find_invoice_debit_transaction(invoice.id, db=tx)

                if transaction_id is None:
                    transaction_id = self._book_debit(invoice, tx)
                    created = transaction_id is not None
                else:
                    debit = self.transactions.get_by_id(transaction_id, db=tx)
                    if debit is not None and debit.amount != invoice.total_amount:
                        if invoice.total_amount > ZERO:
                            self.transactions.update_transaction_amount(
                                transaction_id, invoice.total_amount, db=tx
                            )
                            corrected = True
                        else:
                            logger.warning(
                                f"Invoice {invoice.id} total dropped to {invoice.total_amount}; "
                                f"debit {transaction_id} left at {debit.amount}"
                            )

        if db is None:
            self.publish_status_change(invoice, previous_status)

        return InvoiceTotalsSync(
            invoice_id=invoice.id,
            subtotal=invoice.subtotal,
            tax_total=invoice.tax_total,
            total_amount=invoice.total_amount,
            balance_due=invoice.balance_due,
            status=invoice.status,
            previous_status=previous_status,
            transaction_created=created,
            transaction_updated=corrected,
            transaction_id=transaction_id,
        )

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def _apply_paid_delta(self, invoice_id: UUID, delta: Decimal, tx: Executor) -> tuple[Invoice, InvoiceStatus]:
        """
        Shift total_paid by `delta`, re-derive status and apply the ledger side.

        A cancelled invoice only accepts removals, and stays cancelled.
        """
        current = self._get_for_update(invoice_id, tx)

        if current.status == InvoiceStatus.CANCELLED and delta > ZERO:
            raise ValueError(f"Invoice {invoice_id} is cancelled")

        total_paid = round_money(current.total_paid + delta)
        if total_paid < ZERO:
            raise ValueError(
                f"Invoice {invoice_id} total paid cannot go below zero ({total_paid})"
            )

        if current.status == InvoiceStatus.CANCELLED:
            updated = self._update_row(current, {
                "total_paid": total_paid,
                "balance_due": round_money(current.total_amount - total_paid),
            }, tx)
            return updated, current.status

        fully_paid = current.total_amount > ZERO and total_paid >= current.total_amount

        paid_date = current.paid_date
        if delta < ZERO and not fully_paid:
            paid_date = None

        new_status = calculate_invoice_status(
            current.total_amount, total_paid, current.due_date, paid_date
        )
        if new_status == InvoiceStatus.PAID and paid_date is None:
            paid_date = now_utc()

        updates: dict[str, Any] = {
            "total_paid": total_paid,
            "balance_due": round_money(current.total_amount - total_paid),
            "status": new_status,
            "paid_date": paid_date,
        }
        if new_status in BILLED_STATUSES and current.issue_date is None:
            updates["issue_date"] = now_utc()

        updated = self._update_row(current, updates, tx)

        if new_status != current.status:
            self.handle_status_change_transactions(updated, current.status, new_status, db=tx)

        return updated, current.status

    def process_payment(
        self,
        invoice_id: UUID,
        payment_amount: Any,
        db: PostgresTransaction | None = None
    ) -> Invoice:
        """
        Apply a payment to an invoice.

        paid_date is set only on the move into fully paid and is never
        overwritten. When the status changes, the ledger side of the
        transition runs in the same unit of work.

        Events are published here only when this call owns the unit of
        work; a caller passing `db` publishes after its own commit.

        Raises:
            ValueError: If invoice not found, cancelled, or amount not positive
        """
        amount = round_money(payment_amount)
        if amount <= ZERO:
            raise ValueError(f"Payment amount must be positive, got {amount}")

        with unit_of_work(self.postgres, db) as tx:
            updated, old_status = self._apply_paid_delta(invoice_id, amount, tx)

        logger.info(
            f"Applied payment of {amount} to invoice {invoice_id}: "
            f"paid {updated.total_paid} of {updated.total_amount}"
        )
        if db is None:
            self.publish_status_change(updated, old_status)
        return updated

    def remove_payment(
        self,
        invoice_id: UUID,
        payment_amount: Any,
        db: PostgresTransaction | None = None
    ) -> Invoice:
        """
        Take a reversed payment back off an invoice.

        paid_date is cleared when the invoice is no longer fully paid. A
        cancelled invoice keeps its status; only total_paid and balance_due
        move, so a payment made before cancellation can still be refunded.

        Raises:
            ValueError: If invoice not found, amount not positive, or total_paid would go negative
        """
        amount = round_money(payment_amount)
        if amount <= ZERO:
            raise ValueError(f"Payment amount must be positive, got {amount}")

        with unit_of_work(self.postgres, db) as tx:
            updated, old_status = self._apply_paid_delta(invoice_id, -amount, tx)

        logger.info(
            f"Removed payment of {amount} from invoice {invoice_id}: "
            f"paid {updated.total_paid} of {updated.total_amount}"
        )
        if db is None:
            self.publish_status_change(updated, old_status)
        return updated
