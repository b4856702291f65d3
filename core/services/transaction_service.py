"""
Transaction ledger: append-only debits and credits against member accounts.

Entries are never deleted. Mistakes are corrected by booking a reversal, an
entry of the opposite type for the same amount that points back at the
original through metadata.reversal_of, while the original is marked with
reversed_by. The only other in-place mutations are the amount correction used
when an invoice total changes after its debit was booked, and the updated_at
touch used by balance refreshes.

An invoice has at most one active (unreversed) debit, a credit note at most
one credit, and a transaction at most one reversal. These writes are
idempotent. A lookup returns the existing entry when there is one; otherwise
the insert uses ON CONFLICT DO NOTHING against the unique partial indexes in
db/schema.sql, so two concurrent callers still end up with a single row and
both get its id.
"""

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import psycopg2

from clients.postgres_client import PostgresClient, PostgresTransaction, to_json
from core.audit import AuditAction, AuditLogger
from core.exceptions import LedgerDataError
from core.models import (
    CreditNoteCreditData,
    InvoiceDebitData,
    LedgerEntryKind,
    PaymentCreditData,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from core.money import ZERO, round_money, to_decimal
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

Executor = PostgresClient | PostgresTransaction

_INSERT_COLUMNS = """
    id, user_id, type, status, amount, description, metadata,
    reference_number, completed_at, created_at, updated_at
"""


def _positive_amount(value: Any, what: str) -> Decimal:
    amount = round_money(value)
    if amount <= ZERO:
        raise ValueError(f"{what} amount must be positive, got {amount}")
    return amount


class TransactionService:
    """Service for ledger transaction operations."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger):
        self.postgres = postgres
        self.audit = audit

    def _insert_values(
        self,
        user_id: UUID,
        type: TransactionType,
        amount: Decimal,
        description: str,
        metadata: dict[str, Any],
        reference_number: str | None
    ) -> tuple:
        now = now_utc()
        return (
            uuid4(), user_id, type.value, TransactionStatus.COMPLETED.value, amount,
            description, to_json(metadata), reference_number, now, now, now
        )

    def _log_created(self, db: Executor, transaction_id: UUID, created: dict[str, Any]) -> None:
        self.audit.log_change(
            entity_type="transaction",
            entity_id=transaction_id,
            action=AuditAction.CREATE,
            changes={"created": created},
            db=db
        )

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_by_id(self, transaction_id: UUID, db: Executor | None = None) -> Transaction | None:
        """
        Get transaction by ID.

        Returns:
            Transaction if found, None otherwise.
        """
        row = (db or self.postgres).execute_single(
            "SELECT * FROM transactions WHERE id = %s",
            (transaction_id,)
        )

        if row is None:
            return None

        return Transaction.model_validate(row)

    def find_invoice_debit_transaction(
        self,
        invoice_id: UUID,
        db: Executor | None = None
    ) -> UUID | None:
        """ID of the invoice's active debit, or None when none is booked or the last was reversed."""
        row = (db or self.postgres).execute_single(
            """
            SELECT id FROM transactions
            WHERE metadata->>'invoice_id' = %s
              AND type = 'debit'
              AND metadata->>'transaction_type' = 'invoice_debit'
              AND reversed_by IS NULL
            LIMIT 1
            """,
            (str(invoice_id),)
        )
        return row["id"] if row else None

    def find_reversal(self, transaction_id: UUID, db: Executor | None = None) -> UUID | None:
        """ID of the entry reversing `transaction_id`, or None."""
        row = (db or self.postgres).execute_single(
            """
            SELECT id FROM transactions
            WHERE metadata ? 'reversal_of' AND metadata->>'reversal_of' = %s
            LIMIT 1
            """,
            (str(transaction_id),)
        )
        return row["id"] if row else None

    def find_payment_credit_transaction(
        self,
        payment_id: UUID,
        db: Executor | None = None
    ) -> UUID | None:
        """ID of the credit booked for a payment, or None."""
        row = (db or self.postgres).execute_single(
            """
            SELECT id FROM transactions
            WHERE metadata->>'payment_id' = %s
              AND type = 'credit'
              AND metadata->>'transaction_type' = 'payment_credit'
            LIMIT 1
            """,
            (str(payment_id),)
        )
        return row["id"] if row else None

    def find_credit_note_transaction(
        self,
        credit_note_id: UUID,
        db: Executor | None = None
    ) -> UUID | None:
        """ID of the credit booked for a credit note, or None."""
        row = (db or self.postgres).execute_single(
            """
            SELECT id FROM transactions
            WHERE metadata->>'credit_note_id' = %s
              AND metadata->>'transaction_type' = 'credit_note'
            LIMIT 1
            """,
            (str(credit_note_id),)
        )
        return row["id"] if row else None

    def get_user_transactions(self, user_id: UUID, limit: int = 50) -> list[Transaction]:
        """Member's ledger entries, newest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM transactions
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, limit)
        )
        return [Transaction.model_validate(row) for row in rows]

    def get_invoice_transactions(self, invoice_id: UUID) -> list[Transaction]:
        """Every entry tagged with the invoice (debit, credits, reversals), newest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM transactions
            WHERE metadata->>'invoice_id' = %s
            ORDER BY created_at DESC
            """,
            (str(invoice_id),)
        )
        return [Transaction.model_validate(row) for row in rows]

    def get_user_account_balance(self, user_id: UUID) -> Decimal:
        """
        Member's balance: completed credits minus completed debits.

        Negative means the member owes money.

        Raises:
            LedgerDataError: If the balance function fails
        """
        try:
            balance = self.postgres.execute_scalar(
                "SELECT get_account_balance(%s)",
                (user_id,)
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to get account balance: {e}") from e

        return to_decimal(balance)

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_invoice_debit(self, data: InvoiceDebitData, db: Executor | None = None) -> UUID:
        """
        Book an invoice against the member's account.

        Idempotent per invoice: if the invoice already has an active debit its
        id is returned and nothing is written. Once that debit is reversed, the
        next call books a new one.

        Args:
            data: Invoice id, number, total and owner
            db: Executor to write through (joins the caller's unit of work)

        Returns:
            ID of the invoice debit transaction

        Raises:
            ValueError: If the total is not positive
            LedgerDataError: If the data store fails
        """
        amount = _positive_amount(data.total_amount, "Invoice debit")
        db = db or self.postgres

        try:
            existing = self.find_invoice_debit_transaction(data.invoice_id, db=db)
            if existing is not None:
                logger.info(
                    f"Invoice debit already exists for invoice {data.invoice_id}: {existing}"
                )
                return existing

            metadata = {
                "invoice_id": str(data.invoice_id),
                "invoice_number": data.invoice_number,
                "transaction_type": LedgerEntryKind.INVOICE_DEBIT.value,
            }
            rows = db.execute_returning(
                f"""
                INSERT INTO transactions ({_INSERT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT ((metadata->>'invoice_id'))
                    WHERE type = 'debit' AND metadata->>'transaction_type' = 'invoice_debit'
                      AND reversed_by IS NULL
                DO NOTHING
                RETURNING id
                """,
                self._insert_values(
                    data.user_id, TransactionType.DEBIT, amount,
                    f"Invoice: {data.invoice_number}", metadata, data.invoice_number
                )
            )

            if not rows:
                # Lost the race to a concurrent caller
                winner = self.find_invoice_debit_transaction(data.invoice_id, db=db)
                if winner is None:
                    raise LedgerDataError(
                        f"Failed to create invoice debit transaction: "
                        f"conflicting debit for invoice {data.invoice_id} not found"
                    )
                return winner

            transaction_id = rows[0]["id"]
            self._log_created(db, transaction_id, {
                "type": TransactionType.DEBIT.value,
                "amount": str(amount),
                "invoice_id": str(data.invoice_id),
            })

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to create invoice debit transaction: {e}") from e

        logger.info(
            f"Created invoice debit {transaction_id} for invoice {data.invoice_number}: {amount}"
        )
        return transaction_id

    def create_payment_credit(self, data: PaymentCreditData, db: Executor | None = None) -> UUID:
        """
        Credit the member's account with a payment.

        Not idempotent: callers record each payment exactly once.

        Returns:
            ID of the new credit transaction

        Raises:
            ValueError: If the amount is not positive
            LedgerDataError: If the data store fails
        """
        amount = _positive_amount(data.amount, "Payment credit")
        db = db or self.postgres

        metadata = {
            "invoice_id": str(data.invoice_id),
            "payment_id": str(data.payment_id),
            "invoice_number": data.invoice_number,
            "transaction_type": LedgerEntryKind.PAYMENT_CREDIT.value,
        }

        try:
            row = db.execute_returning(
                f"""
                INSERT INTO transactions ({_INSERT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                self._insert_values(
                    data.user_id, TransactionType.CREDIT, amount,
                    f"Payment for invoice: {data.invoice_number}", metadata, None
                )
            )[0]

            transaction_id = row["id"]
            self._log_created(db, transaction_id, {
                "type": TransactionType.CREDIT.value,
                "amount": str(amount),
                "payment_id": str(data.payment_id),
            })

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to create payment credit transaction: {e}") from e

        logger.info(
            f"Created payment credit {transaction_id} for invoice {data.invoice_number}: {amount}"
        )
        return transaction_id

    def create_credit_note_credit(self, data: CreditNoteCreditData, db: Executor | None = None) -> UUID:
        """
        Credit the member's account with an applied credit note.

        Idempotent per credit note: a second call returns the existing
        credit's id.

        Returns:
            ID of the credit note transaction

        Raises:
            ValueError: If the amount is not positive
            LedgerDataError: If the data store fails
        """
        amount = _positive_amount(data.amount, "Credit note")
        db = db or self.postgres

        try:
            existing = self.find_credit_note_transaction(data.credit_note_id, db=db)
            if existing is not None:
                logger.info(
                    f"Credit already booked for credit note {data.credit_note_number}: {existing}"
                )
                return existing

            metadata = {
                "credit_note_id": str(data.credit_note_id),
                "credit_note_number": data.credit_note_number,
                "invoice_id": str(data.invoice_id),
                "transaction_type": LedgerEntryKind.CREDIT_NOTE.value,
            }
            rows = db.execute_returning(
                f"""
                INSERT INTO transactions ({_INSERT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT ((metadata->>'credit_note_id'))
                    WHERE metadata->>'transaction_type' = 'credit_note'
                DO NOTHING
                RETURNING id
                """,
                self._insert_values(
                    data.user_id, TransactionType.CREDIT, amount,
                    f"Credit note: {data.credit_note_number}", metadata, data.credit_note_number
                )
            )

            if not rows:
                winner = self.find_credit_note_transaction(data.credit_note_id, db=db)
                if winner is None:
                    raise LedgerDataError(
                        f"Failed to create credit note transaction: "
                        f"conflicting credit for credit note {data.credit_note_id} not found"
                    )
                return winner

            transaction_id = rows[0]["id"]
            self._log_created(db, transaction_id, {
                "type": TransactionType.CREDIT.value,
                "amount": str(amount),
                "credit_note_id": str(data.credit_note_id),
            })

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to create credit note transaction: {e}") from e

        logger.info(
            f"Created credit note credit {transaction_id} for {data.credit_note_number}: {amount}"
        )
        return transaction_id

    def reverse_transaction(
        self,
        transaction_id: UUID,
        reason: str,
        db: Executor | None = None
    ) -> UUID:
        """
        Offset an entry with one of the opposite type and equal amount.

        Idempotent: a transaction is reversed at most once. Calling again
        returns the existing reversal's id.

        Args:
            transaction_id: Entry to reverse
            reason: Why, kept in the description and metadata
            db: Executor to write through

        Returns:
            ID of the reversal transaction

        Raises:
            ValueError: If the transaction does not exist or cannot be reversed
            LedgerDataError: If the data store fails
        """
        db = db or self.postgres

        try:
            original = self.get_by_id(transaction_id, db=db)
            if original is None:
                raise ValueError(f"Transaction {transaction_id} not found")

            existing = self.find_reversal(transaction_id, db=db)
            if existing is not None:
                logger.info(f"Transaction {transaction_id} already reversed by {existing}")
                return existing

            reversal_type = original.type.opposite

            metadata = dict(original.metadata or {})
            metadata.update({
                "reversal_of": str(original.id),
                "reversal_reason": reason,
                "transaction_type": LedgerEntryKind.REVERSAL.value,
                "original_transaction_type": (original.metadata or {}).get("transaction_type"),
            })
            reference = original.reference_number or str(original.id)[:8]

            rows = db.execute_returning(
                f"""
                INSERT INTO transactions ({_INSERT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT ((metadata->>'reversal_of')) WHERE metadata ? 'reversal_of'
                DO NOTHING
                RETURNING id
                """,
                self._insert_values(
                    original.user_id, reversal_type, original.amount,
                    f"Reversal: {original.description} ({reason})",
                    metadata, f"REV-{reference}"
                )
            )

            if not rows:
                winner = self.find_reversal(transaction_id, db=db)
                if winner is None:
                    raise LedgerDataError(
                        f"Failed to create reversal transaction: "
                        f"conflicting reversal of {transaction_id} not found"
                    )
                return winner

            reversal_id = rows[0]["id"]
            db.execute(
                "UPDATE transactions SET reversed_by = %s, updated_at = %s WHERE id = %s",
                (reversal_id, now_utc(), original.id)
            )

            self.audit.log_change(
                entity_type="transaction",
                entity_id=original.id,
                action=AuditAction.REVERSE,
                changes={"reversed_by": str(reversal_id), "reason": reason},
                db=db
            )
            self._log_created(db, reversal_id, {
                "type": reversal_type.value,
                "amount": str(original.amount),
                "reversal_of": str(original.id),
            })

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to create reversal transaction: {e}") from e

        logger.info(
            f"Reversed transaction {transaction_id} with {reversal_id} ({reason})"
        )
        return reversal_id

    def update_transaction_amount(
        self,
        transaction_id: UUID,
        new_amount: Any,
        db: Executor | None = None
    ) -> Transaction:
        """
        Correct an entry's amount in place.

        Used when an invoice's total changes after its debit was booked. Does
        not touch the linked invoice.

        Raises:
            ValueError: If not found, already reversed, or the amount is not positive
            LedgerDataError: If the data store fails
        """
        amount = _positive_amount(new_amount, "Transaction")
        db = db or self.postgres

        try:
            current = self.get_by_id(transaction_id, db=db)
            if current is None:
                raise ValueError(f"Transaction {transaction_id} not found")
            if current.is_reversed:
                raise ValueError(
                    f"Transaction {transaction_id} was reversed by {current.reversed_by}, amount is final"
                )

            row = db.execute_returning(
                """
                UPDATE transactions
                SET amount = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (amount, now_utc(), transaction_id)
            )[0]

            updated = Transaction.model_validate(row)

            self.audit.log_change(
                entity_type="transaction",
                entity_id=transaction_id,
                action=AuditAction.UPDATE,
                changes={"amount": {"old": str(current.amount), "new": str(updated.amount)}},
                db=db
            )

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to update transaction amount: {e}") from e

        logger.info(
            f"Corrected transaction {transaction_id} amount: {current.amount} -> {updated.amount}"
        )
        return updated

    def create_adjustment(
        self,
        user_id: UUID,
        type: TransactionType,
        amount: Any,
        reason: str,
        db: Executor | None = None
    ) -> UUID:
        """
        Book a manual correction against a member's account.

        Args:
            user_id: Member whose balance is adjusted
            type: DEBIT to increase what they owe, CREDIT to decrease it
            amount: Positive magnitude
            reason: Shown in the description and kept in metadata

        Returns:
            ID of the adjustment transaction

        Raises:
            ValueError: If type is not debit/credit or amount is not positive
            LedgerDataError: If the data store fails
        """
        type = TransactionType(type)
        if type not in (TransactionType.DEBIT, TransactionType.CREDIT):
            raise ValueError(f"Adjustments must be debit or credit, got '{type.value}'")

        value = _positive_amount(amount, "Adjustment")
        db = db or self.postgres

        metadata = {
            "transaction_type": LedgerEntryKind.ADJUSTMENT.value,
            "reason": reason,
        }

        try:
            row = db.execute_returning(
                f"""
                INSERT INTO transactions ({_INSERT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                self._insert_values(
                    user_id, type, value, f"Adjustment: {reason}", metadata, None
                )
            )[0]

            transaction_id = row["id"]
            self._log_created(db, transaction_id, {
                "type": type.value,
                "amount": str(value),
                "reason": reason,
            })

        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to create adjustment transaction: {e}") from e

        logger.info(f"Created {type.value} adjustment {transaction_id} for user {user_id}: {value}")
        return transaction_id
