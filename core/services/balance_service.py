"""
Account balances derived from the ledger.

Balances are never stored. The current balance comes from the database's
get_account_balance function (completed credits minus completed debits, so a
negative balance is money owed). History is rebuilt by walking backwards from
the current balance, undoing one entry at a time. Statements run forwards from
an opening balance.

This service only reads, except for refresh_balance's updated_at touch.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

import psycopg2

from clients.postgres_client import PostgresClient
from core.config import LedgerConfig
from core.exceptions import LedgerDataError
from core.models import (
    AccountStatement,
    AccountStatementEntry,
    BalanceHistoryItem,
    BalanceSummary,
    LedgerEntryKind,
    OutstandingBalance,
    StatementEntryType,
    TransactionStatus,
    TransactionType,
)
from core.money import ZERO, to_decimal
from core.services.transaction_service import TransactionService
from utils.timezone import days_ago, now_utc

logger = logging.getLogger(__name__)


class AccountBalanceService:
    """Read-side aggregates over member ledgers."""

    def __init__(
        self,
        postgres: PostgresClient,
        transactions: TransactionService,
        config: LedgerConfig | None = None
    ):
        self.postgres = postgres
        self.transactions = transactions
        self.config = config or LedgerConfig()

    def get_balance(self, user_id: UUID) -> Decimal:
        """Current balance. Negative means the member owes money."""
        return self.transactions.get_user_account_balance(user_id)

    def refresh_balance(self, user_id: UUID) -> Decimal:
        """
        Nudge the store to recompute, then return the current balance.

        Touches updated_at on the member's latest transaction. A failed touch
        is logged and the balance is returned anyway.
        """
        try:
            self.postgres.execute(
                """
                UPDATE transactions
                SET updated_at = %s
                WHERE id = (
                    SELECT id FROM transactions
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    LIMIT 1
                )
                """,
                (now_utc(), user_id)
            )
        except psycopg2.Error as e:
            logger.warning(f"Could not touch latest transaction for user {user_id}: {e}")

        return self.get_balance(user_id)

    def get_balance_history(self, user_id: UUID, days: int | None = None) -> list[BalanceHistoryItem]:
        """
        Entries from the trailing window, newest first, each with the balance
        right after it applied.

        The newest entry's running_balance is the current balance. Walking
        back, a completed debit is undone by adding it back and a completed
        credit by subtracting it. Other entries leave the balance unchanged.

        Raises:
            LedgerDataError: If the history or balance cannot be read
        """
        if days is None:
            days = self.config.balance_history_days

        try:
            rows = self.postgres.execute(
                """
                SELECT id, type, amount, description, created_at, status, metadata
                FROM transactions
                WHERE user_id = %s AND created_at >= %s
                ORDER BY created_at DESC, id DESC
                """,
                (user_id, days_ago(days))
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to fetch balance history: {e}") from e

        running = self.get_balance(user_id)
        history = []

        for row in rows:
            item = BalanceHistoryItem(**row, running_balance=running)
            history.append(item)

            if item.status != TransactionStatus.COMPLETED:
                continue
            if item.type == TransactionType.DEBIT:
                running += item.amount
            elif item.type == TransactionType.CREDIT:
                running -= item.amount

        return history

    def get_balance_summary(self, user_id: UUID) -> BalanceSummary:
        """
        Completed debit and credit totals, pending amount and last activity.

        Raises:
            LedgerDataError: If the summary cannot be read
        """
        try:
            row = self.postgres.execute_single(
                """
                SELECT
                    COALESCE(SUM(amount) FILTER (WHERE type = 'debit' AND status = 'completed'), 0)
                        AS total_debits,
                    COALESCE(SUM(amount) FILTER (WHERE type = 'credit' AND status = 'completed'), 0)
                        AS total_credits,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'pending'), 0)
                        AS pending_amount,
                    MAX(created_at) AS last_transaction_date
                FROM transactions
                WHERE user_id = %s
                """,
                (user_id,)
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to get balance summary: {e}") from e

        row = row or {}

        return BalanceSummary(
            user_id=user_id,
            current_balance=self.get_balance(user_id),
            total_debits=to_decimal(row.get("total_debits")),
            total_credits=to_decimal(row.get("total_credits")),
            pending_amount=to_decimal(row.get("pending_amount")),
            last_transaction_date=row.get("last_transaction_date"),
        )

    def get_users_with_outstanding_balances(self, limit: int | None = None) -> list[OutstandingBalance]:
        """
        Members with a non-zero balance, most owed first.

        A member whose balance cannot be read is logged and left out; the
        scan carries on.

        Raises:
            LedgerDataError: If the member list cannot be read
        """
        if limit is None:
            limit = self.config.outstanding_balance_limit

        try:
            rows = self.postgres.execute(
                """
                SELECT user_id, MAX(created_at) AS last_transaction_date
                FROM transactions
                GROUP BY user_id
                """
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to fetch users with transactions: {e}") from e

        outstanding = []
        for row in rows:
            user_id = row["user_id"]
            try:
                balance = self.get_balance(user_id)
            except LedgerDataError:
                logger.exception(f"Skipping user {user_id}: balance unavailable")
                continue

            if balance != 0:
                outstanding.append(OutstandingBalance(
                    user_id=user_id,
                    balance=balance,
                    last_transaction_date=row["last_transaction_date"],
                ))

        outstanding.sort(key=lambda entry: entry.balance)
        return outstanding[:limit]

    def get_account_statement(
        self,
        user_id: UUID,
        start_date: datetime | None = None,
        end_date: datetime | None = None
    ) -> AccountStatement:
        """
        Completed entries oldest first, each with the running balance after it.

        The statement opens with an opening_balance line: the balance of
        everything before start_date, or zero without one. Amounts follow the
        balance sign (credits positive, debits negative), so the closing
        balance for an open-ended statement equals get_balance. Lines are
        typed from the entry's metadata and referenced by invoice number,
        payment reference, credit note number or reversal reference.

        Raises:
            LedgerDataError: If the ledger cannot be read
        """
        conditions = ["t.user_id = %s", "t.status = 'completed'"]
        params: list = [user_id]
        if start_date is not None:
            conditions.append("t.created_at >= %s")
            params.append(start_date)
        if end_date is not None:
            conditions.append("t.created_at < %s")
            params.append(end_date)

        try:
            opening = ZERO
            if start_date is not None:
                opening = to_decimal(self.postgres.execute_scalar(
                    """
                    SELECT COALESCE(SUM(CASE type WHEN 'credit' THEN amount
                                                  WHEN 'debit' THEN -amount ELSE 0 END), 0)
                    FROM transactions
                    WHERE user_id = %s AND status = 'completed' AND created_at < %s
                    """,
                    (user_id, start_date)
                ))

            rows = self.postgres.execute(
                f"""
                SELECT t.id, t.type, t.amount, t.description, t.reference_number,
                       t.metadata, t.created_at,
                       p.payment_reference, p.payment_method, p.notes AS payment_notes,
                       cn.credit_note_number, cn.reason AS credit_note_reason
                FROM transactions t
                LEFT JOIN payments p
                    ON p.id::text = t.metadata->>'payment_id'
                   AND t.metadata->>'transaction_type' = 'payment_credit'
                LEFT JOIN credit_notes cn
                    ON cn.id::text = t.metadata->>'credit_note_id'
                   AND t.metadata->>'transaction_type' = 'credit_note'
                WHERE {' AND '.join(conditions)}
                ORDER BY t.created_at ASC, t.id ASC
                """,
                tuple(params)
            )
        except psycopg2.Error as e:
            raise LedgerDataError(f"Failed to generate account statement: {e}") from e

        running = opening
        entries = []
        for row in rows:
            amount = to_decimal(row["amount"])
            if row["type"] == TransactionType.DEBIT.value:
                amount = -amount
            elif row["type"] != TransactionType.CREDIT.value:
                amount = ZERO
            running += amount

            entry_type, reference, description = _describe_statement_row(row)
            entries.append(AccountStatementEntry(
                date=row["created_at"],
                reference=reference,
                description=description,
                amount=amount,
                balance=running,
                entry_type=entry_type,
                entry_id=row["id"],
            ))

        if entries or opening != ZERO:
            if start_date is not None:
                opened_on = start_date
            elif entries:
                opened_on = entries[0].date - timedelta(days=1)
            else:
                opened_on = now_utc()

            entries.insert(0, AccountStatementEntry(
                date=opened_on,
                reference="",
                description="Opening Balance",
                amount=ZERO,
                balance=opening,
                entry_type=StatementEntryType.OPENING_BALANCE,
            ))

        return AccountStatement(
            user_id=user_id,
            opening_balance=opening,
            closing_balance=running,
            entries=entries,
        )


def _describe_statement_row(row: dict) -> tuple[StatementEntryType, str, str]:
    """Entry type, reference and description for one statement line."""
    metadata = row.get("metadata") or {}
    kind = metadata.get("transaction_type")
    description = row.get("description") or ""

    if kind == LedgerEntryKind.CREDIT_NOTE.value:
        reference = row.get("credit_note_number") or metadata.get("credit_note_number") or "Credit Note"
        return StatementEntryType.CREDIT_NOTE, reference, row.get("credit_note_reason") or description

    if kind == LedgerEntryKind.REVERSAL.value:
        return StatementEntryType.REVERSAL, row.get("reference_number") or "Reversal", description

    if kind == LedgerEntryKind.ADJUSTMENT.value:
        return StatementEntryType.ADJUSTMENT, row.get("reference_number") or "Adjustment", description

    if kind == LedgerEntryKind.PAYMENT_CREDIT.value:
        reference = row.get("payment_reference") or "Payment"
        if row.get("payment_notes"):
            description = row["payment_notes"]
        elif metadata.get("invoice_number"):
            description = f"Payment for invoice {metadata['invoice_number']}"
        return StatementEntryType.PAYMENT, reference, description

    if row.get("type") == TransactionType.DEBIT.value:
        reference = row.get("reference_number") or metadata.get("invoice_number") or "Invoice"
        return StatementEntryType.INVOICE, reference, description or "Invoice"

    return StatementEntryType.PAYMENT, row.get("reference_number") or "Credit", description or "Account credit"
