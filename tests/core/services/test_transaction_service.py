"""Tests for TransactionService.

The database is mocked; row dicts stand in for query results. Idempotency
against a real database is covered in tests/integration.
"""

from decimal import Decimal
from uuid import UUID, uuid4

import psycopg2
import pytest

from core.audit import AuditAction
from core.exceptions import LedgerDataError
from core.models import CreditNoteCreditData, InvoiceDebitData, PaymentCreditData, TransactionType
from utils.timezone import now_utc

MEMBER_ID = UUID("00000000-0000-0000-0000-000000000002")


def _transaction_row(**overrides) -> dict:
    now = now_utc()
    row = {
        "id": uuid4(),
        "user_id": MEMBER_ID,
        "type": "debit",
        "status": "completed",
        "amount": Decimal("230.00"),
        "description": "Invoice: INV-2026-10-0001",
        "metadata": {"invoice_id": str(uuid4()), "transaction_type": "invoice_debit"},
        "reference_number": "INV-2026-10-0001",
        "completed_at": now,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


@pytest.fixture
def service(mock_db, audit):
    from core.services.transaction_service import TransactionService
    return TransactionService(mock_db, audit)


@pytest.fixture
def debit_data():
    return InvoiceDebitData(
        invoice_id=uuid4(),
        invoice_number="INV-2026-10-0001",
        total_amount=Decimal("230"),
        user_id=MEMBER_ID,
    )


# =============================================================================
# INVOICE DEBIT
# =============================================================================


class TestCreateInvoiceDebit:
    """Idempotent invoice debits."""

    def test_creates_completed_debit(self, service, mock_db, audit, debit_data):
        """New debit carries the invoice number and invoice_debit tag."""
        new_id = uuid4()
        mock_db.execute_single.return_value = None
        mock_db.execute_returning.return_value = [{"id": new_id}]

        result = service.create_invoice_debit(debit_data)

        assert result == new_id
        query, params = mock_db.execute_returning.call_args[0]
        assert "ON CONFLICT" in query
        assert params[1] == MEMBER_ID
        assert params[2] == "debit"
        assert params[3] == "completed"
        assert params[4] == Decimal("230.00")
        assert params[5] == "Invoice: INV-2026-10-0001"
        assert params[6].adapted == {
            "invoice_id": str(debit_data.invoice_id),
            "invoice_number": "INV-2026-10-0001",
            "transaction_type": "invoice_debit",
        }
        assert params[7] == "INV-2026-10-0001"
        assert params[8] is not None  # completed_at

        audit.log_change.assert_called_once()
        assert audit.log_change.call_args.kwargs["action"] == AuditAction.CREATE
        assert audit.log_change.call_args.kwargs["db"] is mock_db

    def test_returns_existing_debit(self, service, mock_db, audit, debit_data):
        """Second call for the same invoice writes nothing."""
        existing_id = uuid4()
        mock_db.execute_single.return_value = {"id": existing_id}

        assert service.create_invoice_debit(debit_data) == existing_id
        assert service.create_invoice_debit(debit_data) == existing_id

        mock_db.execute_returning.assert_not_called()
        audit.log_change.assert_not_called()

    def test_conflict_returns_winner(self, service, mock_db, audit, debit_data):
        """A concurrent insert wins; its id is returned."""
        winner_id = uuid4()
        mock_db.execute_single.side_effect = [None, {"id": winner_id}]
        mock_db.execute_returning.return_value = []

        assert service.create_invoice_debit(debit_data) == winner_id
        audit.log_change.assert_not_called()

    def test_non_positive_total_rejected(self, service, mock_db, debit_data):
        data = debit_data.model_copy(update={"total_amount": Decimal("0")})

        with pytest.raises(ValueError, match="positive"):
            service.create_invoice_debit(data)

        mock_db.execute_returning.assert_not_called()

    def test_data_error_wrapped(self, service, mock_db, debit_data):
        mock_db.execute_single.return_value = None
        mock_db.execute_returning.side_effect = psycopg2.OperationalError("connection lost")

        with pytest.raises(LedgerDataError, match="Failed to create invoice debit transaction: connection lost"):
            service.create_invoice_debit(debit_data)

    def test_joins_callers_unit_of_work(self, service, mock_db, audit, debit_data):
        """With db= every statement goes through the given executor."""
        from clients.postgres_client import PostgresTransaction
        from unittest.mock import MagicMock

        tx = MagicMock(spec=PostgresTransaction)
        tx.execute_single.return_value = None
        tx.execute_returning.return_value = [{"id": uuid4()}]

        service.create_invoice_debit(debit_data, db=tx)

        tx.execute_returning.assert_called_once()
        mock_db.execute_returning.assert_not_called()
        assert audit.log_change.call_args.kwargs["db"] is tx


# =============================================================================
# PAYMENT CREDIT
# =============================================================================


class TestCreatePaymentCredit:
    """Payment credits."""

    def test_creates_credit(self, service, mock_db, audit):
        new_id = uuid4()
        invoice_id = uuid4()
        payment_id = uuid4()
        mock_db.execute_returning.return_value = [{"id": new_id}]

        result = service.create_payment_credit(PaymentCreditData(
            user_id=MEMBER_ID,
            amount=Decimal("50"),
            invoice_id=invoice_id,
            invoice_number="INV-2026-10-0001",
            payment_id=payment_id,
        ))

        assert result == new_id
        query, params = mock_db.execute_returning.call_args[0]
        assert "ON CONFLICT" not in query
        assert params[2] == "credit"
        assert params[4] == Decimal("50.00")
        assert params[5] == "Payment for invoice: INV-2026-10-0001"
        assert params[6].adapted == {
            "invoice_id": str(invoice_id),
            "payment_id": str(payment_id),
            "invoice_number": "INV-2026-10-0001",
            "transaction_type": "payment_credit",
        }
        assert params[7] is None
        audit.log_change.assert_called_once()

    def test_always_inserts(self, service, mock_db):
        """No idempotency lookup for credits."""
        mock_db.execute_returning.return_value = [{"id": uuid4()}]
        data = PaymentCreditData(
            user_id=MEMBER_ID, amount=Decimal("10"), invoice_id=uuid4(),
            invoice_number="INV-1", payment_id=uuid4(),
        )

        service.create_payment_credit(data)
        service.create_payment_credit(data)

        assert mock_db.execute_returning.call_count == 2
        mock_db.execute_single.assert_not_called()

    def test_data_error_wrapped(self, service, mock_db):
        mock_db.execute_returning.side_effect = psycopg2.OperationalError("boom")

        with pytest.raises(LedgerDataError, match="Failed to create payment credit transaction"):
            service.create_payment_credit(PaymentCreditData(
                user_id=MEMBER_ID, amount=Decimal("10"), invoice_id=uuid4(),
                invoice_number="INV-1", payment_id=uuid4(),
            ))


# =============================================================================
# CREDIT NOTE CREDIT
# =============================================================================


class TestCreateCreditNoteCredit:
    """Idempotent credits for applied credit notes."""

    @pytest.fixture
    def credit_note_data(self):
        return CreditNoteCreditData(
            user_id=MEMBER_ID,
            amount=Decimal("57.5"),
            credit_note_id=uuid4(),
            credit_note_number="CN-2026-10-0001",
            invoice_id=uuid4(),
        )

    def test_creates_tagged_credit(self, service, mock_db, audit, credit_note_data):
        new_id = uuid4()
        mock_db.execute_single.return_value = None
        mock_db.execute_returning.return_value = [{"id": new_id}]

        assert service.create_credit_note_credit(credit_note_data) == new_id

        query, params = mock_db.execute_returning.call_args[0]
        assert "ON CONFLICT" in query
        assert params[2] == "credit"
        assert params[4] == Decimal("57.50")
        assert params[5] == "Credit note: CN-2026-10-0001"
        assert params[6].adapted == {
            "credit_note_id": str(credit_note_data.credit_note_id),
            "credit_note_number": "CN-2026-10-0001",
            "invoice_id": str(credit_note_data.invoice_id),
            "transaction_type": "credit_note",
        }
        assert params[7] == "CN-2026-10-0001"
        audit.log_change.assert_called_once()

    def test_returns_existing_credit(self, service, mock_db, audit, credit_note_data):
        existing_id = uuid4()
        mock_db.execute_single.return_value = {"id": existing_id}

        assert service.create_credit_note_credit(credit_note_data) == existing_id
        mock_db.execute_returning.assert_not_called()
        audit.log_change.assert_not_called()

    def test_conflict_returns_winner(self, service, mock_db, credit_note_data):
        winner_id = uuid4()
        mock_db.execute_single.side_effect = [None, {"id": winner_id}]
        mock_db.execute_returning.return_value = []

        assert service.create_credit_note_credit(credit_note_data) == winner_id

    def test_non_positive_rejected(self, service, mock_db, credit_note_data):
        with pytest.raises(ValueError, match="positive"):
            service.create_credit_note_credit(credit_note_data.model_copy(update={"amount": Decimal("0")}))

        mock_db.execute_single.assert_not_called()

    def test_data_error_wrapped(self, service, mock_db, credit_note_data):
        mock_db.execute_single.side_effect = psycopg2.OperationalError("down")

        with pytest.raises(LedgerDataError, match="Failed to create credit note transaction"):
            service.create_credit_note_credit(credit_note_data)


# =============================================================================
# REVERSAL
# =============================================================================


class TestReverseTransaction:
    """Offsetting entries."""

    def test_reverses_debit_with_credit(self, service, mock_db, audit):
        original = _transaction_row()
        reversal_id = uuid4()
        mock_db.execute_single.side_effect = [original, None]
        mock_db.execute_returning.return_value = [{"id": reversal_id}]

        result = service.reverse_transaction(original["id"], "Invoice cancelled")

        assert result == reversal_id
        query, params = mock_db.execute_returning.call_args[0]
        assert "reversal_of" in query
        assert params[1] == MEMBER_ID
        assert params[2] == "credit"
        assert params[4] == Decimal("230.00")
        assert params[5] == "Reversal: Invoice: INV-2026-10-0001 (Invoice cancelled)"
        assert params[7] == "REV-INV-2026-10-0001"

        metadata = params[6].adapted
        assert metadata["invoice_id"] == original["metadata"]["invoice_id"]
        assert metadata["reversal_of"] == str(original["id"])
        assert metadata["reversal_reason"] == "Invoice cancelled"
        assert metadata["transaction_type"] == "reversal"
        assert metadata["original_transaction_type"] == "invoice_debit"

        actions = [c.kwargs["action"] for c in audit.log_change.call_args_list]
        assert actions == [AuditAction.REVERSE, AuditAction.CREATE]

    def test_credit_reversed_with_debit(self, service, mock_db):
        original = _transaction_row(type="credit", reference_number=None)
        mock_db.execute_single.side_effect = [original, None]
        mock_db.execute_returning.return_value = [{"id": uuid4()}]

        service.reverse_transaction(original["id"], "Chargeback")

        params = mock_db.execute_returning.call_args[0][1]
        assert params[2] == "debit"
        assert params[7] == f"REV-{str(original['id'])[:8]}"

    def test_returns_existing_reversal(self, service, mock_db, audit):
        """Reversing twice yields the same reversal id and one row."""
        original = _transaction_row()
        existing_id = uuid4()
        mock_db.execute_single.side_effect = [
            original, {"id": existing_id},
            original, {"id": existing_id},
        ]

        first = service.reverse_transaction(original["id"], "dup")
        second = service.reverse_transaction(original["id"], "dup")

        assert first == second == existing_id
        mock_db.execute_returning.assert_not_called()
        audit.log_change.assert_not_called()

    def test_conflict_returns_winner(self, service, mock_db):
        original = _transaction_row()
        winner_id = uuid4()
        mock_db.execute_single.side_effect = [original, None, {"id": winner_id}]
        mock_db.execute_returning.return_value = []

        assert service.reverse_transaction(original["id"], "race") == winner_id

    def test_marks_original_reversed(self, service, mock_db):
        """The offset entry is recorded on the original so it drops out of active-debit lookups."""
        original = _transaction_row()
        reversal_id = uuid4()
        mock_db.execute_single.side_effect = [original, None]
        mock_db.execute_returning.return_value = [{"id": reversal_id}]

        service.reverse_transaction(original["id"], "Invoice cancelled")

        query, params = mock_db.execute.call_args[0]
        assert "reversed_by" in query
        assert params[0] == reversal_id
        assert params[2] == original["id"]

    def test_missing_transaction_raises(self, service, mock_db):
        mock_db.execute_single.return_value = None
        missing = uuid4()

        with pytest.raises(ValueError, match=f"Transaction {missing} not found"):
            service.reverse_transaction(missing, "gone")

    def test_data_error_wrapped(self, service, mock_db):
        mock_db.execute_single.side_effect = psycopg2.OperationalError("timeout")

        with pytest.raises(LedgerDataError, match="Failed to create reversal transaction"):
            service.reverse_transaction(uuid4(), "x")


# =============================================================================
# AMOUNT CORRECTION
# =============================================================================


class TestUpdateTransactionAmount:
    """In-place amount correction."""

    def test_updates_amount(self, service, mock_db, audit):
        original = _transaction_row()
        mock_db.execute_single.return_value = original
        mock_db.execute_returning.return_value = [{**original, "amount": Decimal("250.00")}]

        updated = service.update_transaction_amount(original["id"], Decimal("250"))

        assert updated.amount == Decimal("250.00")
        params = mock_db.execute_returning.call_args[0][1]
        assert params[0] == Decimal("250.00")
        assert params[2] == original["id"]
        assert audit.log_change.call_args.kwargs["changes"] == {
            "amount": {"old": "230.00", "new": "250.00"}
        }

    def test_missing_transaction_raises(self, service, mock_db):
        mock_db.execute_single.return_value = None

        with pytest.raises(ValueError, match="not found"):
            service.update_transaction_amount(uuid4(), Decimal("1"))

    def test_reversed_entry_is_final(self, service, mock_db):
        mock_db.execute_single.return_value = _transaction_row(reversed_by=uuid4())

        with pytest.raises(ValueError, match="reversed"):
            service.update_transaction_amount(uuid4(), Decimal("10"))

        mock_db.execute_returning.assert_not_called()

    def test_non_positive_rejected(self, service):
        with pytest.raises(ValueError, match="positive"):
            service.update_transaction_amount(uuid4(), Decimal("-5"))

    def test_data_error_wrapped(self, service, mock_db):
        mock_db.execute_single.return_value = _transaction_row()
        mock_db.execute_returning.side_effect = psycopg2.OperationalError("boom")

        with pytest.raises(LedgerDataError, match="Failed to update transaction amount"):
            service.update_transaction_amount(uuid4(), Decimal("10"))


# =============================================================================
# ADJUSTMENTS
# =============================================================================


class TestCreateAdjustment:
    """Manual corrections."""

    def test_creates_tagged_entry(self, service, mock_db):
        new_id = uuid4()
        mock_db.execute_returning.return_value = [{"id": new_id}]

        result = service.create_adjustment(MEMBER_ID, TransactionType.CREDIT, "15.5", "Goodwill credit")

        assert result == new_id
        params = mock_db.execute_returning.call_args[0][1]
        assert params[2] == "credit"
        assert params[4] == Decimal("15.50")
        assert params[5] == "Adjustment: Goodwill credit"
        assert params[6].adapted["transaction_type"] == "adjustment"

    def test_accepts_string_type(self, service, mock_db):
        mock_db.execute_returning.return_value = [{"id": uuid4()}]

        service.create_adjustment(MEMBER_ID, "debit", Decimal("5"), "Fuel surcharge")

        assert mock_db.execute_returning.call_args[0][1][2] == "debit"

    def test_rejects_non_directional_type(self, service):
        with pytest.raises(ValueError, match="debit or credit"):
            service.create_adjustment(MEMBER_ID, TransactionType.REFUND, Decimal("5"), "x")


# =============================================================================
# LOOKUPS AND BALANCE
# =============================================================================


class TestLookups:
    """Read helpers."""

    def test_find_invoice_debit_none_when_absent(self, service, mock_db):
        mock_db.execute_single.return_value = None
        assert service.find_invoice_debit_transaction(uuid4()) is None

    def test_find_invoice_debit_matches_tag(self, service, mock_db):
        invoice_id = uuid4()
        debit_id = uuid4()
        mock_db.execute_single.return_value = {"id": debit_id}

        assert service.find_invoice_debit_transaction(invoice_id) == debit_id
        query, params = mock_db.execute_single.call_args[0]
        assert "invoice_debit" in query
        assert "reversed_by IS NULL" in query
        assert params == (str(invoice_id),)

    def test_find_payment_credit(self, service, mock_db):
        credit_id = uuid4()
        mock_db.execute_single.return_value = {"id": credit_id}
        assert service.find_payment_credit_transaction(uuid4()) == credit_id

    def test_get_by_id(self, service, mock_db):
        row = _transaction_row()
        mock_db.execute_single.return_value = row

        transaction = service.get_by_id(row["id"])

        assert transaction.id == row["id"]
        assert transaction.type == TransactionType.DEBIT

    def test_get_by_id_missing(self, service, mock_db):
        mock_db.execute_single.return_value = None
        assert service.get_by_id(uuid4()) is None

    def test_get_user_transactions(self, service, mock_db):
        mock_db.execute.return_value = [_transaction_row(), _transaction_row(type="credit")]

        results = service.get_user_transactions(MEMBER_ID, limit=10)

        assert [t.type for t in results] == [TransactionType.DEBIT, TransactionType.CREDIT]
        assert mock_db.execute.call_args[0][1] == (MEMBER_ID, 10)

    def test_get_invoice_transactions(self, service, mock_db):
        invoice_id = uuid4()
        mock_db.execute.return_value = []

        assert service.get_invoice_transactions(invoice_id) == []
        assert mock_db.execute.call_args[0][1] == (str(invoice_id),)


class TestGetUserAccountBalance:
    """Balance function pass-through."""

    def test_returns_decimal(self, service, mock_db):
        mock_db.execute_scalar.return_value = Decimal("-50.00")
        assert service.get_user_account_balance(MEMBER_ID) == Decimal("-50.00")

    def test_null_is_zero(self, service, mock_db):
        mock_db.execute_scalar.return_value = None
        assert service.get_user_account_balance(MEMBER_ID) == Decimal("0")

    def test_data_error_wrapped(self, service, mock_db):
        mock_db.execute_scalar.side_effect = psycopg2.OperationalError("down")

        with pytest.raises(LedgerDataError, match="Failed to get account balance: down"):
            service.get_user_account_balance(MEMBER_ID)
