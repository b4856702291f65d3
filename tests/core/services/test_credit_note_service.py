"""Tests for CreditNoteService.

The database, ledger and invoice lookups are mocked. Inserts echo their
parameters back as rows.
"""

from decimal import Decimal
from unittest.mock import Mock
from uuid import UUID, uuid4

import psycopg2
import pytest

from core.audit import AuditAction
from core.exceptions import LedgerDataError
from core.models import (
    CreditNoteCreate,
    CreditNoteCreditData,
    CreditNoteItemCreate,
    CreditNoteStatus,
    CreditNoteUpdate,
    Invoice,
    InvoiceStatus,
)
from core.services.credit_note_service import calculate_line_item, calculate_totals
from utils.actor_context import actor_context
from utils.timezone import now_utc

MEMBER_ID = UUID("00000000-0000-0000-0000-000000000002")
OTHER_MEMBER_ID = UUID("00000000-0000-0000-0000-000000000003")
STAFF_ID = UUID("00000000-0000-0000-0000-000000000001")


def _invoice(**overrides) -> Invoice:
    now = now_utc()
    data = dict(
        id=uuid4(), invoice_number="INV-2026-10-0001", user_id=MEMBER_ID,
        status="pending", total_amount=Decimal("230.00"), balance_due=Decimal("230.00"),
        created_at=now, updated_at=now,
    )
    data.update(overrides)
    return Invoice.model_validate(data)


def _credit_note_row(**overrides) -> dict:
    now = now_utc()
    row = {
        "id": uuid4(),
        "credit_note_number": "CN-2026-10-0001",
        "original_invoice_id": uuid4(),
        "user_id": MEMBER_ID,
        "reason": "Aircraft unserviceable, lesson cut short",
        "status": "draft",
        "issue_date": now,
        "applied_date": None,
        "subtotal": Decimal("50.00"),
        "tax_total": Decimal("7.50"),
        "total_amount": Decimal("57.50"),
        "notes": None,
        "created_by": STAFF_ID,
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
        "deleted_by": None,
    }
    row.update(overrides)
    return row


_NOTE_COLUMNS = [
    "id", "credit_note_number", "original_invoice_id", "user_id", "reason",
    "status", "issue_date", "subtotal", "tax_total", "total_amount",
    "notes", "created_by", "created_at", "updated_at",
]
_ITEM_COLUMNS = [
    "id", "credit_note_id", "original_invoice_item_id", "description",
    "quantity", "unit_price", "tax_rate",
    "amount", "tax_amount", "line_total",
    "created_at", "updated_at",
]


def _insert_echo(query, params):
    columns = _ITEM_COLUMNS if "credit_note_items" in query else _NOTE_COLUMNS
    return [dict(zip(columns, params))]


@pytest.fixture
def transactions():
    from core.services.transaction_service import TransactionService
    return Mock(spec=TransactionService)


@pytest.fixture
def invoices():
    from core.services.invoice_service import InvoiceService
    return Mock(spec=InvoiceService)


@pytest.fixture
def service(mock_db, audit, event_bus, transactions, invoices):
    from core.services.credit_note_service import CreditNoteService
    return CreditNoteService(mock_db, audit, event_bus, transactions, invoices)


@pytest.fixture
def applied_events(event_bus):
    events = []
    event_bus.subscribe("CreditNoteApplied", events.append)
    return events


@pytest.fixture
def create_data():
    return CreditNoteCreate(
        original_invoice_id=uuid4(),
        user_id=MEMBER_ID,
        reason="Aircraft unserviceable, lesson cut short",
        items=[
            CreditNoteItemCreate(
                description="Dual instruction C172", quantity=Decimal("0.5"),
                unit_price=Decimal("100"), tax_rate=Decimal("0.15"),
            ),
        ],
    )


# =============================================================================
# CALCULATIONS
# =============================================================================


class TestCalculations:
    """Per-line rounding and totals."""

    def test_line_item(self):
        line = calculate_line_item(Decimal("2"), Decimal("100"), Decimal("0.15"))

        assert (line.amount, line.tax_amount, line.line_total) == (
            Decimal("200.00"), Decimal("30.00"), Decimal("230.00")
        )

    def test_each_line_figure_rounded_to_cents(self):
        line = calculate_line_item("1", "33.333", "0.15")

        assert line.amount == Decimal("33.33")
        assert line.tax_amount == Decimal("5.00")
        assert line.line_total == Decimal("38.33")

    def test_totals_sum_rounded_lines(self):
        lines = [
            calculate_line_item("1", "33.333", "0.15"),
            {"amount": Decimal("10.00"), "tax_amount": Decimal("1.50"), "line_total": Decimal("11.50")},
        ]

        totals = calculate_totals(lines)

        assert totals.subtotal == Decimal("43.33")
        assert totals.tax_total == Decimal("6.50")
        assert totals.total_amount == Decimal("49.83")

    def test_empty_totals_are_zero(self):
        assert calculate_totals([]).total_amount == Decimal("0.00")

    def test_available_on_service(self, service):
        assert service.calculate_line_item(1, 10, 0).line_total == Decimal("10.00")


# =============================================================================
# CREATE
# =============================================================================


class TestCreateCreditNote:
    """Draft credit notes against billed invoices."""

    def test_creates_draft_with_lines(self, service, mock_db, audit, invoices, create_data):
        invoices.get_by_id.return_value = _invoice(id=create_data.original_invoice_id)
        mock_db.execute_scalar.return_value = "CN-2026-10-0001"
        mock_db.execute_returning.side_effect = _insert_echo

        with actor_context(STAFF_ID):
            credit_note = service.create_credit_note(create_data)

        assert credit_note.status == CreditNoteStatus.DRAFT
        assert credit_note.credit_note_number == "CN-2026-10-0001"
        assert credit_note.created_by == STAFF_ID
        assert (credit_note.subtotal, credit_note.tax_total, credit_note.total_amount) == (
            Decimal("50.00"), Decimal("7.50"), Decimal("57.50")
        )
        assert len(credit_note.items) == 1
        assert credit_note.items[0].line_total == Decimal("57.50")
        assert credit_note.items[0].credit_note_id == credit_note.id
        assert mock_db.execute_scalar.call_args[0][1] == ("CN", 4)
        invoices.get_by_id.assert_called_once_with(create_data.original_invoice_id, db=mock_db)
        assert audit.log_change.call_args.kwargs["action"] == AuditAction.CREATE

    @pytest.mark.parametrize("status", ["pending", "overdue", "paid", "cancelled"])
    def test_any_billed_or_cancelled_invoice_accepted(self, service, mock_db, invoices, create_data, status):
        invoices.get_by_id.return_value = _invoice(status=status)
        mock_db.execute_scalar.return_value = "CN-2026-10-0001"
        mock_db.execute_returning.side_effect = _insert_echo

        assert service.create_credit_note(create_data).status == CreditNoteStatus.DRAFT

    def test_draft_invoice_rejected(self, service, mock_db, invoices, create_data):
        invoices.get_by_id.return_value = _invoice(status=InvoiceStatus.DRAFT)

        with pytest.raises(ValueError, match="draft"):
            service.create_credit_note(create_data)

        mock_db.execute_returning.assert_not_called()

    def test_other_members_invoice_rejected(self, service, mock_db, invoices, create_data):
        invoices.get_by_id.return_value = _invoice(user_id=OTHER_MEMBER_ID)

        with pytest.raises(ValueError, match="does not own"):
            service.create_credit_note(create_data)

        mock_db.execute_scalar.assert_not_called()

    def test_missing_invoice(self, service, invoices, create_data):
        invoices.get_by_id.return_value = None

        with pytest.raises(ValueError, match="not found"):
            service.create_credit_note(create_data)

    def test_numbering_failure_wrapped(self, service, mock_db, invoices, create_data):
        invoices.get_by_id.return_value = _invoice()
        mock_db.execute_scalar.side_effect = psycopg2.OperationalError("locked")

        with pytest.raises(LedgerDataError, match="Failed to generate credit note number"):
            service.create_credit_note(create_data)


# =============================================================================
# APPLY
# =============================================================================


class TestApplyCreditNote:
    """Crediting the member's account."""

    def test_credits_member_and_marks_applied(
        self, service, mock_db, audit, transactions, applied_events
    ):
        row = _credit_note_row()
        transaction_id = uuid4()
        mock_db.execute_single.return_value = row
        mock_db.execute_returning.side_effect = lambda query, params: [
            {**row, "status": params[0], "applied_date": params[1], "updated_at": params[2]}
        ]
        transactions.create_credit_note_credit.return_value = transaction_id
        transactions.get_user_account_balance.return_value = Decimal("-172.50")

        result = service.apply_credit_note(row["id"])

        transactions.create_credit_note_credit.assert_called_once_with(
            CreditNoteCreditData(
                user_id=MEMBER_ID,
                amount=Decimal("57.50"),
                credit_note_id=row["id"],
                credit_note_number="CN-2026-10-0001",
                invoice_id=row["original_invoice_id"],
            ),
            db=mock_db
        )
        assert "FOR UPDATE" in mock_db.execute_single.call_args[0][0]
        assert mock_db.execute_returning.call_args[0][1][0] == "applied"
        assert result.transaction_id == transaction_id
        assert result.amount_credited == Decimal("57.50")
        assert result.new_balance == Decimal("-172.50")
        assert result.applied_date is not None
        assert audit.log_change.call_args.kwargs["changes"]["status"] == {"old": "draft", "new": "applied"}
        assert len(applied_events) == 1
        assert applied_events[0].transaction_id == transaction_id

    def test_applied_note_rejected(self, service, mock_db, transactions, applied_events):
        mock_db.execute_single.return_value = _credit_note_row(status="applied", applied_date=now_utc())

        with pytest.raises(ValueError, match="applied, cannot apply"):
            service.apply_credit_note(uuid4())

        transactions.create_credit_note_credit.assert_not_called()
        assert applied_events == []

    def test_zero_total_rejected(self, service, mock_db, transactions):
        mock_db.execute_single.return_value = _credit_note_row(
            subtotal=Decimal("0"), tax_total=Decimal("0"), total_amount=Decimal("0"),
        )

        with pytest.raises(ValueError, match="positive"):
            service.apply_credit_note(uuid4())

        transactions.create_credit_note_credit.assert_not_called()

    def test_ledger_failure_leaves_note_draft(self, service, mock_db, transactions, applied_events):
        mock_db.execute_single.return_value = _credit_note_row()
        transactions.create_credit_note_credit.side_effect = LedgerDataError("Failed to create credit note transaction: x")

        with pytest.raises(LedgerDataError):
            service.apply_credit_note(uuid4())

        mock_db.execute_returning.assert_not_called()
        assert applied_events == []

    def test_missing_note(self, service, mock_db):
        mock_db.execute_single.return_value = None

        with pytest.raises(ValueError, match="not found"):
            service.apply_credit_note(uuid4())


# =============================================================================
# UPDATE AND DELETE
# =============================================================================


class TestUpdateDraftCreditNote:
    """Rewording drafts."""

    def test_updates_reason(self, service, mock_db, audit):
        row = _credit_note_row()
        mock_db.execute_single.return_value = row
        mock_db.execute_returning.side_effect = lambda query, params: [{**row, "reason": params[0]}]

        updated = service.update_draft_credit_note(row["id"], CreditNoteUpdate(reason="Weather cancellation"))

        assert updated.reason == "Weather cancellation"
        assert "reason = %s" in mock_db.execute_returning.call_args[0][0]
        assert audit.log_change.call_args.kwargs["action"] == AuditAction.UPDATE

    def test_nothing_to_change_returns_current(self, service, mock_db):
        row = _credit_note_row()
        mock_db.execute_single.return_value = row

        assert service.update_draft_credit_note(row["id"], CreditNoteUpdate()).id == row["id"]
        mock_db.execute_returning.assert_not_called()

    def test_applied_note_rejected(self, service, mock_db):
        mock_db.execute_single.return_value = _credit_note_row(status="applied")

        with pytest.raises(ValueError, match="only drafts can be updated"):
            service.update_draft_credit_note(uuid4(), CreditNoteUpdate(notes="late"))


class TestSoftDeleteCreditNote:
    """Withdrawing drafts."""

    def test_deletes_note_and_lines(self, service, mock_db, audit):
        row = _credit_note_row()
        mock_db.execute_single.return_value = row
        mock_db.execute_returning.side_effect = [[{"id": uuid4()}, {"id": uuid4()}], [{"id": row["id"]}]]

        assert service.soft_delete_credit_note(row["id"], "Raised in error") is True

        queries = [c[0][0] for c in mock_db.execute_returning.call_args_list]
        assert "UPDATE credit_note_items" in queries[0]
        assert "UPDATE credit_notes" in queries[1]
        changes = audit.log_change.call_args.kwargs["changes"]
        assert audit.log_change.call_args.kwargs["action"] == AuditAction.DELETE
        assert changes["reason"] == "Raised in error"
        assert changes["items_deleted"] == 2

    def test_applied_note_rejected(self, service, mock_db):
        mock_db.execute_single.return_value = _credit_note_row(status="applied")

        with pytest.raises(ValueError, match="only drafts can be deleted"):
            service.soft_delete_credit_note(uuid4())

        mock_db.execute_returning.assert_not_called()

    def test_missing_returns_false(self, service, mock_db):
        mock_db.execute_single.return_value = None
        assert service.soft_delete_credit_note(uuid4()) is False


# =============================================================================
# READS
# =============================================================================


class TestReads:

    def test_get_by_id_loads_live_lines(self, service, mock_db):
        row = _credit_note_row()
        now = now_utc()
        mock_db.execute_single.return_value = row
        mock_db.execute.return_value = [{
            "id": uuid4(), "credit_note_id": row["id"], "original_invoice_item_id": None,
            "description": "Dual instruction C172", "quantity": Decimal("0.5"),
            "unit_price": Decimal("100"), "tax_rate": Decimal("0.15"),
            "amount": Decimal("50.00"), "tax_amount": Decimal("7.50"), "line_total": Decimal("57.50"),
            "created_at": now, "updated_at": now, "deleted_at": None,
        }]

        credit_note = service.get_by_id(row["id"])

        assert credit_note.items[0].line_total == Decimal("57.50")
        assert "deleted_at IS NULL" in mock_db.execute.call_args[0][0]

    def test_get_by_id_missing(self, service, mock_db):
        mock_db.execute_single.return_value = None
        assert service.get_by_id(uuid4()) is None

    def test_credit_notes_for_invoice_newest_first(self, service, mock_db):
        invoice_id = uuid4()
        mock_db.execute.return_value = [
            _credit_note_row(original_invoice_id=invoice_id),
            _credit_note_row(original_invoice_id=invoice_id, credit_note_number="CN-2026-10-0002"),
        ]

        notes = service.get_credit_notes_for_invoice(invoice_id)

        assert len(notes) == 2
        query, params = mock_db.execute.call_args[0]
        assert "ORDER BY created_at DESC" in query
        assert params == (invoice_id,)
