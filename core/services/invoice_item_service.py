"""
Invoice item service.

Items store their calculated amounts at full precision. Every add, change or
removal recomputes the invoice totals and syncs the invoice debit in the same
unit of work, so an item edit on a billed invoice never leaves the ledger
behind.
"""

import logging
from typing import Any
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditLogger, AuditAction, compute_changes
from core.models import (
    Invoice,
    InvoiceItem,
    InvoiceItemCreate,
    InvoiceItemUpdate,
    InvoiceStatus,
    InvoiceTotalsSync,
)
from core.money import ZERO, calculate_item_amounts
from core.services.invoice_service import InvoiceService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Items are frozen once an invoice is settled or voided
_LOCKED_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})


class InvoiceItemService:
    """Service for invoice item operations."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger, invoices: InvoiceService):
        self.postgres = postgres
        self.audit = audit
        self.invoices = invoices

    def _get_editable_invoice(self, invoice_id: UUID, tx: PostgresTransaction) -> Invoice:
        invoice = self.invoices.get_by_id(invoice_id, db=tx)
        if invoice is None:
            raise ValueError(f"Invoice {invoice_id} not found")
        if invoice.status in _LOCKED_STATUSES:
            raise ValueError(f"Invoice {invoice_id} is {invoice.status.value}, items cannot change")
        return invoice

    def _publish_status_change(self, sync: InvoiceTotalsSync) -> None:
        """Announce a status the totals recompute moved, after commit."""
        if not sync.status_changed:
            return

        invoice = self.invoices.get_by_id(sync.invoice_id)
        if invoice is not None:
            self.invoices.publish_status_change(invoice, sync.previous_status)

    def create(self, invoice_id: UUID, data: InvoiceItemCreate) -> InvoiceItem:
        """
        Add an item to an invoice.

        Args:
            invoice_id: Invoice to add the item to
            data: Item data; tax_rate defaults to the invoice's rate

        Returns:
            Created item

        Raises:
            ValueError: If invoice not found, paid or cancelled
        """
        now = now_utc()

        with self.postgres.transaction() as tx:
            invoice = self._get_editable_invoice(invoice_id, tx)

            tax_rate = data.tax_rate
            if tax_rate is None:
                tax_rate = invoice.tax_rate if invoice.tax_rate is not None else ZERO

            calculated = calculate_item_amounts(data.quantity, data.unit_price, tax_rate)

            row = tx.execute_returning(
                """
                INSERT INTO invoice_items (
                    id, invoice_id, chargeable_id, description,
                    quantity, unit_price, tax_rate,
                    amount, tax_amount, line_total, rate_inclusive,
                    created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s,
                    %s, %s, %s,
                    %s, %s, %s, %s,
                    %s, %s
                )
                RETURNING *
                """,
                (
                    uuid4(), invoice_id, data.chargeable_id, data.description,
                    data.quantity, data.unit_price, tax_rate,
                    calculated.amount, calculated.tax_amount,
                    calculated.line_total, calculated.rate_inclusive,
                    now, now
                )
            )[0]

            item = InvoiceItem.model_validate(row)

            self.audit.log_change(
                entity_type="invoice_item",
                entity_id=item.id,
                action=AuditAction.CREATE,
                changes={"created": item.model_dump(mode="json")},
                db=tx
            )

            sync = self.invoices.update_invoice_totals_with_transaction_sync(invoice_id, db=tx)

        self._publish_status_change(sync)
        return item

    def get_by_id(self, item_id: UUID) -> InvoiceItem | None:
        """
        Get invoice item by ID.

        Returns:
            Item if found and not deleted, None otherwise.
        """
        row = self.postgres.execute_single(
            "SELECT * FROM invoice_items WHERE id = %s AND deleted_at IS NULL",
            (item_id,)
        )

        if row is None:
            return None

        return InvoiceItem.model_validate(row)

    def update(self, item_id: UUID, data: InvoiceItemUpdate) -> InvoiceItem:
        """
        Update an item and recalculate its amounts.

        Args:
            item_id: Item UUID
            data: Fields to update (only non-None fields are changed)

        Returns:
            Updated item

        Raises:
            ValueError: If item not found, or its invoice is paid or cancelled
        """
        current = self.get_by_id(item_id)
        if current is None:
            raise ValueError(f"Invoice item {item_id} not found")

        updates = data.model_dump(exclude_none=True)
        if not updates:
            return current

        merged: dict[str, Any] = {
            "quantity": current.quantity,
            "unit_price": current.unit_price,
            "tax_rate": current.tax_rate,
            **updates,
        }
        calculated = calculate_item_amounts(
            merged["quantity"], merged["unit_price"], merged["tax_rate"]
        )
        merged.update(calculated.model_dump())

        set_parts = []
        params = []
        for field, value in merged.items():
            set_parts.append(f"{field} = %s")
            params.append(value)

        set_parts.append("updated_at = %s")
        params.append(now_utc())
        params.append(item_id)

        with self.postgres.transaction() as tx:
            self._get_editable_invoice(current.invoice_id, tx)

            row = tx.execute_returning(
                f"""
                UPDATE invoice_items
                SET {', '.join(set_parts)}
                WHERE id = %s
                RETURNING *
                """,
                tuple(params)
            )[0]

            updated = InvoiceItem.model_validate(row)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="invoice_item",
                    entity_id=item_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    db=tx
                )

            sync = self.invoices.update_invoice_totals_with_transaction_sync(current.invoice_id, db=tx)

        self._publish_status_change(sync)
        return updated

    def delete(self, item_id: UUID) -> bool:
        """
        Soft delete an item and recompute its invoice.

        Returns:
            True if deleted, False if not found

        Raises:
            ValueError: If the invoice is paid or cancelled
        """
        current = self.get_by_id(item_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            self._get_editable_invoice(current.invoice_id, tx)

            tx.execute_returning(
                """
                UPDATE invoice_items
                SET deleted_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING id
                """,
                (now_utc(), now_utc(), item_id)
            )

            self.audit.log_change(
                entity_type="invoice_item",
                entity_id=item_id,
                action=AuditAction.DELETE,
                changes={"deleted": current.model_dump(mode="json")},
                db=tx
            )

            sync = self.invoices.update_invoice_totals_with_transaction_sync(current.invoice_id, db=tx)

        self._publish_status_change(sync)
        return True

    def list_for_invoice(self, invoice_id: UUID) -> list[InvoiceItem]:
        """
        List all items on an invoice.

        Returns:
            List of items ordered by creation time
        """
        rows = self.postgres.execute(
            """
            SELECT * FROM invoice_items
            WHERE invoice_id = %s AND deleted_at IS NULL
            ORDER BY created_at ASC
            """,
            (invoice_id,)
        )

        return [InvoiceItem.model_validate(row) for row in rows]
