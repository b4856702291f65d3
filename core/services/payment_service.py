"""
Payment service.

Recording a payment touches three things that must agree: the payment row,
the member's credit in the ledger, and the invoice's total_paid and status.
All three are written in one unit of work. Reversal undoes them the same way,
booking a reversal of the credit rather than deleting anything.
"""

import logging
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, to_json
from core.audit import AuditLogger, AuditAction
from core.event_bus import EventBus
from core.events import PaymentRecorded, PaymentReversed, TransactionReversed
from core.models import InvoiceStatus, Payment, PaymentCreate, PaymentCreditData
from core.services.invoice_service import InvoiceService, format_fallback_invoice_number
from core.services.transaction_service import TransactionService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for payment operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        transactions: TransactionService,
        invoices: InvoiceService
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.transactions = transactions
        self.invoices = invoices

    def record_payment(self, data: PaymentCreate) -> Payment:
        """
        Record a payment against an invoice.

        Args:
            data: Invoice, amount and payment method

        Returns:
            Created payment

        Raises:
            ValueError: If invoice not found or cancelled
            LedgerDataError: If the ledger write fails
        """
        with self.postgres.transaction() as tx:
            invoice = self.invoices.get_by_id(data.invoice_id, db=tx)
            if invoice is None:
                raise ValueError(f"Invoice {data.invoice_id} not found")
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ValueError(f"Invoice {data.invoice_id} is cancelled")

            row = tx.execute_returning(
                """
                INSERT INTO payments (
                    id, invoice_id, user_id, amount, payment_method,
                    payment_reference, notes, metadata, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid4(), invoice.id, invoice.user_id, data.amount, data.payment_method,
                    data.payment_reference, data.notes, to_json({}), now_utc()
                )
            )[0]

            payment = Payment.model_validate(row)

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment.id,
                action=AuditAction.CREATE,
                changes={"created": payment.model_dump(mode="json")},
                db=tx
            )

            transaction_id = self.transactions.create_payment_credit(
                PaymentCreditData(
                    user_id=invoice.user_id,
                    amount=payment.amount,
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number or format_fallback_invoice_number(
                        self.invoices.get_invoice_prefix(), invoice.id
                    ),
                    payment_id=payment.id,
                ),
                db=tx
            )

            updated_invoice = self.invoices.process_payment(invoice.id, payment.amount, db=tx)

        logger.info(f"Recorded payment {payment.id} of {payment.amount} on invoice {invoice.id}")

        self.event_bus.publish(PaymentRecorded.create(payment, transaction_id))
        self.invoices.publish_status_change(updated_invoice, invoice.status)

        return payment

    def reverse_payment(self, payment_id: UUID, reason: str) -> Payment:
        """
        Reverse a payment: offset its credit and take it off the invoice.

        Args:
            payment_id: Payment UUID
            reason: Why the payment is being reversed

        Returns:
            Payment marked as reversed

        Raises:
            ValueError: If payment not found, already reversed, or has no credit
            LedgerDataError: If the ledger write fails
        """
        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                "SELECT * FROM payments WHERE id = %s FOR UPDATE",
                (payment_id,)
            )
            if row is None:
                raise ValueError(f"Payment {payment_id} not found")

            current = Payment.model_validate(row)
            if current.is_reversed:
                raise ValueError(f"Payment {payment_id} is already reversed")

            credit_id = self.transactions.find_payment_credit_transaction(payment_id, db=tx)
            if credit_id is None:
                raise ValueError(f"No credit transaction found for payment {payment_id}")

            reversal_id = self.transactions.reverse_transaction(credit_id, reason, db=tx)

            invoice = self.invoices.get_by_id(current.invoice_id, db=tx)
            if invoice is None:
                raise ValueError(f"Invoice {current.invoice_id} not found")

            updated_invoice = self.invoices.remove_payment(invoice.id, current.amount, db=tx)

            metadata = {
                **current.metadata,
                "reversed_at": now_utc().isoformat(),
                "reversal_transaction_id": str(reversal_id),
                "reversal_reason": reason,
            }
            row = tx.execute_returning(
                """
                UPDATE payments
                SET metadata = %s
                WHERE id = %s
                RETURNING *
                """,
                (to_json(metadata), payment_id)
            )[0]

            payment = Payment.model_validate(row)

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.REVERSE,
                changes={"reversed_by": str(reversal_id), "reason": reason},
                db=tx
            )

        logger.info(f"Reversed payment {payment_id} with transaction {reversal_id} ({reason})")

        self.event_bus.publish(
            TransactionReversed.create(payment.user_id, credit_id, reversal_id, reason)
        )
        self.event_bus.publish(PaymentReversed.create(payment, reversal_id, reason))
        self.invoices.publish_status_change(updated_invoice, invoice.status)

        return payment

    def get_by_id(self, payment_id: UUID) -> Payment | None:
        """
        Get payment by ID.

        Returns:
            Payment if found, None otherwise.
        """
        row = self.postgres.execute_single(
            "SELECT * FROM payments WHERE id = %s",
            (payment_id,)
        )

        if row is None:
            return None

        return Payment.model_validate(row)

    def list_for_invoice(self, invoice_id: UUID) -> list[Payment]:
        """Payments on an invoice, oldest first, reversed ones included."""
        rows = self.postgres.execute(
            """
            SELECT * FROM payments
            WHERE invoice_id = %s
            ORDER BY created_at ASC
            """,
            (invoice_id,)
        )

        return [Payment.model_validate(row) for row in rows]
