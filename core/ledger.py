"""
Ledger wiring.

Builds every service on one PostgresClient, AuditLogger and EventBus, and
subscribes the event handlers:

    ledger = build_ledger()
    with actor_context(staff_id):
        invoice = ledger.invoices.create(InvoiceCreate(user_id=member_id))
        ledger.items.create(invoice.id, InvoiceItemCreate(description="Dual C172", quantity=Decimal("1.5"), unit_price=Decimal("240")))
        ledger.invoices.update_invoice_status(invoice.id, InvoiceStatus.PENDING)
"""

import logging
from dataclasses import dataclass

from clients.postgres_client import PostgresClient
from clients.vault_client import get_database_url
from core.audit import AuditLogger
from core.config import LedgerConfig
from core.event_bus import EventBus
from core.handlers.balance_refresh_handler import handle_balance_refresh
from core.services.balance_service import AccountBalanceService
from core.services.credit_note_service import CreditNoteService
from core.services.invoice_item_service import InvoiceItemService
from core.services.invoice_service import InvoiceService
from core.services.payment_service import PaymentService
from core.services.settings_service import LedgerSettings, SettingsService
from core.services.transaction_service import TransactionService

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """Wired ledger services sharing one database client and event bus."""
    postgres: PostgresClient
    audit: AuditLogger
    event_bus: EventBus
    config: LedgerConfig
    settings: LedgerSettings
    transactions: TransactionService
    invoices: InvoiceService
    items: InvoiceItemService
    payments: PaymentService
    credit_notes: CreditNoteService
    balances: AccountBalanceService

    def close(self) -> None:
        self.postgres.close()


def register_handlers(event_bus: EventBus, balances: AccountBalanceService) -> None:
    """Subscribe the ledger's event handlers."""
    refresh = handle_balance_refresh(balances)
    for event_type in (
        "PaymentRecorded", "PaymentReversed", "InvoiceStatusChanged", "CreditNoteApplied",
    ):
        event_bus.subscribe(event_type, refresh)


def build_ledger(
    database_url: str | None = None,
    config: LedgerConfig | None = None,
    settings: LedgerSettings | None = None
) -> Ledger:
    """
    Wire the ledger.

    Args:
        database_url: DSN; defaults to LEDGER_DATABASE_URL or Vault
        config: Fallbacks and limits; defaults to LedgerConfig()
        settings: Settings source; defaults to the settings table

    Returns:
        Ledger with every service ready to use
    """
    config = config or LedgerConfig()
    postgres = PostgresClient(database_url or get_database_url())
    audit = AuditLogger(postgres)
    event_bus = EventBus()

    settings = settings or SettingsService(postgres, config)
    transactions = TransactionService(postgres, audit)
    invoices = InvoiceService(postgres, audit, event_bus, transactions, settings, config)
    items = InvoiceItemService(postgres, audit, invoices)
    payments = PaymentService(postgres, audit, event_bus, transactions, invoices)
    credit_notes = CreditNoteService(postgres, audit, event_bus, transactions, invoices, config)
    balances = AccountBalanceService(postgres, transactions, config)

    register_handlers(event_bus, balances)
    logger.info("Ledger services initialized")

    return Ledger(
        postgres=postgres,
        audit=audit,
        event_bus=event_bus,
        config=config,
        settings=settings,
        transactions=transactions,
        invoices=invoices,
        items=items,
        payments=payments,
        credit_notes=credit_notes,
        balances=balances,
    )
