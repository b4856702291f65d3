"""
Handler for events that move money on a member's account.

On PaymentRecorded, PaymentReversed, InvoiceStatusChanged and
CreditNoteApplied, refreshes the member's balance so downstream readers see
the committed ledger state.
"""

import logging
from typing import Callable

from core.events import CreditNoteApplied, InvoiceStatusChanged, PaymentRecorded, PaymentReversed

logger = logging.getLogger(__name__)


def handle_balance_refresh(balance_service) -> Callable:
    """
    Factory that returns a balance refresh handler.

    Args:
        balance_service: AccountBalanceService instance

    Returns:
        Handler callable for payment, invoice status and credit note events
    """

    def handler(event: PaymentRecorded | PaymentReversed | InvoiceStatusChanged | CreditNoteApplied):
        if isinstance(event, InvoiceStatusChanged):
            user_id = event.invoice.user_id
        elif isinstance(event, CreditNoteApplied):
            user_id = event.credit_note.user_id
        else:
            user_id = event.payment.user_id

        balance = balance_service.refresh_balance(user_id)
        logger.info(f"Balance for user {user_id} is {balance} after {type(event).__name__}")

    return handler
