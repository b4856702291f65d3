"""Typed exceptions for ledger failures."""


class LedgerError(Exception):
    """Base class for ledger errors."""


class LedgerDataError(LedgerError):
    """
    The data store rejected or failed an operation.

    Always carries a descriptive prefix naming the operation, e.g.
    "Failed to create invoice debit transaction: <driver message>",
    and chains the driver exception as __cause__.
    """


class InvalidStatusTransitionError(LedgerError, ValueError):
    """Requested invoice status is not reachable from the current one."""

    def __init__(self, invoice_id, old_status: str, new_status: str):
        self.invoice_id = invoice_id
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Invoice {invoice_id} cannot move from '{old_status}' to '{new_status}'"
        )
