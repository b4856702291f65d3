"""
Propagate the acting staff member through the call stack using contextvars.

The actor is whoever performs a ledger operation (an instructor recording a
payment, an admin cancelling an invoice). It is distinct from the member who
owns an invoice or transaction, which is always passed explicitly.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

_current_actor_id: ContextVar[UUID | None] = ContextVar("current_actor_id", default=None)


def get_current_actor_id() -> UUID:
    """
    Get the acting user's ID from context.

    Raises RuntimeError if no actor is set. Audited writes need an actor,
    so reaching one without context is a bug in the caller.
    """
    actor_id = _current_actor_id.get()
    if actor_id is None:
        raise RuntimeError(
            "No actor context set. Ledger writes must run inside actor_context() "
            "so they can be attributed in the audit trail."
        )
    return actor_id


def peek_current_actor_id() -> UUID | None:
    """Actor ID if one is set, None otherwise. Never raises."""
    return _current_actor_id.get()


def set_current_actor_id(actor_id: UUID) -> None:
    """Set the acting user for the current context."""
    _current_actor_id.set(actor_id)


def clear_current_actor_id() -> None:
    """Clear the acting user. Call in a finally block to avoid leakage."""
    _current_actor_id.set(None)


@contextmanager
def actor_context(actor_id: UUID):
    """
    Temporarily act as `actor_id`.

    Example:
        with actor_context(admin_id):
            invoice_service.update_invoice_status(invoice_id, InvoiceStatus.CANCELLED)
    """
    previous = _current_actor_id.get()
    set_current_actor_id(actor_id)
    try:
        yield
    finally:
        if previous is None:
            clear_current_actor_id()
        else:
            set_current_actor_id(previous)
