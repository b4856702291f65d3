"""
Audit trail for ledger changes.

Every invoice, item, payment and transaction mutation is logged here. The
audit log is:
- Append-only (entries never modified or deleted)
- Actor-attributed (which staff member made the change)
- Detailed (captures old and new values)

Entries can join the caller's unit of work through `db=`, so an audit row
commits or rolls back together with the change it describes.
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, PostgresTransaction, to_json
from utils.actor_context import get_current_actor_id
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REVERSE = "reverse"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two entity states.

    Args:
        old: Previous state of entity
        new: New state of entity
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    all_keys = set(old.keys()) | set(new.keys())
    for key in all_keys:
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Audit trail for ledger entity changes.

    Pass pydantic models through model_dump(mode="json") so UUIDs, Decimals
    and datetimes serialize cleanly.

    Usage:
        audit.log_change(
            entity_type="transaction",
            entity_id=transaction_id,
            action=AuditAction.CREATE,
            changes={"created": {"type": "debit", "amount": "230.00"}},
            db=tx,
        )
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        changes: dict[str, Any],
        actor_id: UUID | None = None,
        db: PostgresClient | PostgresTransaction | None = None
    ) -> None:
        """
        Log an entity change.

        Args:
            entity_type: "invoice", "invoice_item", "payment" or "transaction"
            entity_id: ID of the entity
            action: The action performed
            changes: The changes made (format depends on action)
            actor_id: Staff member who made the change (defaults to current context)
            db: Executor to write through (defaults to a standalone write)

        Changes format by action:
        - CREATE: {"created": {entity data}}
        - UPDATE: {"field": {"old": old_val, "new": new_val}, ...}
        - DELETE: {"deleted": {entity data at deletion}}
        - REVERSE: {"reversed_by": reversal id, "reason": text}
        """
        if actor_id is None:
            actor_id = get_current_actor_id()

        (db or self.postgres).execute(
            """
            INSERT INTO audit_log (id, actor_id, entity_type, entity_id, action, changes, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                uuid4(),
                actor_id,
                entity_type,
                entity_id,
                action.value,
                to_json(changes),
                now_utc()
            )
        )

    def get_entity_history(
        self,
        entity_type: str,
        entity_id: UUID
    ) -> list[dict[str, Any]]:
        """Full audit history for an entity, newest first."""
        return self.postgres.execute(
            """
            SELECT id, actor_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE entity_type = %s AND entity_id = %s
            ORDER BY created_at DESC
            """,
            (entity_type, entity_id)
        )
