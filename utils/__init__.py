"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, to_utc, days_ago, days_from_now, is_past
from utils.actor_context import (
    get_current_actor_id,
    peek_current_actor_id,
    set_current_actor_id,
    clear_current_actor_id,
    actor_context,
)
