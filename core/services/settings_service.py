"""
Organization settings used by invoicing.

The ledger depends on the LedgerSettings capability, not on a settings table,
so tests and alternative stores can supply their own. SettingsService is the
PostgreSQL-backed implementation: it reads the `settings` key/value table and
the `tax_rates` table, validates what it finds, and falls back to LedgerConfig
when a value is missing, malformed or unreadable.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol
from uuid import UUID

import psycopg2

from clients.postgres_client import PostgresClient
from core.config import LedgerConfig
from core.money import to_decimal

logger = logging.getLogger(__name__)

INVOICE_PREFIX_PATTERN = re.compile(r"^[A-Z0-9]+$")

_INVOICING = "invoicing"


class LedgerSettings(Protocol):
    """Settings capability the invoice lifecycle depends on."""

    def get_invoice_prefix(self) -> str: ...

    def get_organization_tax_rate(self) -> Decimal: ...

    def get_tax_rate_for_user(self, user_id: UUID) -> Decimal: ...

    def get_default_invoice_due_days(self) -> int: ...


def validate_invoice_prefix(value: Any, default: str) -> str:
    """Return `value` if it is an uppercase alphanumeric prefix, else `default`."""
    if isinstance(value, str) and INVOICE_PREFIX_PATTERN.match(value):
        return value
    return default


class SettingsService:
    """Settings lookups over the settings and tax_rates tables."""

    def __init__(self, postgres: PostgresClient, config: LedgerConfig | None = None):
        self.postgres = postgres
        self.config = config or LedgerConfig()

    def _get_setting(self, category: str, key: str) -> Any:
        """Raw JSONB setting value, or None when absent or unreadable."""
        try:
            row = self.postgres.execute_single(
                """
                SELECT setting_value FROM settings
                WHERE category = %s AND setting_key = %s
                """,
                (category, key)
            )
        except psycopg2.Error as e:
            logger.warning(f"Could not read setting {category}.{key}: {e}")
            return None

        if row is None:
            return None
        return row["setting_value"]

    def get_invoice_prefix(self) -> str:
        """Configured invoice prefix, or the default when missing or not ^[A-Z0-9]+$."""
        value = self._get_setting(_INVOICING, "invoice_prefix")
        prefix = validate_invoice_prefix(value, self.config.default_invoice_prefix)
        if value is not None and prefix != value:
            logger.warning(
                f"Invalid invoice_prefix setting {value!r}, using {self.config.default_invoice_prefix}"
            )
        return prefix

    def get_organization_tax_rate(self) -> Decimal:
        """Rate of the newest active default tax rate, or the configured fallback."""
        try:
            rate = self.postgres.execute_scalar(
                """
                SELECT rate FROM tax_rates
                WHERE is_default = true AND is_active = true
                ORDER BY effective_from DESC
                LIMIT 1
                """
            )
        except psycopg2.Error as e:
            logger.warning(f"Could not read default tax rate, using fallback: {e}")
            return self.config.fallback_tax_rate

        if rate is None:
            logger.warning(
                f"No default tax rate found, using {self.config.fallback_tax_rate}"
            )
            return self.config.fallback_tax_rate

        return to_decimal(rate)

    def get_tax_rate_for_user(self, user_id: UUID) -> Decimal:
        """Member's tax rate override if set, otherwise the organization rate."""
        try:
            override = self.postgres.execute_scalar(
                "SELECT tax_rate_override FROM users WHERE id = %s",
                (user_id,)
            )
        except psycopg2.Error as e:
            logger.warning(f"Could not read tax override for user {user_id}: {e}")
            override = None

        if override is not None:
            return to_decimal(override)

        return self.get_organization_tax_rate()

    def get_default_invoice_due_days(self) -> int:
        """Configured days until due, within 1-365, else the configured default."""
        value = self._get_setting(_INVOICING, "default_invoice_due_days")
        default = self.config.default_invoice_due_days

        if value is None:
            return default

        try:
            days = int(to_decimal(value) if not isinstance(value, int) else value)
        except (InvalidOperation, TypeError, ValueError):
            logger.warning(f"Invalid default_invoice_due_days value {value!r}, using {default}")
            return default

        if days < 1 or days > 365:
            logger.warning(f"Out of range default_invoice_due_days value {days}, using {default}")
            return default

        return days
