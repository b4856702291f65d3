"""Ledger configuration."""

from decimal import Decimal

from pydantic import BaseModel, Field


class LedgerConfig(BaseModel):
    """
    Ledger configuration.

    These are fallbacks and limits. Organization-level values (invoice prefix,
    tax rate, due days) live in the settings table and win when valid.
    """

    # Invoicing fallbacks
    default_invoice_prefix: str = Field(
        default="INV",
        description="Invoice number prefix when the configured one is missing or invalid",
        pattern=r"^[A-Z0-9]+$",
    )
    fallback_tax_rate: Decimal = Field(
        default=Decimal("0.15"),
        description="Tax rate used when no active default tax rate exists",
        ge=0,
        le=1,
    )
    default_invoice_due_days: int = Field(
        default=7,
        description="Days until a new invoice is due when not configured",
        ge=1,
        le=365,
    )
    invoice_sequence_padding: int = Field(
        default=4,
        description="Digits in the sequential part of an invoice number",
        ge=1,
        le=10,
    )
    credit_note_prefix: str = Field(
        default="CN",
        description="Credit note number prefix; numbered per month like invoices",
        pattern=r"^[A-Z0-9]+$",
    )

    # Balance reporting
    balance_history_days: int = Field(
        default=30,
        description="Default trailing window for balance history",
        ge=1,
        le=3650,
    )
    outstanding_balance_limit: int = Field(
        default=50,
        description="Default number of members returned by the outstanding balance scan",
        ge=1,
        le=1000,
    )
