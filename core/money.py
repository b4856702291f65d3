"""
Currency-safe arithmetic for invoice items and totals.

Money never touches binary floating point. Every figure is a Decimal computed
under a 28-digit, half-up context. Item-level figures keep full precision;
only invoice aggregates are rounded to cents.
"""

from decimal import Context, Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

MONEY_CONTEXT = Context(prec=28, rounding=ROUND_HALF_UP)

ZERO = Decimal("0")
CENT = Decimal("0.01")


class InvoiceItemCalculated(BaseModel):
    """Derived amounts for one invoice line, unrounded."""

    amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    rate_inclusive: Decimal


class InvoiceTotals(BaseModel):
    """Invoice aggregates, each rounded to cents."""

    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal


def to_decimal(value: Any) -> Decimal:
    """
    Coerce an input amount to Decimal.

    None becomes zero. Floats go through str() so 0.1 is Decimal("0.1"),
    not the 55-digit binary expansion.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a monetary amount")
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, (int, str)):
        return Decimal(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to a monetary amount")


def round_money(value: Any) -> Decimal:
    """Round to two decimal places, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_item_amounts(quantity: Any, unit_price: Any, tax_rate: Any = None) -> InvoiceItemCalculated:
    """
    Calculate a line's amounts at full precision.

    amount = quantity * unit_price
    tax_amount = amount * tax_rate
    line_total = amount + tax_amount
    rate_inclusive = unit_price * (1 + tax_rate)

    Negative quantities (refund lines) flow through linearly; rate_inclusive
    depends only on unit_price and tax_rate.
    """
    qty = to_decimal(quantity)
    price = to_decimal(unit_price)
    rate = to_decimal(tax_rate)

    amount = MONEY_CONTEXT.multiply(qty, price)
    tax_amount = MONEY_CONTEXT.multiply(amount, rate)
    line_total = MONEY_CONTEXT.add(amount, tax_amount)
    rate_inclusive = MONEY_CONTEXT.multiply(price, MONEY_CONTEXT.add(rate, Decimal(1)))

    return InvoiceItemCalculated(
        amount=amount,
        tax_amount=tax_amount,
        line_total=line_total,
        rate_inclusive=rate_inclusive,
    )


def _field(item: Mapping[str, Any] | Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def calculate_invoice_totals(items: Iterable[Mapping[str, Any] | Any]) -> InvoiceTotals:
    """
    Sum item amounts and taxes, then round each aggregate.

    subtotal and tax_total are summed at full precision. total_amount is the
    unrounded subtotal plus unrounded tax_total. All three are rounded to
    cents independently, so total_amount can differ by a cent from
    subtotal + tax_total after rounding.

    Items may be mappings (database rows) or objects with `amount` and
    `tax_amount` attributes.
    """
    subtotal = ZERO
    tax_total = ZERO

    for item in items:
        subtotal = MONEY_CONTEXT.add(subtotal, to_decimal(_field(item, "amount")))
        tax_total = MONEY_CONTEXT.add(tax_total, to_decimal(_field(item, "tax_amount")))

    total_amount = MONEY_CONTEXT.add(subtotal, tax_total)

    return InvoiceTotals(
        subtotal=round_money(subtotal),
        tax_total=round_money(tax_total),
        total_amount=round_money(total_amount),
    )
