"""
Pricing utilities for domain registration and hosting orders
Money rounding, order totals, markup and drift tolerance checks
"""

import logging
from typing import Union, Optional
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
MONTHS_PER_YEAR = 12

Number = Union[float, int, str, Decimal]

def to_money(amount: Number) -> Decimal:
    """
    Convert a number to a Decimal rounded to whole cents

    Floats go through str() first so 12.99 stays 12.99 instead of picking up
    binary noise.
    """
    if isinstance(amount, Decimal):
        decimal_amount = amount
    else:
        try:
            decimal_amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {amount!r}")
    return decimal_amount.quantize(CENT, rounding=ROUND_HALF_UP)

def format_money(amount: Number, currency: str = "GBP", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: GBP)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    try:
        formatted = f"{to_money(amount):.2f}"

        if show_currency:
            currency_symbols = {
                'USD': '$',
                'EUR': '€',
                'GBP': '£',
            }
            symbol = currency_symbols.get(currency.upper())
            if symbol is None:
                return f"{formatted} {currency.upper()}"
            return f"{symbol}{formatted}"

        return formatted

    except ValueError as e:
        logger.warning(f"Error formatting money: {e}")
        return str(amount)

def calculate_marked_up_price(base_price: Number, markup_percentage: float = 15.0) -> Decimal:
    """
    Calculate marked up price for reseller margin

    Args:
        base_price: Base price from provider
        markup_percentage: Markup percentage (default: 15%)

    Returns:
        Decimal: Marked up price
    """
    base_decimal = base_price if isinstance(base_price, Decimal) else Decimal(str(base_price))
    if markup_percentage is None:
        markup_percentage = 15.0
    markup_multiplier = Decimal(str(1 + (float(markup_percentage) / 100)))
    return to_money(base_decimal * markup_multiplier)

def annual_hosting_price(monthly_price: Number) -> Decimal:
    """Per-year hosting price locked into an order"""
    return to_money(to_money(monthly_price) * MONTHS_PER_YEAR)

def calculate_order_total(domain_price: Number, hosting_price: Number, years: int) -> Decimal:
    """
    Total estimate for an order

    Args:
        domain_price: Locked per-year domain price
        hosting_price: Locked per-year hosting price (zero without hosting)
        years: Registration term

    Returns:
        Decimal: domain_price * years + hosting_price * years
    """
    return to_money(to_money(domain_price) * years + to_money(hosting_price) * years)

def prices_within_tolerance(locked: Number, live: Number, tolerance_percent: Number = Decimal('1.0')) -> bool:
    """
    Check whether a live price is close enough to the locked one

    A difference of up to half a cent always passes so rounding on the
    provider side never trips the check.

    Args:
        locked: Price frozen into the order
        live: Price quoted now
        tolerance_percent: Allowed drift as a percentage of the locked price

    Returns:
        bool: True if the prices agree within tolerance
    """
    locked_decimal = to_money(locked)
    live_decimal = to_money(live)
    allowed = locked_decimal * Decimal(str(tolerance_percent)) / Decimal('100')
    difference = abs(live_decimal - locked_decimal)
    return difference <= max(allowed, Decimal('0.005'))

def to_minor_units(amount: Number) -> int:
    """Convert to the smallest currency unit (pence, cents) for payment processors"""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def parse_price(value: Optional[Number]) -> Optional[Decimal]:
    """Parse a provider price field, None when missing or unusable"""
    if value is None or value == '':
        return None
    try:
        price = to_money(value)
    except ValueError:
        logger.warning(f"⚠️ Ignoring unparseable price value: {value!r}")
        return None
    return price if price > 0 else None
