"""
Monetary Precision Module

Decimal context and rounding helpers for every financial calculation in the
lending engine. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Optional, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

MONEY_SCALE = 2           # Final scale of every amount
RATE_SCALE = 10           # Intermediate scale for rates and powers

ZERO = Decimal('0.00')
HUNDRED = Decimal('100')

NumberLike = Union[Decimal, int, str]


def to_decimal(value: NumberLike) -> Decimal:
    """
    Convert a value to Decimal without going through float

    Args:
        value: Decimal, int or numeric string

    Returns:
        Decimal value

    Raises:
        ValueError: If value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Refusing to convert {type(value).__name__} to Decimal")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def quantize_money(value: NumberLike) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return to_decimal(value).quantize(Decimal(1).scaleb(-MONEY_SCALE), rounding=ROUND_HALF_UP)


def quantize_rate(value: NumberLike) -> Decimal:
    """Round to 10 decimal places, half-up (rates and intermediate powers)"""
    return to_decimal(value).quantize(Decimal(1).scaleb(-RATE_SCALE), rounding=ROUND_HALF_UP)


def optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    """Parse a stored decimal string, passing None through"""
    if value is None or value == "":
        return None
    return Decimal(value)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Both comma and dot - assume comma is thousands separator
    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) < 3:  # "12,5" is a decimal comma, "1,500" a thousands separator
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
