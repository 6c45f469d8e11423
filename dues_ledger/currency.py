"""
Currency Precision Module

The ledger works in a single configured ISO 4217 currency. Amounts are plain
Decimals quantized to that currency's precision. NEVER uses float for
monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    TRY = ("TRY", 2)  # Turkish Lira
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


ZERO = Decimal('0')


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """Round decimal to currency precision"""
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def parse_amount(value: Union[str, int, Decimal]) -> Decimal:
    """
    Convert user input to Decimal, handling common formats.

    Accepts Decimal, int, or a string such as "1.250,50", "1,250.50" or
    "750 ₺". Floats are rejected outright.

    Raises:
        ValueError: If the value cannot be converted to a finite Decimal
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("Amounts must be given as strings or Decimals, not floats")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    else:
        if not value or not isinstance(value, str):
            raise ValueError("Value must be a non-empty string")

        # Remove currency symbols and whitespace
        clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

        if ',' in clean_value and '.' in clean_value:
            # Whichever separator comes last is the decimal separator
            if clean_value.rfind(',') > clean_value.rfind('.'):
                clean_value = clean_value.replace('.', '').replace(',', '.')
            else:
                clean_value = clean_value.replace(',', '')
        elif ',' in clean_value and clean_value.count(',') == 1:
            parts = clean_value.split(',')
            if len(parts[1]) <= 2:
                clean_value = clean_value.replace(',', '.')
            else:
                clean_value = clean_value.replace(',', '')

        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite: {value}")
    return result


def format_amount(value: Decimal, currency: Currency) -> str:
    """Format for display"""
    if currency.precision == 0:
        return f"{currency.code} {value:,.0f}"
    return f"{currency.code} {value:,.{currency.precision}f}"
