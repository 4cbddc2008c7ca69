# backend/fulfillment/services/money_service.py
"""
Money Value Engine.

All amounts are integers in minor units (cents). None means "absent" and
is returned as None by every conversion, never as 0.

ROUNDING:
Every function that rounds goes through _round_half_away, which rounds
at the integer-cent boundary with ROUND_HALF_UP (half away from zero for
negatives as well). Computing the same tax along two paths therefore
reconciles to the cent.

The engine holds no global state. MoneyEngine receives its currency
symbol and default tax rate as a MoneySettings value at construction;
MoneySettings.from_config builds one from a Flask config mapping.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Mapping, Optional, Union

Number = Union[int, float, str, Decimal]

_CENT = Decimal("0.01")
_ONE = Decimal(1)
_HUNDRED = Decimal(100)


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps float literals like 1.005 from picking up binary noise
    return Decimal(str(value))


def _round_half_away(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def to_minor_units(major_amount: Optional[Number]) -> Optional[int]:
    """Major units (e.g. 12.345) -> cents, half-up at 2 decimals. None stays None.

    Raises InvalidOperation for text that is not a number and for NaN or
    infinity.
    """
    if major_amount is None:
        return None
    amount = _to_decimal(major_amount)
    if not amount.is_finite():
        raise InvalidOperation(f"Amount must be finite, got {major_amount!r}")
    quantized = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(quantized * _HUNDRED)


def to_major_units(minor_amount: Optional[int]) -> Optional[Decimal]:
    """Cents -> major units as an exact two-place Decimal. None stays None."""
    if minor_amount is None:
        return None
    return Decimal(int(minor_amount)).scaleb(-2)


def price_with_tax(amount_excl_tax: Optional[int], tax_rate_percent: Number) -> Optional[int]:
    if amount_excl_tax is None:
        return None
    rate = _to_decimal(tax_rate_percent)
    if rate == 0:
        return amount_excl_tax
    return _round_half_away(Decimal(amount_excl_tax) * (_ONE + rate / _HUNDRED))


def tax_portion_from_inclusive(amount_incl_tax: Optional[int], tax_rate_percent: Number) -> Optional[int]:
    """
    Reverse-extract the tax contained in a tax-inclusive amount.

    A zero or negative rate extracts nothing and returns 0.
    """
    if amount_incl_tax is None:
        return None
    rate = _to_decimal(tax_rate_percent)
    if rate <= 0:
        return 0
    return _round_half_away(Decimal(amount_incl_tax) * rate / (_HUNDRED + rate))


def tax_portion_from_exclusive(amount_excl_tax: Optional[int], tax_rate_percent: Number) -> Optional[int]:
    if amount_excl_tax is None:
        return None
    rate = _to_decimal(tax_rate_percent)
    return _round_half_away(Decimal(amount_excl_tax) * rate / _HUNDRED)


def amount_excluding_tax(amount_incl_tax: Optional[int], tax_rate_percent: Number) -> Optional[int]:
    if amount_incl_tax is None:
        return None
    return amount_incl_tax - tax_portion_from_inclusive(amount_incl_tax, tax_rate_percent)


def tax_breakdown_from_inclusive(amount_incl_tax: Optional[int], tax_rate_percent: Number) -> Optional[dict]:
    """Split a gross amount so that net_cents + tax_cents == gross_cents exactly."""
    if amount_incl_tax is None:
        return None
    tax = tax_portion_from_inclusive(amount_incl_tax, tax_rate_percent)
    return {
        "gross_cents": amount_incl_tax,
        "tax_cents": tax,
        "net_cents": amount_incl_tax - tax,
    }


def profit_margin(sell_price_minor: Optional[int], cost_minor: Optional[int]) -> Optional[float]:
    """
    Margin percentage (sell - cost) / sell * 100.

    A zero sell price returns 0.0 instead of dividing by zero. The result
    may be negative when cost exceeds price.
    """
    if sell_price_minor is None or cost_minor is None:
        return None
    if sell_price_minor == 0:
        return 0.0
    # multiply first so exact ratios come out exact (4000 * 100 / 10000 == 40.0)
    return (sell_price_minor - cost_minor) * 100 / sell_price_minor


def format_amount(amount_minor: Optional[int], currency_symbol: str) -> Optional[str]:
    """Grouped whole major units, e.g. 150000 -> 'NT$1,500'."""
    if amount_minor is None:
        return None
    major = _round_half_away(Decimal(amount_minor) / _HUNDRED)
    sign = "-" if major < 0 else ""
    return f"{sign}{currency_symbol}{abs(major):,}"


def format_amount_with_decimals(amount_minor: Optional[int], currency_symbol: str) -> Optional[str]:
    """Grouped major units with cents, e.g. 150050 -> 'NT$1,500.50'."""
    if amount_minor is None:
        return None
    major = to_major_units(amount_minor)
    sign = "-" if major < 0 else ""
    return f"{sign}{currency_symbol}{abs(major):,.2f}"


@dataclass(frozen=True)
class MoneySettings:
    currency_symbol: str = "NT$"
    default_tax_rate_percent: float = 5.0

    @classmethod
    def from_config(cls, config: Mapping) -> "MoneySettings":
        return cls(
            currency_symbol=config.get("CURRENCY_SYMBOL", cls.currency_symbol),
            default_tax_rate_percent=float(
                config.get("DEFAULT_TAX_RATE_PERCENT", cls.default_tax_rate_percent)
            ),
        )


class MoneyEngine:
    """Money operations bound to one MoneySettings (symbol + default tax rate)."""

    def __init__(self, settings: Optional[MoneySettings] = None):
        self.settings = settings or MoneySettings()

    def _rate(self, tax_rate_percent: Optional[Number]) -> Number:
        if tax_rate_percent is None:
            return self.settings.default_tax_rate_percent
        return tax_rate_percent

    # Conversions are settings-independent; exposed here so callers hold one object.
    to_minor_units = staticmethod(to_minor_units)
    to_major_units = staticmethod(to_major_units)
    profit_margin = staticmethod(profit_margin)

    def price_with_tax(self, amount_excl_tax: Optional[int], tax_rate_percent: Optional[Number] = None) -> Optional[int]:
        return price_with_tax(amount_excl_tax, self._rate(tax_rate_percent))

    def tax_portion_from_inclusive(self, amount_incl_tax: Optional[int], tax_rate_percent: Optional[Number] = None) -> Optional[int]:
        return tax_portion_from_inclusive(amount_incl_tax, self._rate(tax_rate_percent))

    def tax_portion_from_exclusive(self, amount_excl_tax: Optional[int], tax_rate_percent: Optional[Number] = None) -> Optional[int]:
        return tax_portion_from_exclusive(amount_excl_tax, self._rate(tax_rate_percent))

    def amount_excluding_tax(self, amount_incl_tax: Optional[int], tax_rate_percent: Optional[Number] = None) -> Optional[int]:
        return amount_excluding_tax(amount_incl_tax, self._rate(tax_rate_percent))

    def tax_breakdown_from_inclusive(self, amount_incl_tax: Optional[int], tax_rate_percent: Optional[Number] = None) -> Optional[dict]:
        return tax_breakdown_from_inclusive(amount_incl_tax, self._rate(tax_rate_percent))

    def format(self, amount_minor: Optional[int], currency_symbol: Optional[str] = None) -> Optional[str]:
        return format_amount(amount_minor, currency_symbol if currency_symbol is not None else self.settings.currency_symbol)

    def format_with_decimals(self, amount_minor: Optional[int], currency_symbol: Optional[str] = None) -> Optional[str]:
        return format_amount_with_decimals(
            amount_minor,
            currency_symbol if currency_symbol is not None else self.settings.currency_symbol,
        )


def money_engine_for_app(app) -> MoneyEngine:
    """Build an engine from a Flask app's config (CLI / request edge only)."""
    return MoneyEngine(MoneySettings.from_config(app.config))
