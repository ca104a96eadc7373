"""
Fixed-point monetary conversion.

On-chain amounts are integers counted in the smallest unit (10^-18 of the
native coin for wei-scaled values). Every amount that affects settlement or
display goes through the functions here, which use Python's arbitrary
precision ``int`` only. Floats are rejected outright.
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol, Union

BPS_DENOMINATOR = 10_000

_DECIMAL_PATTERN = re.compile(r"^\s*(\d+)(?:\.(\d*))?\s*$")


def _require_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    return value


def _require_non_negative(name: str, value) -> int:
    _require_int(name, value)
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def to_display_amount(raw: int, decimals: int, precision: Optional[int] = None) -> str:
    """
    Render a fixed-point integer as a decimal string.

    Args:
        raw: Amount in minimal units
        decimals: Number of fractional digits the raw unit carries
        precision: Fractional digits to keep. Extra digits are truncated,
            never rounded up. None keeps every significant digit.

    Returns:
        Decimal string, e.g. ``to_display_amount(1500000000000000000, 18) == "1.5"``
    """
    _require_non_negative("raw", raw)
    _require_non_negative("decimals", decimals)
    if precision is not None:
        _require_non_negative("precision", precision)

    whole, fraction = divmod(raw, 10 ** decimals)
    fraction_digits = str(fraction).zfill(decimals) if decimals else ""

    if precision is None:
        fraction_digits = fraction_digits.rstrip("0")
    else:
        fraction_digits = fraction_digits[:precision].ljust(precision, "0")

    if not fraction_digits:
        return str(whole)
    return f"{whole}.{fraction_digits}"


def from_display_amount(text: Union[str, int], decimals: int) -> int:
    """
    Parse a decimal string into a fixed-point integer.

    Digits beyond ``decimals`` are truncated.

    Raises:
        ValueError: If the text is not a non-negative decimal number
    """
    _require_non_negative("decimals", decimals)
    if isinstance(text, int) and not isinstance(text, bool):
        return _require_non_negative("text", text) * 10 ** decimals
    if not isinstance(text, str):
        raise TypeError(f"text must be a str, got {type(text).__name__}")

    match = _DECIMAL_PATTERN.match(text)
    if not match:
        raise ValueError(f"Not a non-negative decimal amount: {text!r}")

    whole, fraction = match.group(1), match.group(2) or ""
    fraction = fraction[:decimals].ljust(decimals, "0")
    return int(whole) * 10 ** decimals + (int(fraction) if fraction else 0)


def convert_rate(amount: int, rate_numerator: int, rate_denominator: int) -> int:
    """Return ``amount * rate_numerator / rate_denominator``, truncated."""
    _require_non_negative("amount", amount)
    _require_non_negative("rate_numerator", rate_numerator)
    _require_int("rate_denominator", rate_denominator)
    if rate_denominator <= 0:
        raise ValueError("rate_denominator must be greater than 0")
    return amount * rate_numerator // rate_denominator


def compute_order_total(kwh_amount: int, price_per_kwh: int, unit_scale: int) -> int:
    """Multiply before dividing so only the final division truncates."""
    _require_non_negative("kwh_amount", kwh_amount)
    _require_non_negative("price_per_kwh", price_per_kwh)
    return convert_rate(kwh_amount * price_per_kwh, 1, unit_scale)


def compute_platform_fee(total_price: int, fee_bps: int) -> int:
    if fee_bps > BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be at most {BPS_DENOMINATOR}, got {fee_bps}")
    return convert_rate(total_price, fee_bps, BPS_DENOMINATOR)


@dataclass(frozen=True)
class DisplayRate:
    """Display-currency units per one native unit, as an exact fraction."""

    numerator: int
    denominator: int = 1

    def __post_init__(self):
        _require_non_negative("numerator", self.numerator)
        _require_int("denominator", self.denominator)
        if self.denominator <= 0:
            raise ValueError("denominator must be greater than 0")

    @classmethod
    def from_string(cls, text: str) -> "DisplayRate":
        """Parse ``"285000.25"`` into ``DisplayRate(28500025, 100)``."""
        match = _DECIMAL_PATTERN.match(str(text))
        if not match:
            raise ValueError(f"Not a valid rate: {text!r}")
        fraction = match.group(2) or ""
        return cls(from_display_amount(text, len(fraction)), 10 ** len(fraction))


class RateSource(Protocol):
    def get_rate(self) -> DisplayRate:
        ...


class StaticRateSource:
    """Rate source backed by a fixed configured value."""

    def __init__(self, rate: Union[str, DisplayRate]):
        self._rate = rate if isinstance(rate, DisplayRate) else DisplayRate.from_string(rate)

    def get_rate(self) -> DisplayRate:
        return self._rate

    def set_rate(self, rate: Union[str, DisplayRate]) -> None:
        self._rate = rate if isinstance(rate, DisplayRate) else DisplayRate.from_string(rate)


class MonetaryConverter:
    """
    Converts stored chain amounts into display values.

    The rate is read from the injected source on every call, so display
    values track rate changes without touching stored chain data.
    """

    def __init__(
        self,
        rate_source: RateSource,
        native_decimals: int = 18,
        energy_unit_scale: int = 1,
        display_precision: int = 2,
        platform_fee_bps: int = 0,
        display_currency: str = "INR",
    ):
        self.rate_source = rate_source
        self.native_decimals = _require_non_negative("native_decimals", native_decimals)
        self.energy_unit_scale = _require_int("energy_unit_scale", energy_unit_scale)
        self.display_precision = _require_non_negative("display_precision", display_precision)
        self.platform_fee_bps = _require_non_negative("platform_fee_bps", platform_fee_bps)
        self.display_currency = display_currency

    @classmethod
    def from_config(cls, pricing: dict) -> "MonetaryConverter":
        return cls(
            rate_source=StaticRateSource(pricing['display_rate']),
            native_decimals=int(pricing['native_decimals']),
            energy_unit_scale=int(pricing['energy_unit_scale']),
            display_precision=int(pricing['display_precision']),
            platform_fee_bps=int(pricing['platform_fee_bps']),
            display_currency=pricing.get('display_currency', 'INR'),
        )

    def order_total(self, kwh_amount: int, price_per_kwh: int) -> int:
        return compute_order_total(kwh_amount, price_per_kwh, self.energy_unit_scale)

    def platform_fee(self, total_price: int) -> int:
        return compute_platform_fee(total_price, self.platform_fee_bps)

    def native_display(self, amount: int) -> str:
        """Native-coin string for a wei-scaled amount, e.g. ``"0.0001"``."""
        return to_display_amount(amount, self.native_decimals)

    def price_to_display(self, amount: int) -> str:
        """Display-currency string for a wei-scaled amount."""
        rate = self.rate_source.get_rate()
        scaled = convert_rate(amount, rate.numerator, rate.denominator)
        return to_display_amount(scaled, self.native_decimals, self.display_precision)

    def listing_value_display(self, kwh_amount: int, price_per_kwh: int) -> str:
        return self.price_to_display(self.order_total(kwh_amount, price_per_kwh))
