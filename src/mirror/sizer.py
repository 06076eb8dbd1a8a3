"""
Trade sizing: scale the target's investment and clamp it to configured bounds.
"""

from decimal import ROUND_DOWN, Decimal

from .errors import InvalidConfig


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_bounds(multiplier, minimum, maximum):
    """Raise InvalidConfig when the sizing settings cannot produce a sane trade."""
    multiplier, minimum, maximum = _dec(multiplier), _dec(minimum), _dec(maximum)
    if minimum > maximum:
        raise InvalidConfig(f"min bet {minimum} is greater than max bet {maximum}")
    if multiplier < 0:
        raise InvalidConfig(f"bet multiplier must be >= 0, got {multiplier}")
    if minimum < 0:
        raise InvalidConfig(f"min bet must be >= 0, got {minimum}")


def size(target_investment, multiplier, minimum, maximum) -> Decimal:
    """
    Local trade size for a target trade: clamp(target * multiplier, min, max).

    A result <= 0 means "skip this trade"; callers must not treat it as an error.
    """
    validate_bounds(multiplier, minimum, maximum)
    raw = _dec(target_investment) * _dec(multiplier)
    return max(_dec(minimum), min(_dec(maximum), raw))


def to_units(amount, decimals: int) -> int:
    """Collateral amount -> integer token units, rounding down."""
    scaled = _dec(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, decimals: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def format_units(units: int, decimals: int, places: int = 2) -> str:
    quant = Decimal(1).scaleb(-places)
    return str(from_units(units, decimals).quantize(quant, rounding=ROUND_DOWN))
