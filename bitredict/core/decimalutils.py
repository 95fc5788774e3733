from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, getcontext
from typing import Union

# Configure global context for on-chain amount arithmetic.
getcontext().prec = 78
getcontext().rounding = ROUND_HALF_UP

NumberLike = Union[str, float, int, Decimal]

ODDS_SCALE = 1000
POOL_ODDS_SCALE = 100
GWEI = 10 ** 9


def D(value: NumberLike) -> Decimal:
    """Safe Decimal constructor using string conversion to avoid float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def scale_odds(value: NumberLike, scale: int = ODDS_SCALE) -> int:
    """Decimal odds -> fixed-point integer, rounded down (1.8 -> 1800)."""
    return int((D(value) * scale).to_integral_value(rounding=ROUND_DOWN))


def unscale_odds(value: int, scale: int = ODDS_SCALE) -> Decimal:
    return (D(int(value)) / scale).quantize(Decimal("0.001"))


def gwei_to_wei(value: NumberLike) -> int:
    return int((D(value) * GWEI).to_integral_value(rounding=ROUND_DOWN))


def base_units(value: int | str) -> str:
    """On-chain integer amount as the decimal string stored in the database."""
    return str(int(value))
