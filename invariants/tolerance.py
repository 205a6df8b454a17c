from decimal import Decimal
from fractions import Fraction
from typing import Union

Number = Union[int, Decimal, Fraction, str]

BPS_DENOMINATOR = 10_000


def as_fraction(value: Number) -> Fraction:
    # floats go through str() so 0.5 bps stays 1/2 rather than its binary expansion
    if isinstance(value, float):
        return Fraction(str(value))
    return Fraction(value)


def approx_equal(actual: Number, expected: Number, tolerance_bps: Number) -> bool:
    """
    Relative-error comparison:

        |actual - expected| <= tolerance_bps / 10000 * max(|actual|, |expected|)

    Evaluated by cross-multiplication on exact rationals, so wei-scale
    integers never lose precision. Zero tolerance means exact equality and
    two zeros always compare equal. Argument order does not matter.
    """
    a = as_fraction(actual)
    e = as_fraction(expected)
    tol = as_fraction(tolerance_bps)
    if tol < 0:
        raise ValueError(f"tolerance_bps must be non-negative, got {tolerance_bps}")

    diff = abs(a - e)
    bound = max(abs(a), abs(e))
    return diff * BPS_DENOMINATOR <= tol * bound


def relative_error_bps(actual: Number, expected: Number) -> Fraction:
    """Observed error in basis points, relative to the larger magnitude."""
    a = as_fraction(actual)
    e = as_fraction(expected)
    bound = max(abs(a), abs(e))
    if bound == 0:
        return Fraction(0)
    return abs(a - e) * BPS_DENOMINATOR / bound
