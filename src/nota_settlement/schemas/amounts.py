"""
Token amount conversions.

Amounts travel through the settlement core as smallest-unit integers
(``amount_raw``). These helpers convert between that representation and the
human-readable amounts shown to users, using ``Decimal`` so no binary float
ever touches a raw amount.
"""

from decimal import Context, Decimal, InvalidOperation
from typing import Union

# scaleb rounds to the context precision; 200 digits covers any uint256 amount
_EXACT = Context(prec=200)


def amount_to_value(*, amount: Union[int, str, Decimal], decimals: int) -> int:
    """Convert a human-readable token `amount` into smallest-unit integer `value`.

    Args:
        amount: Human-readable amount (e.g. "1.23" for USDC). Accepts int/str/Decimal.
            Floats are refused: their binary representation is not exact.
        decimals: Token decimals (e.g. 6 for USDC, 18 for DAI or native ETH).

    Returns:
        int: Smallest-unit integer value.

    Raises:
        ValueError: If inputs are invalid or the amount cannot be represented in smallest units.
    """
    if not isinstance(decimals, int) or isinstance(decimals, bool) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")
    if isinstance(amount, (float, bool)):
        raise ValueError(f"amount must be an int, str or Decimal, got {type(amount).__name__}")

    try:
        dec_amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e

    if not dec_amount.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if dec_amount < 0:
        raise ValueError("amount must be non-negative")

    scaled = dec_amount.scaleb(decimals, context=_EXACT)

    # Require exact smallest-unit representability (no fractional smallest units)
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"amount {amount!r} is not representable with decimals={decimals} "
            f"(would create fractional smallest units)"
        )

    return int(scaled)


def value_to_amount(*, value: Union[int, str, Decimal], decimals: int) -> Decimal:
    """Convert a smallest-unit integer `value` into a human-readable `Decimal` amount.

    Args:
        value: Smallest-unit integer value (e.g. 1230000 for 1.23 USDC).
        decimals: Token decimals.

    Returns:
        Decimal: Human-readable amount, exact.

    Raises:
        ValueError: If inputs are invalid.
    """
    if not isinstance(decimals, int) or isinstance(decimals, bool) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")

    try:
        dec_value = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid value: {value!r}") from e

    if not dec_value.is_finite() or dec_value != dec_value.to_integral_value():
        raise ValueError("value must be an integer in smallest units")
    if dec_value < 0:
        raise ValueError("value must be non-negative")

    return dec_value.scaleb(-decimals, context=_EXACT)
