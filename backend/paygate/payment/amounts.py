"""Human amount <-> token base unit conversion. Decimal only, never float."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .errors import MalformedInputError

U64_MAX = 2**64 - 1
UINT256_MAX = 2**256 - 1

Amount = Union[Decimal, int, str, float]


def _as_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, bool):
        raise MalformedInputError(f"Invalid amount: {amount!r}")
    if isinstance(amount, Decimal):
        return amount
    try:
        # str() first so a float like 1.1 becomes Decimal("1.1"), not its binary expansion
        return Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise MalformedInputError(f"Invalid amount: {amount!r}")


def to_base_units(amount: Amount, decimals: int, max_units: int = UINT256_MAX) -> int:
    """Convert a human amount to the token's integer base units.

    ``round(amount * 10**decimals)`` with half-up rounding. Rejects
    non-positive amounts, amounts that round to zero and amounts that do not
    fit the chain's integer width.
    """
    value = _as_decimal(amount)
    if not value.is_finite() or value <= 0:
        raise MalformedInputError(f"Amount must be a positive number, got {amount!r}")
    units = int(value.scaleb(decimals).to_integral_value(rounding=ROUND_HALF_UP))
    if units <= 0:
        raise MalformedInputError(f"Amount {amount!r} is below the smallest unit of the token")
    if units > max_units:
        raise MalformedInputError(f"Amount {amount!r} exceeds the maximum transferable value")
    return units


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals)
