"""Numeric normalization at the position-source boundary.

Position sources hand back amounts in whatever shape their SDK produces:
native ints, floats, decimal strings, 0x-prefixed hex strings, or big-number
wrapper objects. Everything is normalized here into int token amounts and
Decimal prices. Malformed or missing values become zero so that one corrupt
bucket never aborts a whole evaluation.

Nothing past this module branches on the runtime shape of a number.
"""

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from rebalancer.logging import get_logger
from rebalancer.models import Position, PriceBucket

logger = get_logger(__name__)

_ZERO = Decimal("0")

# Method names big-number wrappers commonly expose for integer conversion
_INT_METHODS = ("to_int", "toNumber", "to_number")


def to_decimal(value: Any) -> Decimal:
    """Normalize a price-like value to a finite Decimal (0 when malformed)."""
    if value is None or isinstance(value, bool):
        return _ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else _ZERO
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        result = _parse_decimal(str(value))
        return result if result is not None else _ZERO
    if isinstance(value, str):
        return _parse_string(value)

    for name in _INT_METHODS:
        method = getattr(value, name, None)
        if callable(method):
            try:
                return to_decimal(method())
            except (TypeError, ValueError, ArithmeticError):
                return _ZERO

    try:
        return to_decimal(int(value))
    except (TypeError, ValueError, ArithmeticError):
        return _ZERO


def to_int_amount(value: Any) -> int:
    """Normalize a raw token amount to a non-negative int (0 when malformed).

    Fractional amounts are truncated toward zero.
    """
    amount = to_decimal(value)
    if amount <= _ZERO:
        return 0
    return int(amount)


def _parse_string(raw: str) -> Decimal:
    text = raw.strip()
    if not text:
        return _ZERO
    if text[:2].lower() == "0x" or text[:3].lower() == "-0x":
        try:
            return Decimal(int(text, 16))
        except ValueError:
            return _ZERO
    result = _parse_decimal(text)
    return result if result is not None else _ZERO


def _parse_decimal(text: str) -> Decimal | None:
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def build_bucket(raw: Mapping[str, Any]) -> PriceBucket:
    """Build a PriceBucket from a raw source mapping."""
    return PriceBucket(
        bucket_id=int(to_decimal(raw.get("bucket_id"))),
        price=to_decimal(raw.get("price")),
        base_amount=to_int_amount(raw.get("base_amount")),
        quote_amount=to_int_amount(raw.get("quote_amount")),
    )


def build_position(raw: Mapping[str, Any]) -> Position:
    """Build a Position from a raw source payload.

    Expected keys: key, lower_bucket_id, upper_bucket_id, buckets (list of
    mappings with bucket_id, price, base_amount, quote_amount), fee_base,
    fee_quote. Missing numeric fields normalize to zero. Buckets are sorted
    by ascending price.
    """
    buckets = [build_bucket(b) for b in raw.get("buckets") or []]
    buckets.sort(key=lambda b: b.price)

    position = Position(
        key=str(raw.get("key", "")),
        lower_bucket_id=int(to_decimal(raw.get("lower_bucket_id"))),
        upper_bucket_id=int(to_decimal(raw.get("upper_bucket_id"))),
        buckets=buckets,
        unclaimed_fee_base=to_int_amount(raw.get("fee_base")),
        unclaimed_fee_quote=to_int_amount(raw.get("fee_quote")),
    )

    logger.debug(
        "position_normalized",
        position_key=position.key,
        bucket_count=len(buckets),
        base_total=position.base_total,
        quote_total=position.quote_total,
    )
    return position
