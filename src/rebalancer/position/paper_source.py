"""Paper-mode position source with simulated liquidity mutations.

Holds positions in memory and applies remove / add / claim by mutating its
own state. Moving the active price converts bucket holdings the way a
bucketed AMM does at each bucket's own price: buckets left below the price
hold only quote, buckets above it hold only base.

Implements the same PositionSource ABC a live source does, so the
orchestrator and executor behave identically in paper and live mode.
"""

from dataclasses import replace
from decimal import ROUND_DOWN, Decimal
from uuid import uuid4

from rebalancer.exceptions import PositionNotFoundError, PositionSourceError
from rebalancer.logging import get_logger, short_key
from rebalancer.models import Position, PriceBucket, Token
from rebalancer.position.source import BID_ASK_STRATEGY, PositionSource

logger = get_logger(__name__)


class PaperPositionSource(PositionSource):
    """Simulated position source for paper trading and tests.

    Withdrawn liquidity and claimed fees land in a virtual wallet; single-sided
    deposits draw from it, so a redeploy can never add more than was removed
    plus what was claimed.

    Args:
        base_decimals: Decimal places of the base token.
        quote_decimals: Decimal places of the quote token.
        active_price: Starting active price.
    """

    def __init__(
        self,
        base_decimals: int = 9,
        quote_decimals: int = 6,
        active_price: Decimal = Decimal("0"),
    ) -> None:
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals
        self._active_price = active_price
        self._positions: dict[str, Position] = {}
        self._wallet: dict[Token, int] = {Token.BASE: 0, Token.QUOTE: 0}
        self._failures: dict[str, Exception] = {}
        self._connected = False

    @property
    def base_decimals(self) -> int:
        return self._base_decimals

    @property
    def quote_decimals(self) -> int:
        return self._quote_decimals

    async def connect(self) -> None:
        self._connected = True
        logger.info(
            "paper_source_connected",
            positions=len(self._positions),
            active_price=str(self._active_price),
        )

    async def close(self) -> None:
        self._connected = False

    # ──────────────────────────────────────────────
    # Simulation controls
    # ──────────────────────────────────────────────

    def add_position(self, position: Position) -> None:
        """Seed a position (buckets are re-sorted by ascending price)."""
        buckets = sorted(position.buckets, key=lambda b: b.price)
        self._positions[position.key] = replace(position, buckets=buckets)

    def remove_position(self, position_key: str) -> None:
        self._positions.pop(position_key, None)

    def set_fees(self, position_key: str, fee_base: int, fee_quote: int) -> None:
        position = self._require(position_key)
        position.unclaimed_fee_base = fee_base
        position.unclaimed_fee_quote = fee_quote

    def fail_next(self, method: str, error: Exception | None = None) -> None:
        """Make the next call of the named source method raise."""
        self._failures[method] = error or PositionSourceError(f"simulated {method} failure")

    def wallet_balance(self, token: Token) -> int:
        return self._wallet[token]

    def set_active_price(self, price: Decimal) -> None:
        """Move the active price, converting bucket holdings it crosses."""
        self._active_price = price
        for position in self._positions.values():
            position.buckets = [self._settle_bucket(b, price) for b in position.buckets]
        logger.debug("paper_price_moved", active_price=str(price))

    # ──────────────────────────────────────────────
    # PositionSource interface
    # ──────────────────────────────────────────────

    async def get_positions(self) -> list[Position]:
        self._maybe_fail("get_positions")
        return [replace(p, buckets=list(p.buckets)) for p in self._positions.values()]

    async def get_active_price(self) -> Decimal:
        self._maybe_fail("get_active_price")
        return self._active_price

    async def remove_all_liquidity(
        self, position_key: str, bucket_range: tuple[int, int]
    ) -> list[str]:
        self._maybe_fail("remove_all_liquidity")
        position = self._require(position_key)
        lower, upper = bucket_range

        in_range = [b for b in position.buckets if lower <= b.bucket_id <= upper]
        if not in_range or all(b.base_amount == 0 and b.quote_amount == 0 for b in in_range):
            raise PositionSourceError(f"position {short_key(position_key)} holds no liquidity")

        removed_base = 0
        removed_quote = 0
        updated: list[PriceBucket] = []
        for bucket in position.buckets:
            if lower <= bucket.bucket_id <= upper:
                removed_base += bucket.base_amount
                removed_quote += bucket.quote_amount
                bucket = replace(bucket, base_amount=0, quote_amount=0)
            updated.append(bucket)
        position.buckets = updated

        self._wallet[Token.BASE] += removed_base
        self._wallet[Token.QUOTE] += removed_quote

        logger.info(
            "paper_liquidity_removed",
            position_key=short_key(position_key),
            base=removed_base,
            quote=removed_quote,
        )
        return [self._tx_id()]

    async def add_liquidity_single_sided(
        self,
        position_key: str,
        token: Token,
        amount: int,
        bucket_range: tuple[int, int],
        strategy: str = BID_ASK_STRATEGY,
    ) -> list[str]:
        self._maybe_fail("add_liquidity_single_sided")
        position = self._require(position_key)
        if strategy != BID_ASK_STRATEGY:
            raise PositionSourceError(f"unsupported strategy {strategy!r}")
        if amount <= 0:
            raise PositionSourceError("deposit amount must be positive")
        if amount > self._wallet[token]:
            raise PositionSourceError(
                f"insufficient {token.value} balance: need {amount}, have {self._wallet[token]}"
            )

        lower, upper = bucket_range
        targets = [i for i, b in enumerate(position.buckets) if lower <= b.bucket_id <= upper]
        if not targets:
            raise PositionSourceError(f"no buckets in range {bucket_range}")

        shares = _bid_ask_shares(amount, len(targets), token)
        buckets = list(position.buckets)
        for index, share in zip(targets, shares):
            bucket = buckets[index]
            if token is Token.BASE:
                buckets[index] = replace(bucket, base_amount=bucket.base_amount + share)
            else:
                buckets[index] = replace(bucket, quote_amount=bucket.quote_amount + share)
        position.buckets = buckets
        self._wallet[token] -= amount

        logger.info(
            "paper_liquidity_added",
            position_key=short_key(position_key),
            token=token.value,
            amount=amount,
            buckets=len(targets),
        )
        return [self._tx_id()]

    async def claim_fees(self, position_key: str) -> list[str]:
        self._maybe_fail("claim_fees")
        position = self._require(position_key)
        self._wallet[Token.BASE] += position.unclaimed_fee_base
        self._wallet[Token.QUOTE] += position.unclaimed_fee_quote
        position.unclaimed_fee_base = 0
        position.unclaimed_fee_quote = 0
        return [self._tx_id()]

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _require(self, position_key: str) -> Position:
        position = self._positions.get(position_key)
        if position is None:
            raise PositionNotFoundError(f"unknown position {short_key(position_key)}")
        return position

    def _maybe_fail(self, method: str) -> None:
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    def _settle_bucket(self, bucket: PriceBucket, price: Decimal) -> PriceBucket:
        base_unit = Decimal(10) ** self._base_decimals
        quote_unit = Decimal(10) ** self._quote_decimals
        if bucket.price < price and bucket.base_amount > 0:
            proceeds = Decimal(bucket.base_amount) / base_unit * bucket.price * quote_unit
            return replace(
                bucket,
                base_amount=0,
                quote_amount=bucket.quote_amount + int(proceeds.to_integral_value(ROUND_DOWN)),
            )
        if bucket.price > price and bucket.quote_amount > 0 and bucket.price > 0:
            bought = Decimal(bucket.quote_amount) / quote_unit / bucket.price * base_unit
            return replace(
                bucket,
                quote_amount=0,
                base_amount=bucket.base_amount + int(bought.to_integral_value(ROUND_DOWN)),
            )
        return bucket

    @staticmethod
    def _tx_id() -> str:
        return f"paper-{uuid4().hex[:16]}"


def _bid_ask_shares(amount: int, count: int, token: Token) -> list[int]:
    """Split an amount across buckets (ascending price) in a bid-ask shape.

    Quote deposits weigh toward the lowest prices (buy more as price falls);
    base deposits weigh toward the highest prices (sell more as price rises).
    Rounding dust goes to the heaviest bucket.
    """
    if token is Token.BASE:
        weights = list(range(1, count + 1))
    else:
        weights = list(range(count, 0, -1))
    total_weight = sum(weights)

    shares = [amount * w // total_weight for w in weights]
    heaviest = weights.index(max(weights))
    shares[heaviest] += amount - sum(shares)
    return shares
