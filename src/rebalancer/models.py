"""Shared data models for the bid-ask rebalancer.

CRITICAL: All monetary values and prices use Decimal. Raw token amounts are int
(smallest on-chain units). Never use float past the normalization boundary
(see rebalancer.position.numeric).
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

_ZERO = Decimal("0")


class Token(str, Enum):
    """Which side of the pair an amount belongs to."""

    BASE = "base"
    QUOTE = "quote"


class Direction(str, Enum):
    """Shape of a bucket distribution ordered by ascending price."""

    ASCENDING = "ascending"
    DESCENDING = "descending"


class Regime(str, Enum):
    """Token composition of a position.

    ASK: base-heavy, liquidity is priced to sell.
    BID: quote-heavy, liquidity is priced to buy.
    """

    BID = "bid"
    ASK = "ask"
    MIXED = "mixed"


class Side(str, Enum):
    """Redeploy direction and price-history record type."""

    BID = "bid"
    ASK = "ask"

    @property
    def deploy_token(self) -> Token:
        """Token that a redeploy on this side adds back into the position."""
        return Token.QUOTE if self is Side.BID else Token.BASE


@dataclass(frozen=True)
class PriceBucket:
    """One discretized price slot of a position, as observed this tick."""

    bucket_id: int
    price: Decimal
    base_amount: int
    quote_amount: int

    def amount_of(self, token: Token) -> int:
        return self.base_amount if token is Token.BASE else self.quote_amount


@dataclass
class Position:
    """Read-only per-tick view of a liquidity position.

    Buckets are always ordered by ascending price.
    """

    key: str
    lower_bucket_id: int
    upper_bucket_id: int
    buckets: list[PriceBucket] = field(default_factory=list)
    unclaimed_fee_base: int = 0
    unclaimed_fee_quote: int = 0

    @property
    def base_total(self) -> int:
        return sum(b.base_amount for b in self.buckets)

    @property
    def quote_total(self) -> int:
        return sum(b.quote_amount for b in self.buckets)

    @property
    def has_liquidity(self) -> bool:
        return self.base_total > 0 or self.quote_total > 0

    @property
    def bucket_range(self) -> tuple[int, int]:
        return (self.lower_bucket_id, self.upper_bucket_id)

    @property
    def lower_price(self) -> Decimal:
        """Price of the lowest bucket (0 when the position holds no buckets)."""
        return self.buckets[0].price if self.buckets else _ZERO

    @property
    def upper_price(self) -> Decimal:
        """Price of the highest bucket (0 when the position holds no buckets)."""
        return self.buckets[-1].price if self.buckets else _ZERO


@dataclass
class PositionValue:
    """Reference-currency valuation of one position, recomputed every tick."""

    key: str
    total_value: Decimal
    base_value: Decimal
    quote_value: Decimal
    price_range_min: Decimal
    price_range_max: Decimal
    bucket_count: int
    base_amount: int
    quote_amount: int
    fee_base: int
    fee_quote: int
    fee_base_value: Decimal
    fee_quote_value: Decimal
    fee_value: Decimal
    regime: Regime
    side_ratio: Decimal
    weighted_avg_price: Decimal
    last_bid_price: Decimal | None = None
    last_ask_price: Decimal | None = None

    def to_dict(self) -> dict:
        """Serialize to JSON-safe dict with Decimal values as strings."""
        return {
            "key": self.key,
            "total_value": str(self.total_value),
            "base_value": str(self.base_value),
            "quote_value": str(self.quote_value),
            "price_range": [str(self.price_range_min), str(self.price_range_max)],
            "bucket_count": self.bucket_count,
            "base_amount": self.base_amount,
            "quote_amount": self.quote_amount,
            "fee_base": self.fee_base,
            "fee_quote": self.fee_quote,
            "fee_base_value": str(self.fee_base_value),
            "fee_quote_value": str(self.fee_quote_value),
            "fee_value": str(self.fee_value),
            "regime": self.regime.value,
            "side_ratio": str(self.side_ratio),
            "weighted_avg_price": str(self.weighted_avg_price),
            "last_bid_price": _opt_str(self.last_bid_price),
            "last_ask_price": _opt_str(self.last_ask_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PositionValue":
        """Restore a PositionValue serialized by to_dict()."""
        price_min, price_max = data.get("price_range", ["0", "0"])
        return cls(
            key=data["key"],
            total_value=Decimal(data["total_value"]),
            base_value=Decimal(data["base_value"]),
            quote_value=Decimal(data["quote_value"]),
            price_range_min=Decimal(price_min),
            price_range_max=Decimal(price_max),
            bucket_count=int(data.get("bucket_count", 0)),
            base_amount=int(data.get("base_amount", 0)),
            quote_amount=int(data.get("quote_amount", 0)),
            fee_base=int(data.get("fee_base", 0)),
            fee_quote=int(data.get("fee_quote", 0)),
            fee_base_value=Decimal(data.get("fee_base_value", "0")),
            fee_quote_value=Decimal(data.get("fee_quote_value", "0")),
            fee_value=Decimal(data.get("fee_value", "0")),
            regime=Regime(data.get("regime", Regime.MIXED.value)),
            side_ratio=Decimal(data.get("side_ratio", "0")),
            weighted_avg_price=Decimal(data.get("weighted_avg_price", "0")),
            last_bid_price=_opt_decimal(data.get("last_bid_price")),
            last_ask_price=_opt_decimal(data.get("last_ask_price")),
        )


@dataclass(frozen=True)
class Snapshot:
    """Total-value snapshot across all positions at one tick.

    persisted is True only when this evaluation also wrote a durable row.
    """

    timestamp_ms: int
    total_value: Decimal
    current_price: Decimal
    positions: tuple[PositionValue, ...] = ()
    persisted: bool = False

    @property
    def unclaimed_fee_value(self) -> Decimal:
        return sum((p.fee_value for p in self.positions), _ZERO)


@dataclass
class OperationRecord:
    """Audit record of a completed rebalance."""

    timestamp_ms: int
    position_key: str
    action: Side
    before_value: Decimal
    after_value: Decimal
    amount_processed: int
    tx_ref: str | None = None
    id: int | None = None


@dataclass
class DailyAggregate:
    """One row per UTC calendar day of total-value movement."""

    date: str  # YYYY-MM-DD
    open_value: Decimal
    close_value: Decimal
    high_value: Decimal
    low_value: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    operation_count: int = 0


@dataclass
class ClaimedFeeRecord:
    """Record of a successful fee claim for one position."""

    timestamp_ms: int
    position_key: str
    tx_ref: str
    claimed_base: int
    claimed_quote: int
    claimed_base_value: Decimal
    claimed_quote_value: Decimal
    total_claimed_value: Decimal
    price_at_claim: Decimal
    id: int | None = None


@dataclass
class AccumulatedFee:
    """Claimed-but-not-yet-reinvested fee balance for one position."""

    position_key: str
    fee_base: int = 0
    fee_quote: int = 0

    def amount_of(self, token: Token) -> int:
        return self.fee_base if token is Token.BASE else self.fee_quote


@dataclass
class PriceHistoryRecord:
    """Weighted average price captured on a bid/ask regime transition."""

    position_key: str
    timestamp_ms: int
    price_type: Side
    avg_price: Decimal
    amount: Decimal


@dataclass
class RebalanceDecision:
    """A redeploy the decision engine wants to perform on a position."""

    position: Position
    action: Side
    amount: int

    @property
    def token(self) -> Token:
        return self.action.deploy_token


@dataclass
class PendingRedeploy:
    """Durable marker of a position withdrawn in phase 1 but not yet re-added."""

    position_key: str
    action: Side
    amount: int
    removed_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))


def _opt_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _opt_decimal(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)
