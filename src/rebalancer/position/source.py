"""Abstract position source interface.

Defines the contract for the external system that owns the liquidity
positions: reading per-bucket state and prices, and performing the
remove / add / claim mutations. Decision and tracking code depends only on
this interface, keeping chain- and SDK-specific details in the concrete
implementation supplied by the host application.

All methods are blocking (awaited) and fallible; failures surface as
PositionSourceError. Transaction handles are opaque strings.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from rebalancer.models import Position, Token

BID_ASK_STRATEGY = "bid-ask"


class PositionSource(ABC):
    """Abstract base class for liquidity position sources."""

    @property
    @abstractmethod
    def base_decimals(self) -> int:
        """Decimal places of the base token."""
        ...

    @property
    @abstractmethod
    def quote_decimals(self) -> int:
        """Decimal places of the quote token."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Initialize the connection and load pool metadata."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release any held resources."""
        ...

    @abstractmethod
    async def get_positions(self) -> list[Position]:
        """Return all owned positions, including unclaimed fees."""
        ...

    @abstractmethod
    async def get_active_price(self) -> Decimal:
        """Return the pool's current active price (quote per base)."""
        ...

    @abstractmethod
    async def remove_all_liquidity(
        self, position_key: str, bucket_range: tuple[int, int]
    ) -> list[str]:
        """Withdraw 100% of liquidity without closing the position."""
        ...

    @abstractmethod
    async def add_liquidity_single_sided(
        self,
        position_key: str,
        token: Token,
        amount: int,
        bucket_range: tuple[int, int],
        strategy: str = BID_ASK_STRATEGY,
    ) -> list[str]:
        """Deposit a single token across the bucket range using the given strategy."""
        ...

    @abstractmethod
    async def claim_fees(self, position_key: str) -> list[str]:
        """Claim accrued swap fees for a position."""
        ...
