"""Custom exceptions for the bid-ask rebalancer.

All source, execution and persistence exceptions live here
to avoid circular imports between modules.
"""


class RebalancerError(Exception):
    """Base exception for all rebalancer errors."""


class PositionSourceError(RebalancerError):
    """Raised when the external position source call fails."""


class PositionNotFoundError(PositionSourceError):
    """Raised when a position key is not known to the position source."""


class RebalanceExecutionError(RebalancerError):
    """Raised when one phase of a two-phase redeploy fails.

    Attributes:
        phase: The phase that failed, "remove" or "add".
    """

    def __init__(self, message: str, phase: str) -> None:
        super().__init__(message)
        self.phase = phase


class FeeClaimError(RebalancerError):
    """Raised when claiming fees for a position fails."""


class StoreError(RebalancerError):
    """Raised when a durable store write cannot be completed."""
