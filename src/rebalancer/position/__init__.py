"""Position source interface, paper simulation and the numeric boundary."""

from rebalancer.position.numeric import build_position, to_decimal, to_int_amount
from rebalancer.position.paper_source import PaperPositionSource
from rebalancer.position.source import BID_ASK_STRATEGY, PositionSource

__all__ = [
    "BID_ASK_STRATEGY",
    "PaperPositionSource",
    "PositionSource",
    "build_position",
    "to_decimal",
    "to_int_amount",
]
