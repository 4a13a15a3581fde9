"""Rebalance decision engine for single-sided bucketed positions.

A position qualifies for a redeploy only when price has pushed it entirely
into one token:

- All quote, quote amounts ascending with price: the quote came from the ask
  side selling through the range, so redeploy it as a BID with the full quote
  total.
- All base, base amounts descending with price: the base came from the bid
  side buying through the range, so redeploy it as an ASK with the full base
  total.

An already-redeployed position has the opposite slope and is left alone.
The optional price-deviation gate additionally requires the active price to
have moved a margin beyond the range edge, preventing oscillation when price
hovers at a boundary.
"""

from decimal import Decimal

from rebalancer.analysis.distribution import is_monotonic
from rebalancer.config import RebalanceSettings
from rebalancer.logging import get_logger, short_key
from rebalancer.models import Direction, Position, RebalanceDecision, Side, Token

logger = get_logger(__name__)

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


class RebalanceDecisionEngine:
    """Stateless per-tick redeploy decision.

    Args:
        settings: Tolerance and price-gate configuration.
    """

    def __init__(self, settings: RebalanceSettings | None = None) -> None:
        self._settings = settings or RebalanceSettings()

    @property
    def deviation(self) -> Decimal:
        """Price gate margin as a fraction (0.5 percent -> 0.005)."""
        return self._settings.price_deviation_pct / _HUNDRED

    def decide(self, position: Position, current_price: Decimal) -> RebalanceDecision | None:
        """Return the redeploy to perform for a position, or None."""
        base_total = position.base_total
        quote_total = position.quote_total
        tolerance = self._settings.monotonic_tolerance

        if base_total == 0 and quote_total > 0:
            if not is_monotonic(position.buckets, Token.QUOTE, Direction.ASCENDING, tolerance):
                return None
            if not self._passes_gate(position, Side.BID, current_price):
                return None
            decision = RebalanceDecision(position=position, action=Side.BID, amount=quote_total)
        elif quote_total == 0 and base_total > 0:
            if not is_monotonic(position.buckets, Token.BASE, Direction.DESCENDING, tolerance):
                return None
            if not self._passes_gate(position, Side.ASK, current_price):
                return None
            decision = RebalanceDecision(position=position, action=Side.ASK, amount=base_total)
        else:
            return None

        logger.info(
            "rebalance_decided",
            position_key=short_key(position.key),
            action=decision.action.value,
            amount=decision.amount,
            current_price=str(current_price),
        )
        return decision

    def _passes_gate(self, position: Position, action: Side, current_price: Decimal) -> bool:
        if not self._settings.price_gate_enabled:
            return True

        if action is Side.BID:
            trigger = position.upper_price * (_ONE + self.deviation)
            passed = current_price > trigger
        else:
            trigger = position.lower_price * (_ONE - self.deviation)
            passed = current_price < trigger

        if not passed:
            logger.debug(
                "price_gate_blocked",
                position_key=short_key(position.key),
                action=action.value,
                current_price=str(current_price),
                trigger_price=str(trigger),
            )
        return passed
