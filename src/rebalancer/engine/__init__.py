"""Rebalance decision and two-phase redeploy execution."""

from rebalancer.engine.decision import RebalanceDecisionEngine
from rebalancer.engine.executor import RebalanceExecutor, RedeployOutcome, RedeployState
from rebalancer.engine.retry import RetryPolicy

__all__ = [
    "RebalanceDecisionEngine",
    "RebalanceExecutor",
    "RedeployOutcome",
    "RedeployState",
    "RetryPolicy",
]
