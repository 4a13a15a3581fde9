"""Read-only analytics: annualized returns, fee APY and summary projections."""

from rebalancer.analytics.service import AnalyticsService, Summary
from rebalancer.analytics.yield_metrics import annualized_return, fee_apy

__all__ = ["AnalyticsService", "Summary", "annualized_return", "fee_apy"]
