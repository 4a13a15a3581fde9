"""Bid-ask rebalancer and value tracker for price-bucketed liquidity positions."""

__version__ = "0.1.0"
