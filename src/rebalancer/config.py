"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolSettings(BaseSettings):
    """Pool token metadata for the base/quote pair."""

    model_config = SettingsConfigDict(env_prefix="POOL_")

    address: str = ""
    base_symbol: str = "SOL"
    quote_symbol: str = "USDC"
    base_decimals: int = 9
    quote_decimals: int = 6


class RebalanceSettings(BaseSettings):
    """Rebalance trigger gating and loop pacing."""

    model_config = SettingsConfigDict(env_prefix="REBALANCE_")

    monitor_interval: float = 30.0  # seconds between evaluation ticks
    price_deviation_pct: Decimal = Decimal("0.5")  # percent beyond the range edge
    price_gate_enabled: bool = True
    monotonic_tolerance: Decimal = Decimal("0.10")  # 10% margin between half means
    settle_delay: float = 3.0  # seconds between remove and re-add
    inter_position_delay: float = 1.0  # seconds after each rebalance attempt


class RegimeSettings(BaseSettings):
    """Side-ratio cutoffs for bid/ask/mixed classification."""

    model_config = SettingsConfigDict(env_prefix="REGIME_")

    ask_threshold: Decimal = Decimal("0.95")
    bid_threshold: Decimal = Decimal("0.05")


class TrackerSettings(BaseSettings):
    """Value tracking persistence configuration.

    Controls where snapshots live, how often a durable snapshot row is
    written, and how long raw rows are retained.
    All fields configurable via TRACKER_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="TRACKER_")

    db_path: str = "data/tracker.db"
    snapshot_interval_seconds: int = 600  # 10 minutes
    snapshot_retention_days: int = 30
    operation_retention_days: int = 90
    regime_eviction: Literal["absent", "never"] = "absent"


class FeeClaimSettings(BaseSettings):
    """Automatic fee claiming and reinvestment."""

    model_config = SettingsConfigDict(env_prefix="CLAIM_FEE_")

    enabled: bool = True
    threshold_usd: Decimal = Decimal("5")  # aggregate across all positions
    min_position_usd: Decimal = Decimal("0.1")  # skip dust positions
    check_hour: int = 8  # UTC hour of the daily claim pass
    auto_reinvest: bool = True
    inter_claim_delay: float = 2.0


class RetrySettings(BaseSettings):
    """Bounded retry policy for position source reads."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    mode: Literal["paper", "live"] = "paper"
    pool: PoolSettings = PoolSettings()
    rebalance: RebalanceSettings = RebalanceSettings()
    regime: RegimeSettings = RegimeSettings()
    tracker: TrackerSettings = TrackerSettings()
    fee_claim: FeeClaimSettings = FeeClaimSettings()
    retry: RetrySettings = RetrySettings()
