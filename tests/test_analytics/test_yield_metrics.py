"""Tests for annualized return and fee APY math."""

from decimal import Decimal

import pytest

from rebalancer.analytics.yield_metrics import (
    COMPOUND_APY_MAX,
    FEE_APY_MAX,
    SIMPLE_APY_MAX,
    annualized_return,
    clamp,
    fee_apy,
)
from rebalancer.models import DailyAggregate


def _rows(*pairs: tuple[str, str]) -> list[DailyAggregate]:
    rows = []
    for day, (open_, close) in enumerate(pairs, start=1):
        rows.append(
            DailyAggregate(
                date=f"2024-03-{day:02d}",
                open_value=Decimal(open_),
                close_value=Decimal(close),
                high_value=max(Decimal(open_), Decimal(close)),
                low_value=min(Decimal(open_), Decimal(close)),
                pnl=Decimal(close) - Decimal(open_),
                pnl_percent=Decimal("0"),
            )
        )
    return rows


class TestAnnualizedReturn:
    def test_needs_two_rows(self) -> None:
        assert annualized_return([]) == Decimal("0")
        assert annualized_return(_rows(("100", "150"))) == Decimal("0")

    def test_non_positive_start_is_zero(self) -> None:
        assert annualized_return(_rows(("0", "10"), ("10", "20"))) == Decimal("0")

    def test_two_days_use_simple_annualization(self) -> None:
        # 1% over 2 days -> 0.5% per day -> 182.5% per year
        assert annualized_return(_rows(("100", "100.5"), ("100.5", "101"))) == Decimal("182.5")

    def test_simple_annualization_is_clamped(self) -> None:
        assert annualized_return(_rows(("100", "500"), ("500", "10000"))) == SIMPLE_APY_MAX

    def test_three_days_compound_from_first_open_to_last_close(self) -> None:
        rows = _rows(("100", "101"), ("101", "102"), ("102", "103"))
        expected = (Decimal("1.03") ** (Decimal("365") / Decimal("3")) - Decimal("1")) * Decimal("100")
        assert annualized_return(rows) == expected

    def test_total_loss_is_clamped_above_minus_one_hundred(self) -> None:
        result = annualized_return(_rows(("100", "50"), ("50", "10"), ("10", "0")))
        assert Decimal("-100") <= result < Decimal("-99.99")

    def test_runaway_growth_is_capped(self) -> None:
        rows = _rows(("100", "1000"), ("1000", "10000"), ("10000", "100000"))
        assert annualized_return(rows) == COMPOUND_APY_MAX


class TestFeeApy:
    def test_annualizes_total_fees(self) -> None:
        result = fee_apy(Decimal("1"), Decimal("1"), Decimal("1000"), 7)
        assert result == Decimal("2") / Decimal("1000") * (Decimal("365") / Decimal("7")) * Decimal("100")

    @pytest.mark.parametrize(
        "claimed, unclaimed, value, days",
        [
            ("1", "1", "0", 7),
            ("1", "1", "-5", 7),
            ("0", "0", "1000", 7),
            ("1", "1", "1000", 0),
        ],
    )
    def test_degenerate_inputs_are_zero(
        self,
        claimed: str,
        unclaimed: str,
        value: str,
        days: int,
    ) -> None:
        assert fee_apy(Decimal(claimed), Decimal(unclaimed), Decimal(value), days) == Decimal("0")

    def test_capped(self) -> None:
        assert fee_apy(Decimal("1000"), Decimal("0"), Decimal("1"), 1) == FEE_APY_MAX


def test_clamp() -> None:
    assert clamp(Decimal("5"), Decimal("0"), Decimal("3")) == Decimal("3")
    assert clamp(Decimal("-5"), Decimal("0"), Decimal("3")) == Decimal("0")
    assert clamp(Decimal("2"), Decimal("0"), Decimal("3")) == Decimal("2")
