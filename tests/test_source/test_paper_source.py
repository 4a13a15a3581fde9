"""Tests for PaperPositionSource simulated liquidity mutations.

Verifies:
- Price moves convert bucket holdings at each bucket's own price
- remove_all_liquidity empties the range into the virtual wallet
- add_liquidity_single_sided distributes in a bid-ask shape
- Claims move fees into the wallet
- Injected failures and unknown keys raise PositionSourceError subclasses
- Transaction id format (paper-{hex})
"""

from decimal import Decimal

import pytest
from fakes import PositionFactory

from rebalancer.analysis.distribution import is_monotonic
from rebalancer.exceptions import PositionNotFoundError, PositionSourceError
from rebalancer.models import Direction, Token
from rebalancer.position.paper_source import PaperPositionSource, _bid_ask_shares

SOL = 10**9
USDC = 10**6


@pytest.fixture
def source(position_factory: PositionFactory) -> PaperPositionSource:
    paper = PaperPositionSource(active_price=Decimal("100"))
    paper.add_position(
        position_factory(
            "pos-ask",
            ["101", "102", "103"],
            base=[SOL, 2 * SOL, 3 * SOL],
        )
    )
    return paper


class TestPriceMoves:
    @pytest.mark.asyncio
    async def test_price_above_range_sells_base_into_quote(
        self,
        source: PaperPositionSource,
    ) -> None:
        source.set_active_price(Decimal("110"))
        position = (await source.get_positions())[0]

        assert position.base_total == 0
        assert [b.quote_amount for b in position.buckets] == [101 * USDC, 204 * USDC, 309 * USDC]
        # ask liquidity leaves quote ascending with price
        assert is_monotonic(position.buckets, Token.QUOTE, Direction.ASCENDING)

    @pytest.mark.asyncio
    async def test_partial_move_only_converts_crossed_buckets(
        self,
        source: PaperPositionSource,
    ) -> None:
        source.set_active_price(Decimal("102.5"))
        position = (await source.get_positions())[0]

        assert [b.base_amount for b in position.buckets] == [0, 0, 3 * SOL]
        assert [b.quote_amount for b in position.buckets] == [101 * USDC, 204 * USDC, 0]

    @pytest.mark.asyncio
    async def test_active_price_reported(self, source: PaperPositionSource) -> None:
        source.set_active_price(Decimal("99"))
        assert await source.get_active_price() == Decimal("99")


class TestRemoveAndAdd:
    @pytest.mark.asyncio
    async def test_remove_moves_liquidity_to_wallet(self, source: PaperPositionSource) -> None:
        txs = await source.remove_all_liquidity("pos-ask", (100, 102))

        assert len(txs) == 1
        assert txs[0].startswith("paper-")
        assert source.wallet_balance(Token.BASE) == 6 * SOL
        position = (await source.get_positions())[0]
        assert position.base_total == 0
        assert len(position.buckets) == 3

    @pytest.mark.asyncio
    async def test_remove_empty_position_raises(self, source: PaperPositionSource) -> None:
        await source.remove_all_liquidity("pos-ask", (100, 102))
        with pytest.raises(PositionSourceError):
            await source.remove_all_liquidity("pos-ask", (100, 102))

    @pytest.mark.asyncio
    async def test_add_quote_weights_toward_low_prices(self, source: PaperPositionSource) -> None:
        source.set_active_price(Decimal("110"))
        await source.remove_all_liquidity("pos-ask", (100, 102))
        quote = source.wallet_balance(Token.QUOTE)

        await source.add_liquidity_single_sided("pos-ask", Token.QUOTE, quote, (100, 102))

        position = (await source.get_positions())[0]
        assert position.quote_total == quote
        assert source.wallet_balance(Token.QUOTE) == 0
        assert is_monotonic(position.buckets, Token.QUOTE, Direction.DESCENDING)

    @pytest.mark.asyncio
    async def test_add_more_than_wallet_raises(self, source: PaperPositionSource) -> None:
        with pytest.raises(PositionSourceError, match="insufficient"):
            await source.add_liquidity_single_sided("pos-ask", Token.QUOTE, 1, (100, 102))

    @pytest.mark.asyncio
    async def test_add_rejects_unknown_strategy(self, source: PaperPositionSource) -> None:
        await source.remove_all_liquidity("pos-ask", (100, 102))
        with pytest.raises(PositionSourceError, match="strategy"):
            await source.add_liquidity_single_sided(
                "pos-ask", Token.BASE, SOL, (100, 102), strategy="spot"
            )


class TestClaimsAndFailures:
    @pytest.mark.asyncio
    async def test_claim_moves_fees_to_wallet(self, source: PaperPositionSource) -> None:
        source.set_fees("pos-ask", 5 * SOL // 100, 3 * USDC)
        await source.claim_fees("pos-ask")

        position = (await source.get_positions())[0]
        assert position.unclaimed_fee_base == 0
        assert position.unclaimed_fee_quote == 0
        assert source.wallet_balance(Token.BASE) == 5 * SOL // 100
        assert source.wallet_balance(Token.QUOTE) == 3 * USDC

    @pytest.mark.asyncio
    async def test_unknown_position_raises_not_found(self, source: PaperPositionSource) -> None:
        with pytest.raises(PositionNotFoundError):
            await source.claim_fees("missing")

    @pytest.mark.asyncio
    async def test_fail_next_fails_once(self, source: PaperPositionSource) -> None:
        source.fail_next("get_positions")
        with pytest.raises(PositionSourceError):
            await source.get_positions()
        assert len(await source.get_positions()) == 1

    @pytest.mark.asyncio
    async def test_get_positions_returns_copies(self, source: PaperPositionSource) -> None:
        snapshot = await source.get_positions()
        await source.remove_all_liquidity("pos-ask", (100, 102))
        assert snapshot[0].base_total == 6 * SOL


class TestBidAskShares:
    def test_shares_sum_to_amount(self) -> None:
        assert sum(_bid_ask_shares(1001, 4, Token.BASE)) == 1001

    def test_base_weights_ascend_and_quote_weights_descend(self) -> None:
        assert _bid_ask_shares(600, 3, Token.BASE) == [100, 200, 300]
        assert _bid_ask_shares(600, 3, Token.QUOTE) == [300, 200, 100]
