"""
Tests for the simulator.

Tests:
1. Result classification (success / partial / failed)
2. Gas estimates and fallbacks
3. Liquidity and route findings
4. Cross-chain warnings
"""

from decimal import Decimal

import pytest

from core.exceptions import ChainExecutionError
from rebalancing_engine.adapters.mock import MockChainExecutor, StaticMarketDataProvider
from rebalancing_engine.simulator import Simulator
from rebalancing_engine.types import (
    Route,
    SimulationResult,
    SlippageInfo,
    Transaction,
    TransactionStatus,
    TransactionType,
)


class NoEstimateChainExecutor(MockChainExecutor):
    async def estimate_gas(self, transaction):
        return None


class BrokenEstimateChainExecutor(MockChainExecutor):
    async def estimate_gas(self, transaction):
        raise ChainExecutionError("estimator offline")


def swap(index: int = 0, amount: str = "1000", liquidity=None, routed: bool = True) -> Transaction:
    amount_usd = Decimal(amount)
    selected = None
    if routed:
        selected = Route(
            route_id="mockswap:USDC-DOT",
            dex="mockswap",
            expected_slippage_pct=Decimal("0.1"),
            expected_gas_cost_usd=Decimal("5"),
            expected_output_usd=amount_usd * Decimal("0.999"),
            liquidity_usd=Decimal(liquidity) if liquidity is not None else None,
        )
    return Transaction(
        index=index,
        tx_type=TransactionType.SWAP,
        from_asset="USDC",
        to_asset="DOT",
        from_amount=amount_usd,
        from_amount_usd=amount_usd,
        route=selected,
        slippage=SlippageInfo(expected=Decimal("0.1") if routed else Decimal("0")),
    )


@pytest.fixture
def simulator(chain, market_data, clock):
    return Simulator(chain, market_data, clock=clock)


# =============================================================
# RESULT CLASSIFICATION
# =============================================================

class TestResult:

    @pytest.mark.asyncio
    async def test_feasible_plan_succeeds(self, simulator, make_strategy, clock):
        plan = [swap()]

        report = await simulator.simulate(make_strategy(), plan, Decimal("10000"))

        assert report.performed
        assert report.result == SimulationResult.SUCCESS
        # 150000 gas * 30 gwei * 3000 USD
        assert report.expected_gas_cost_usd == Decimal("13.5")
        assert report.expected_slippage == Decimal("0.1")
        assert report.estimated_duration_sec == 30
        assert report.portfolio_value_before_usd == Decimal("10000")
        assert report.portfolio_value_after_usd == Decimal("9985.5")
        assert report.simulated_at == clock.now()

    @pytest.mark.asyncio
    async def test_steps_not_submitted_or_advanced(self, simulator, make_strategy, chain):
        plan = [swap()]

        await simulator.simulate(make_strategy(), plan, Decimal("10000"))

        assert chain.submissions == []
        assert plan[0].status == TransactionStatus.PENDING
        assert plan[0].gas.gas_cost_usd == Decimal("13.5")

    @pytest.mark.asyncio
    async def test_empty_plan_fails(self, simulator, make_strategy):
        report = await simulator.simulate(make_strategy(), [], Decimal("10000"))

        assert report.result == SimulationResult.FAILED
        assert "Plan contains no transactions" in report.errors

    @pytest.mark.asyncio
    async def test_unrouted_swap_fails(self, simulator, make_strategy):
        report = await simulator.simulate(make_strategy(), [swap(routed=False)], Decimal("10000"))

        assert report.result == SimulationResult.FAILED
        assert "route not found" in report.errors[0]

    @pytest.mark.asyncio
    async def test_gas_above_limit_is_warning(self, simulator, make_strategy):
        strategy = make_strategy()
        strategy.execution_params.max_gas_price_gwei = Decimal("20")

        report = await simulator.simulate(strategy, [swap()], Decimal("10000"))

        assert report.result == SimulationResult.PARTIAL
        assert "exceeds maximum 20 gwei" in report.warnings[0]

    @pytest.mark.asyncio
    async def test_dependency_on_later_step_fails(self, simulator, make_strategy):
        first = swap(index=0)
        first.depends_on = 1

        report = await simulator.simulate(make_strategy(), [first, swap(index=1)], Decimal("10000"))

        assert report.result == SimulationResult.FAILED


# =============================================================
# LIQUIDITY
# =============================================================

class TestLiquidity:

    @pytest.mark.asyncio
    async def test_amount_above_liquidity_fails(self, simulator, make_strategy):
        report = await simulator.simulate(
            make_strategy(), [swap(liquidity="500")], Decimal("10000")
        )

        assert report.result == SimulationResult.FAILED
        assert "insufficient liquidity" in report.errors[0]

    @pytest.mark.asyncio
    async def test_thin_liquidity_warns(self, simulator, make_strategy):
        report = await simulator.simulate(
            make_strategy(), [swap(liquidity="2000")], Decimal("10000")
        )

        assert report.result == SimulationResult.PARTIAL
        assert "thin liquidity" in report.warnings[0]

    @pytest.mark.asyncio
    async def test_deep_liquidity_is_clean(self, simulator, make_strategy):
        report = await simulator.simulate(
            make_strategy(), [swap(liquidity="100000")], Decimal("10000")
        )

        assert report.result == SimulationResult.SUCCESS


# =============================================================
# GAS FALLBACKS
# =============================================================

class TestGasFallbacks:

    @pytest.mark.asyncio
    async def test_default_units_at_target_price(self, make_strategy, clock):
        simulator = Simulator(NoEstimateChainExecutor(), StaticMarketDataProvider(), clock=clock)
        strategy = make_strategy()
        strategy.execution_params.target_gas_price_gwei = Decimal("20")

        report = await simulator.simulate(strategy, [swap()], Decimal("10000"))

        # 200000 swap units * 20 gwei * 3000 USD
        assert report.expected_gas_cost_usd == Decimal("12")
        assert report.result == SimulationResult.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_estimate_is_error(self, make_strategy, clock):
        simulator = Simulator(BrokenEstimateChainExecutor(), StaticMarketDataProvider(), clock=clock)

        report = await simulator.simulate(make_strategy(), [swap()], Decimal("10000"))

        assert report.result == SimulationResult.FAILED
        assert "gas estimation failed" in report.errors[0]


# =============================================================
# CROSS-CHAIN
# =============================================================

class TestCrossChain:

    @pytest.mark.asyncio
    async def test_cross_chain_transfer_warns_and_adds_delay(self, simulator, make_strategy):
        transfer = Transaction(
            index=0,
            tx_type=TransactionType.TRANSFER,
            from_chain="polkadot",
            to_chain="ethereum",
            from_amount=Decimal("1000"),
            from_amount_usd=Decimal("1000"),
        )

        report = await simulator.simulate(make_strategy(), [transfer], Decimal("10000"))

        assert report.result == SimulationResult.PARTIAL
        assert "cross-chain" in report.warnings[0]
        assert report.estimated_duration_sec == 20 + 300
