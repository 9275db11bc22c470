"""
Tests for the plan builder.

Tests:
1. Legs from drift
2. Leg expansion by scope
3. max_rebalance_pct and max_transactions limits
4. Route selection
5. Dependency ordering
"""

from decimal import Decimal

import pytest

from core.exceptions import PlanningError
from rebalancing_engine.adapters.mock import MockConfig, StaticMarketDataProvider
from rebalancing_engine.planner import PlanBuilder, order_by_dependencies, select_route
from rebalancing_engine.types import (
    AllocationScope,
    AllocationSnapshot,
    CustomRoute,
    OptimizationTarget,
    Route,
    TargetAllocation,
    Transaction,
    TransactionType,
)

from conftest import asset, target


def snapshot(scope: AllocationScope, ref_id: str, pct: str, amount: str) -> AllocationSnapshot:
    return AllocationSnapshot(scope=scope, id=ref_id, pct=Decimal(pct), amount_usd=Decimal(amount))


def route(route_id: str, dex: str, gas: str, output: str, slippage: str = "0.1") -> Route:
    return Route(
        route_id=route_id,
        dex=dex,
        expected_slippage_pct=Decimal(slippage),
        expected_gas_cost_usd=Decimal(gas),
        expected_output_usd=Decimal(output),
    )


@pytest.fixture
def planner(market_data):
    return PlanBuilder(market_data)


# =============================================================
# LEGS
# =============================================================

class TestLegs:

    @pytest.mark.asyncio
    async def test_single_swap_leg(self, planner, make_strategy):
        """50/50 -> 60/40 moves 1000 USD from USDC to DOT."""
        current = [asset("DOT", "50", "5000"), asset("USDC", "50", "5000")]

        plan = await planner.build(make_strategy(), current)

        assert len(plan.transactions) == 1
        swap = plan.transactions[0]
        assert swap.tx_type == TransactionType.SWAP
        assert swap.from_asset == "USDC"
        assert swap.to_asset == "DOT"
        assert swap.from_amount_usd == Decimal("1000")
        assert swap.source_key == "asset:USDC"
        assert swap.destination_key == "asset:DOT"
        assert swap.route is not None
        assert swap.route.dex == "mockswap"
        assert swap.to_amount_usd == Decimal("999")
        assert plan.portfolio_value_usd == Decimal("10000")
        assert plan.moved_usd == Decimal("1000")
        assert not plan.capped
        assert not plan.truncated

    @pytest.mark.asyncio
    async def test_target_snapshot(self, planner, make_strategy):
        current = [asset("DOT", "50", "5000"), asset("USDC", "50", "5000")]

        plan = await planner.build(make_strategy(), current)

        amounts = {a.id: a.amount_usd for a in plan.target_allocation}
        assert amounts == {"DOT": Decimal("6000"), "USDC": Decimal("4000")}

    @pytest.mark.asyncio
    async def test_untargeted_holding_is_drained(self, planner, make_strategy):
        current = [
            asset("DOT", "50", "5000"),
            asset("USDC", "40", "4000"),
            asset("ETH", "10", "1000"),
        ]

        plan = await planner.build(make_strategy(), current)

        assert [(tx.from_asset, tx.to_asset) for tx in plan.transactions] == [("ETH", "DOT")]
        assert plan.transactions[0].from_amount_usd == Decimal("1000")

    @pytest.mark.asyncio
    async def test_missing_target_entry_funded(self, planner, make_strategy):
        current = [asset("USDC", "100", "10000")]

        plan = await planner.build(make_strategy(), current)

        assert len(plan.transactions) == 1
        assert plan.transactions[0].to_asset == "DOT"
        assert plan.transactions[0].from_amount_usd == Decimal("6000")

    @pytest.mark.asyncio
    async def test_zero_value_portfolio_rejected(self, planner, make_strategy):
        current = [asset("DOT", "0", "0"), asset("USDC", "0", "0")]

        with pytest.raises(PlanningError):
            await planner.build(make_strategy(), current)

    @pytest.mark.asyncio
    async def test_balanced_portfolio_gives_empty_plan(self, planner, make_strategy):
        current = [asset("DOT", "60", "6000"), asset("USDC", "40", "4000")]

        plan = await planner.build(make_strategy(), current)

        assert plan.transactions == []
        assert plan.moved_usd == Decimal("0")


# =============================================================
# LEG EXPANSION
# =============================================================

class TestLegExpansion:

    @pytest.mark.asyncio
    async def test_asset_to_protocol_is_deposit(self, planner, make_strategy):
        strategy = make_strategy(target_allocations=[
            target("USDC", "60"),
            TargetAllocation(scope=AllocationScope.PROTOCOL, id="aave", target_pct=Decimal("40")),
        ])
        current = [asset("USDC", "100", "10000")]

        plan = await planner.build(strategy, current)

        assert len(plan.transactions) == 1
        deposit = plan.transactions[0]
        assert deposit.tx_type == TransactionType.DEPOSIT
        assert deposit.from_asset == "USDC"
        assert deposit.to_protocol == "aave"
        assert deposit.route is None

    @pytest.mark.asyncio
    async def test_protocol_to_asset_is_withdrawal(self, planner, make_strategy):
        strategy = make_strategy(target_allocations=[target("USDC", "100")])
        current = [snapshot(AllocationScope.PROTOCOL, "aave", "100", "10000")]

        plan = await planner.build(strategy, current)

        assert [tx.tx_type for tx in plan.transactions] == [TransactionType.WITHDRAWAL]
        assert plan.transactions[0].from_protocol == "aave"
        assert plan.transactions[0].to_asset == "USDC"

    @pytest.mark.asyncio
    async def test_chain_to_protocol_is_transfer_then_deposit(self, planner, make_strategy):
        strategy = make_strategy(target_allocations=[
            TargetAllocation(scope=AllocationScope.PROTOCOL, id="aave", target_pct=Decimal("100")),
        ])
        current = [snapshot(AllocationScope.CHAIN, "polkadot", "100", "10000")]

        plan = await planner.build(strategy, current)

        transfer, deposit = plan.transactions
        assert transfer.tx_type == TransactionType.TRANSFER
        assert transfer.from_chain == "polkadot"
        assert transfer.source_key == "chain:polkadot"
        assert transfer.depends_on is None
        assert deposit.tx_type == TransactionType.DEPOSIT
        assert deposit.depends_on == transfer.index
        assert deposit.destination_key == "protocol:aave"


# =============================================================
# LIMITS
# =============================================================

class TestLimits:

    @pytest.mark.asyncio
    async def test_max_rebalance_pct_caps_movement(self, planner, make_strategy):
        strategy = make_strategy()
        strategy.execution_params.max_rebalance_pct = Decimal("5")
        current = [asset("DOT", "50", "5000"), asset("USDC", "50", "5000")]

        plan = await planner.build(strategy, current)

        assert plan.moved_usd == Decimal("500")
        assert plan.transactions[0].from_amount_usd == Decimal("500")
        assert plan.capped

    @pytest.mark.asyncio
    async def test_max_transactions_truncates_without_splitting(self, planner, make_strategy):
        strategy = make_strategy(target_allocations=[
            target("DOT", "50"),
            target("ETH", "50"),
        ])
        strategy.advanced.max_transactions = 1
        current = [asset("USDC", "100", "10000")]

        plan = await planner.build(strategy, current)

        assert len(plan.transactions) == 1
        assert plan.truncated
        assert plan.moved_usd == Decimal("5000")


# =============================================================
# ROUTE SELECTION
# =============================================================

class TestRouteSelection:

    def test_slippage_filter(self, make_strategy):
        strategy = make_strategy()
        strategy.execution_params.max_slippage_pct = Decimal("0.5")

        selected = select_route([route("r1", "a", "1", "990", slippage="0.8")], strategy)

        assert selected is None

    def test_cheapest_gas_wins_by_default(self, make_strategy):
        candidates = [
            route("r1", "a", "10", "1000"),
            route("r2", "b", "4", "990"),
        ]

        assert select_route(candidates, make_strategy()).route_id == "r2"

    def test_maximize_returns_prefers_net_value(self, make_strategy):
        strategy = make_strategy()
        strategy.advanced.optimization_target = OptimizationTarget.MAXIMIZE_RETURNS
        candidates = [
            route("r1", "a", "10", "1000"),
            route("r2", "b", "4", "990"),
        ]

        assert select_route(candidates, strategy).route_id == "r1"

    def test_custom_priority_breaks_ties(self, make_strategy):
        strategy = make_strategy()
        strategy.advanced.custom_routes = [CustomRoute(dex="b", priority=1)]
        candidates = [
            route("r1", "a", "5", "995"),
            route("r2", "b", "5", "995"),
        ]

        assert select_route(candidates, strategy).route_id == "r2"

    @pytest.mark.asyncio
    async def test_no_qualifying_route_leaves_swap_unrouted(self, make_strategy):
        provider = StaticMarketDataProvider(MockConfig(auto_routes=False))
        planner = PlanBuilder(provider)
        current = [asset("DOT", "50", "5000"), asset("USDC", "50", "5000")]

        plan = await planner.build(make_strategy(), current)

        assert plan.transactions[0].route is None


# =============================================================
# DEPENDENCY ORDERING
# =============================================================

class TestDependencyOrdering:

    def test_consumer_moved_after_producer(self):
        steps = [
            Transaction(index=0, tx_type=TransactionType.DEPOSIT, depends_on=1),
            Transaction(index=1, tx_type=TransactionType.WITHDRAWAL),
        ]

        ordered = order_by_dependencies(steps)

        assert [tx.tx_type for tx in ordered] == [TransactionType.WITHDRAWAL, TransactionType.DEPOSIT]
        assert [tx.index for tx in ordered] == [0, 1]
        assert ordered[1].depends_on == 0

    def test_cycle_rejected(self):
        steps = [
            Transaction(index=0, tx_type=TransactionType.SWAP, depends_on=1),
            Transaction(index=1, tx_type=TransactionType.SWAP, depends_on=0),
        ]

        with pytest.raises(PlanningError):
            order_by_dependencies(steps)

    def test_unknown_dependency_rejected(self):
        steps = [Transaction(index=0, tx_type=TransactionType.SWAP, depends_on=4)]

        with pytest.raises(PlanningError):
            order_by_dependencies(steps)
