"""
Shared fixtures for Rebalancing Engine tests.

Every fixture is synchronous; async setup happens inside the tests.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from rebalancing_engine.adapters.mock import (
    MockChainExecutor,
    MockConfig,
    RecordingNotificationDispatcher,
    StaticMarketDataProvider,
)
from rebalancing_engine.config import RebalancingEngineConfig
from rebalancing_engine.runtime import RebalancingEngine
from rebalancing_engine.types import (
    AllocationScope,
    AllocationSnapshot,
    Strategy,
    StrategyStatus,
    StrategyType,
    TargetAllocation,
    TriggerSettings,
)


START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
OWNER = "user-1"


def asset(symbol: str, pct: str, amount: str) -> AllocationSnapshot:
    return AllocationSnapshot(
        scope=AllocationScope.ASSET,
        id=symbol,
        name=symbol,
        pct=Decimal(pct),
        amount_usd=Decimal(amount),
    )


def target(symbol: str, pct: str, **kwargs) -> TargetAllocation:
    return TargetAllocation(
        scope=AllocationScope.ASSET,
        id=symbol,
        name=symbol,
        target_pct=Decimal(pct),
        **kwargs,
    )


@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def make_strategy(clock):
    """Factory for a DOT 60 / USDC 40 threshold strategy."""

    def _make(
        strategy_id: str = "strat-1",
        owner_id: str = OWNER,
        status: StrategyStatus = StrategyStatus.ACTIVE,
        manual_approval: bool = True,
        **overrides,
    ) -> Strategy:
        fields = dict(
            strategy_id=strategy_id,
            owner_id=owner_id,
            name="Core portfolio",
            strategy_type=StrategyType.THRESHOLD,
            status=status,
            target_allocations=[target("DOT", "60"), target("USDC", "40")],
            triggers=TriggerSettings(
                deviation_threshold_pct=Decimal("5"),
                manual_approval_required=manual_approval,
            ),
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        fields.update(overrides)
        return Strategy(**fields)

    return _make


@pytest.fixture
def market_data():
    provider = StaticMarketDataProvider()
    provider.set_portfolio(OWNER, [asset("DOT", "50", "5000"), asset("USDC", "50", "5000")])
    return provider


@pytest.fixture
def mock_config():
    return MockConfig()


@pytest.fixture
def chain(mock_config):
    return MockChainExecutor(mock_config)


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def engine_config():
    return RebalancingEngineConfig.for_testing()


@pytest.fixture
def engine(engine_config, clock, market_data, chain, dispatcher):
    return RebalancingEngine(
        engine_config,
        clock=clock,
        market_data=market_data,
        chain_executor=chain,
        dispatcher=dispatcher,
    )
