"""
Tests for the SQLAlchemy repositories on in-memory SQLite.

Tests:
1. Strategy records survive the JSON payload
2. Conditional writes
3. Partial unique index on active operations
4. Listing and settled-window queries
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal

import pytest

from core.exceptions import ConcurrencyError, ConflictError, NotFoundError
from database.engine import create_all_tables, create_database_engine, create_session_factory
from rebalancing_engine.sql_repository import SqlOperationRepository, SqlStrategyRepository
from rebalancing_engine.types import (
    Operation,
    OperationStatus,
    PerformanceMetrics,
    StrategyType,
    Transaction,
    TransactionType,
)

from conftest import START, asset


@asynccontextmanager
async def sql_repositories():
    engine = create_database_engine("sqlite+aiosqlite://")
    try:
        await create_all_tables(engine)
        factory = create_session_factory(engine)
        yield SqlStrategyRepository(factory), SqlOperationRepository(factory)
    finally:
        await engine.dispose()


def make_operation(operation_id: str, strategy_id: str = "strat-1", **kwargs) -> Operation:
    fields = dict(
        operation_id=operation_id,
        strategy_id=strategy_id,
        owner_id="user-1",
        created_at=START,
        updated_at=START,
    )
    fields.update(kwargs)
    return Operation(**fields)


# =============================================================
# STRATEGIES
# =============================================================

class TestSqlStrategyRepository:

    @pytest.mark.asyncio
    async def test_insert_and_get(self, make_strategy):
        async with sql_repositories() as (strategies, _):
            await strategies.insert(make_strategy(
                strategy_type=StrategyType.PERIODIC,
                next_scheduled_rebalance=START + timedelta(days=1),
            ))

            loaded = await strategies.get("strat-1")

        assert loaded.version == 1
        assert loaded.strategy_type == StrategyType.PERIODIC
        assert loaded.target_allocations[0].target_pct == Decimal("60")
        assert loaded.next_scheduled_rebalance == START + timedelta(days=1)
        assert loaded.triggers.min_hours_between_rebalances == Decimal("24")

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, make_strategy):
        async with sql_repositories() as (strategies, _):
            await strategies.insert(make_strategy())

            with pytest.raises(ConflictError):
                await strategies.insert(make_strategy())

    @pytest.mark.asyncio
    async def test_conditional_update(self, make_strategy):
        async with sql_repositories() as (strategies, _):
            stored = await strategies.insert(make_strategy())
            stored.name = "Renamed"
            await strategies.update(stored, expected_version=1)

            with pytest.raises(ConcurrencyError):
                await strategies.update(stored, expected_version=1)
            with pytest.raises(NotFoundError):
                await strategies.update(make_strategy(strategy_id="missing"), expected_version=1)

            loaded = await strategies.get("strat-1")

        assert loaded.name == "Renamed"
        assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_list_active_and_delete(self, make_strategy):
        async with sql_repositories() as (strategies, _):
            await strategies.insert(make_strategy(strategy_id="a"))
            await strategies.insert(make_strategy(strategy_id="b", strategy_type=StrategyType.PERIODIC))

            periodic = await strategies.list_active([StrategyType.PERIODIC])
            deleted = await strategies.delete("a")
            remaining = await strategies.list_by_owner("user-1")

        assert [s.strategy_id for s in periodic] == ["b"]
        assert deleted is True
        assert [s.strategy_id for s in remaining] == ["b"]


# =============================================================
# OPERATIONS
# =============================================================

class TestSqlOperationRepository:

    @pytest.mark.asyncio
    async def test_operation_payload_survives(self):
        operation = make_operation(
            "op-1",
            current_allocation=[asset("DOT", "50", "5000")],
            transactions=[Transaction(
                index=0,
                tx_type=TransactionType.SWAP,
                from_asset="USDC",
                to_asset="DOT",
                from_amount=Decimal("1000.5"),
            )],
            planned=True,
        )

        async with sql_repositories() as (_, operations):
            await operations.create_if_no_active(operation)
            loaded = await operations.get("op-1")

        assert loaded.version == 1
        assert loaded.planned
        assert loaded.transactions[0].tx_type == TransactionType.SWAP
        assert loaded.transactions[0].from_amount == Decimal("1000.5")
        assert loaded.current_allocation[0].amount_usd == Decimal("5000")
        assert loaded.created_at == START

    @pytest.mark.asyncio
    async def test_second_active_operation_rejected(self):
        async with sql_repositories() as (_, operations):
            await operations.create_if_no_active(make_operation("op-1"))

            with pytest.raises(ConflictError) as exc_info:
                await operations.create_if_no_active(make_operation("op-2"))

        assert exc_info.value.context["active_operation_id"] == "op-1"

    @pytest.mark.asyncio
    async def test_terminal_operation_frees_slot(self):
        async with sql_repositories() as (_, operations):
            first = await operations.create_if_no_active(make_operation("op-1"))
            first.status = OperationStatus.CANCELLED
            await operations.update(first, expected_version=1)

            await operations.create_if_no_active(make_operation("op-2"))
            active = await operations.find_active("strat-1")

        assert active.operation_id == "op-2"

    @pytest.mark.asyncio
    async def test_stale_update_rejected(self):
        async with sql_repositories() as (_, operations):
            created = await operations.create_if_no_active(make_operation("op-1"))
            await operations.update(created, expected_version=1)

            with pytest.raises(ConcurrencyError):
                await operations.update(created, expected_version=1)

    @pytest.mark.asyncio
    async def test_strategy_delete_guarded_by_active_operation(self, make_strategy):
        async with sql_repositories() as (strategies, operations):
            await strategies.insert(make_strategy())
            first = await operations.create_if_no_active(make_operation("op-1"))

            with pytest.raises(ConflictError) as exc_info:
                await operations.delete_strategy_if_no_active("strat-1", strategies)
            kept = await strategies.get("strat-1")

            first.status = OperationStatus.CANCELLED
            await operations.update(first, expected_version=1)
            deleted = await operations.delete_strategy_if_no_active("strat-1", strategies)
            missing = await operations.delete_strategy_if_no_active("strat-1", strategies)
            history = await operations.get("op-1")

        assert exc_info.value.context["active_operation_id"] == "op-1"
        assert kept is not None
        assert deleted is True
        assert missing is False
        assert history.status == OperationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_list_newest_first(self):
        async with sql_repositories() as (_, operations):
            for i in range(3):
                await operations.create_if_no_active(make_operation(
                    f"op-{i}",
                    strategy_id=f"strat-{i}",
                    created_at=START + timedelta(minutes=i),
                ))

            page = await operations.list(owner_id="user-1", limit=2)

        assert [op.operation_id for op in page] == ["op-2", "op-1"]

    @pytest.mark.asyncio
    async def test_list_settled_window(self):
        async with sql_repositories() as (_, operations):
            await operations.create_if_no_active(make_operation(
                "recent",
                strategy_id="a",
                status=OperationStatus.COMPLETED,
                completed_at=START - timedelta(days=1),
                performance=PerformanceMetrics(total_gas_cost_usd=Decimal("13.5")),
            ))
            await operations.create_if_no_active(make_operation(
                "old",
                strategy_id="b",
                status=OperationStatus.PARTIAL,
                completed_at=START - timedelta(days=60),
            ))

            settled = await operations.list_settled("user-1", START - timedelta(days=30), START)

        assert [op.operation_id for op in settled] == ["recent"]
        assert settled[0].performance.total_gas_cost_usd == Decimal("13.5")
