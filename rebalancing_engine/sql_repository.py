"""
Rebalancing Engine - SQL Repositories.

============================================================
PURPOSE
============================================================
SQLAlchemy async implementations of the strategy and operation
repositories.

CONDITIONAL WRITES:
    UPDATE ... SET version = :expected + 1
    WHERE id = :id AND version = :expected

Zero affected rows means the record is gone (NotFoundError) or
was written concurrently (ConcurrencyError).

ONE ACTIVE OPERATION PER STRATEGY:
The partial unique index uq_operations_active_strategy rejects a
second active operation; the IntegrityError becomes a
ConflictError.

DELETING A STRATEGY:
Operation creation and strategy deletion both lock the strategy
row first, so a delete never slips between the active-operation
check and an insert.

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import ensure_utc
from core.exceptions import ConcurrencyError, ConflictError, NotFoundError
from database.engine import DatabasePersistenceError, transaction_scope

from .models import OperationModel, StrategyModel
from .repository import SETTLED_STATUSES, OperationRepository, StrategyRepository
from .serialization import from_dict, to_primitive
from .types import (
    ACTIVE_OPERATION_STATUSES,
    Operation,
    OperationStatus,
    Strategy,
    StrategyStatus,
    StrategyType,
)


logger = logging.getLogger(__name__)


# ============================================================
# ROW CONVERSION
# ============================================================

def _strategy_values(strategy: Strategy, version: int) -> Dict[str, Any]:
    payload = to_primitive(strategy)
    payload["version"] = version
    return {
        "owner_id": strategy.owner_id,
        "name": strategy.name,
        "strategy_type": strategy.strategy_type.value,
        "status": strategy.status.value,
        "next_scheduled_rebalance": (
            ensure_utc(strategy.next_scheduled_rebalance)
            if strategy.next_scheduled_rebalance else None
        ),
        "version": version,
        "payload": payload,
        "created_at": ensure_utc(strategy.created_at),
        "updated_at": ensure_utc(strategy.updated_at or strategy.created_at),
    }


def _strategy_from_row(row: StrategyModel) -> Strategy:
    strategy = from_dict(Strategy, row.payload)
    strategy.version = row.version
    return strategy


def _operation_values(operation: Operation, version: int) -> Dict[str, Any]:
    payload = to_primitive(operation)
    payload["version"] = version
    return {
        "strategy_id": operation.strategy_id,
        "owner_id": operation.owner_id,
        "status": operation.status.value,
        "initiated_by": operation.initiated_by.value,
        "portfolio_value_usd": operation.portfolio_value_usd,
        "total_gas_cost_usd": (
            operation.performance.total_gas_cost_usd if operation.performance else None
        ),
        "completed_at": ensure_utc(operation.completed_at) if operation.completed_at else None,
        "version": version,
        "payload": payload,
        "created_at": ensure_utc(operation.created_at),
        "updated_at": ensure_utc(operation.updated_at or operation.created_at),
    }


def _operation_from_row(row: OperationModel) -> Operation:
    operation = from_dict(Operation, row.payload)
    operation.version = row.version
    return operation


# ============================================================
# STRATEGY REPOSITORY
# ============================================================

class SqlStrategyRepository(StrategyRepository):
    """Strategies in the rebalancing_strategies table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, strategy_id: str) -> Optional[Strategy]:
        async with self._session_factory() as session:
            row = await session.get(StrategyModel, strategy_id)
            return _strategy_from_row(row) if row else None

    async def list_by_owner(self, owner_id: str) -> List[Strategy]:
        stmt = (
            select(StrategyModel)
            .where(StrategyModel.owner_id == owner_id)
            .order_by(StrategyModel.created_at)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_strategy_from_row(row) for row in rows]

    async def list_active(
        self,
        strategy_types: Optional[Sequence[StrategyType]] = None,
    ) -> List[Strategy]:
        stmt = select(StrategyModel).where(StrategyModel.status == StrategyStatus.ACTIVE.value)
        if strategy_types is not None:
            stmt = stmt.where(StrategyModel.strategy_type.in_([t.value for t in strategy_types]))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_strategy_from_row(row) for row in rows]

    async def insert(self, strategy: Strategy) -> Strategy:
        values = _strategy_values(strategy, version=1)
        async with transaction_scope(self._session_factory) as session:
            session.add(StrategyModel(strategy_id=strategy.strategy_id, **values))
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Strategy {strategy.strategy_id} already exists",
                    entity_id=strategy.strategy_id,
                    cause=e,
                )

        strategy.version = 1
        logger.debug(f"Inserted strategy {strategy.strategy_id}")
        return strategy

    async def update(self, strategy: Strategy, expected_version: int) -> Strategy:
        new_version = expected_version + 1
        stmt = (
            update(StrategyModel)
            .where(
                StrategyModel.strategy_id == strategy.strategy_id,
                StrategyModel.version == expected_version,
            )
            .values(**_strategy_values(strategy, new_version))
        )

        async with transaction_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                exists = await session.get(StrategyModel, strategy.strategy_id)
                if exists is None:
                    raise NotFoundError("Strategy", strategy.strategy_id)
                raise ConcurrencyError("Strategy", strategy.strategy_id, expected_version)

        strategy.version = new_version
        return strategy

    async def delete(self, strategy_id: str) -> bool:
        async with transaction_scope(self._session_factory) as session:
            row = await session.get(StrategyModel, strategy_id)
            if row is None:
                return False
            await session.delete(row)
        return True


# ============================================================
# OPERATION REPOSITORY
# ============================================================

class SqlOperationRepository(OperationRepository):
    """Operations in the rebalancing_operations table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, operation_id: str) -> Optional[Operation]:
        async with self._session_factory() as session:
            row = await session.get(OperationModel, operation_id)
            return _operation_from_row(row) if row else None

    async def list(
        self,
        owner_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        statuses: Optional[Sequence[OperationStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Operation]:
        stmt = select(OperationModel)
        if owner_id is not None:
            stmt = stmt.where(OperationModel.owner_id == owner_id)
        if strategy_id is not None:
            stmt = stmt.where(OperationModel.strategy_id == strategy_id)
        if statuses is not None:
            stmt = stmt.where(OperationModel.status.in_([s.value for s in statuses]))
        stmt = (
            stmt.order_by(OperationModel.created_at.desc(), OperationModel.operation_id)
            .limit(limit)
            .offset(offset)
        )

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_operation_from_row(row) for row in rows]

    async def find_active(self, strategy_id: str) -> Optional[Operation]:
        stmt = select(OperationModel).where(
            OperationModel.strategy_id == strategy_id,
            OperationModel.status.in_([s.value for s in ACTIVE_OPERATION_STATUSES]),
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
        return _operation_from_row(row) if row else None

    async def create_if_no_active(self, operation: Operation) -> Operation:
        values = _operation_values(operation, version=1)
        try:
            async with transaction_scope(self._session_factory) as session:
                await self._lock_strategy(session, operation.strategy_id)
                session.add(OperationModel(operation_id=operation.operation_id, **values))
                await session.flush()
        except DatabasePersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            raise self._conflict(operation, await self.find_active(operation.strategy_id))

        operation.version = 1
        logger.debug(f"Inserted operation {operation.operation_id}")
        return operation

    async def delete_strategy_if_no_active(
        self,
        strategy_id: str,
        strategies: StrategyRepository,
    ) -> bool:
        # Both tables share one database: the strategy row is deleted in
        # the transaction that checked for active operations.
        async with transaction_scope(self._session_factory) as session:
            row = await self._lock_strategy(session, strategy_id)
            if row is None:
                return False

            stmt = select(OperationModel.operation_id).where(
                OperationModel.strategy_id == strategy_id,
                OperationModel.status.in_([s.value for s in ACTIVE_OPERATION_STATUSES]),
            )
            active_id = (await session.execute(stmt)).scalars().first()
            if active_id is not None:
                raise ConflictError(
                    f"Strategy {strategy_id} has active operation {active_id}",
                    entity_id=strategy_id,
                    context={"active_operation_id": active_id},
                )
            await session.delete(row)

        logger.debug(f"Deleted strategy {strategy_id}")
        return True

    async def update(self, operation: Operation, expected_version: int) -> Operation:
        new_version = expected_version + 1
        stmt = (
            update(OperationModel)
            .where(
                OperationModel.operation_id == operation.operation_id,
                OperationModel.version == expected_version,
            )
            .values(**_operation_values(operation, new_version))
        )

        async with transaction_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                exists = await session.get(OperationModel, operation.operation_id)
                if exists is None:
                    raise NotFoundError("Operation", operation.operation_id)
                raise ConcurrencyError("Operation", operation.operation_id, expected_version)

        operation.version = new_version
        return operation

    async def list_settled(
        self,
        owner_id: str,
        since: datetime,
        until: datetime,
    ) -> List[Operation]:
        stmt = select(OperationModel).where(
            OperationModel.owner_id == owner_id,
            OperationModel.status.in_([s.value for s in SETTLED_STATUSES]),
            OperationModel.completed_at >= ensure_utc(since),
            OperationModel.completed_at <= ensure_utc(until),
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_operation_from_row(row) for row in rows]

    @staticmethod
    async def _lock_strategy(session: AsyncSession, strategy_id: str) -> Optional[StrategyModel]:
        """Row-lock the strategy (FOR UPDATE; SQLite serializes writers instead)."""
        stmt = (
            select(StrategyModel)
            .where(StrategyModel.strategy_id == strategy_id)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalars().first()

    @staticmethod
    def _conflict(operation: Operation, active: Optional[Operation]) -> ConflictError:
        if active is None:
            return ConflictError(
                f"Operation {operation.operation_id} already exists",
                entity_id=operation.operation_id,
            )
        return ConflictError(
            f"Strategy {operation.strategy_id} already has active "
            f"operation {active.operation_id}",
            entity_id=operation.strategy_id,
            context={"active_operation_id": active.operation_id},
        )
