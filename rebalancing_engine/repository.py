"""
Rebalancing Engine - Repository Interfaces.

============================================================
PURPOSE
============================================================
Persistence contracts for strategies and operations, and an
in-memory implementation used by tests and --memory runs.

CRITICAL REQUIREMENTS:
- Updates are conditional on the version read (optimistic writes)
- At most one active operation per strategy, enforced by an
  atomic conditional create
- A strategy is only deleted while it has no active operation,
  atomically with that create
- Callers never share mutable state with the store: reads and
  writes go through copies

The SQLAlchemy implementation lives in sql_repository.py.

============================================================
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from core.exceptions import ConcurrencyError, ConflictError, NotFoundError

from .types import (
    ACTIVE_OPERATION_STATUSES,
    Operation,
    OperationStatus,
    Strategy,
    StrategyStatus,
    StrategyType,
)


logger = logging.getLogger(__name__)


SETTLED_STATUSES = (OperationStatus.COMPLETED, OperationStatus.PARTIAL)


# ============================================================
# INTERFACES
# ============================================================

class StrategyRepository(ABC):
    """Storage of strategies."""

    @abstractmethod
    async def get(self, strategy_id: str) -> Optional[Strategy]:
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> List[Strategy]:
        pass

    @abstractmethod
    async def list_active(
        self,
        strategy_types: Optional[Sequence[StrategyType]] = None,
    ) -> List[Strategy]:
        """Active strategies, optionally restricted to some types."""
        pass

    @abstractmethod
    async def insert(self, strategy: Strategy) -> Strategy:
        """
        Store a new strategy with version 1.

        Raises:
            ConflictError: id already exists
        """
        pass

    @abstractmethod
    async def update(self, strategy: Strategy, expected_version: int) -> Strategy:
        """
        Replace a strategy if its stored version still matches.

        The passed object's version is bumped on success.

        Raises:
            NotFoundError: unknown id
            ConcurrencyError: stored version differs
        """
        pass

    @abstractmethod
    async def delete(self, strategy_id: str) -> bool:
        pass


class OperationRepository(ABC):
    """Storage of operations, the rebalancing audit ledger."""

    @abstractmethod
    async def get(self, operation_id: str) -> Optional[Operation]:
        pass

    @abstractmethod
    async def list(
        self,
        owner_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        statuses: Optional[Sequence[OperationStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Operation]:
        """Operations, newest first."""
        pass

    @abstractmethod
    async def find_active(self, strategy_id: str) -> Optional[Operation]:
        """The non-terminal operation of a strategy, if any."""
        pass

    @abstractmethod
    async def create_if_no_active(self, operation: Operation) -> Operation:
        """
        Store a new operation unless its strategy already has an
        active one. Check and insert are atomic.

        Raises:
            ConflictError: the strategy already has an active operation
        """
        pass

    @abstractmethod
    async def delete_strategy_if_no_active(
        self,
        strategy_id: str,
        strategies: StrategyRepository,
    ) -> bool:
        """
        Delete a strategy unless it has an active operation. Check and
        delete are atomic with create_if_no_active.

        Returns:
            False if the strategy did not exist

        Raises:
            ConflictError: the strategy has an active operation
        """
        pass

    @abstractmethod
    async def update(self, operation: Operation, expected_version: int) -> Operation:
        """
        Replace an operation if its stored version still matches.

        Raises:
            NotFoundError: unknown id
            ConcurrencyError: stored version differs
        """
        pass

    @abstractmethod
    async def list_settled(
        self,
        owner_id: str,
        since: datetime,
        until: datetime,
    ) -> List[Operation]:
        """Completed and partial operations with completed_at in [since, until]."""
        pass


# ============================================================
# IN-MEMORY STRATEGY REPOSITORY
# ============================================================

class InMemoryStrategyRepository(StrategyRepository):
    """Process-local strategy storage."""

    def __init__(self):
        self._items: Dict[str, Strategy] = {}
        self._lock = asyncio.Lock()

    async def get(self, strategy_id: str) -> Optional[Strategy]:
        item = self._items.get(strategy_id)
        return copy.deepcopy(item) if item else None

    async def list_by_owner(self, owner_id: str) -> List[Strategy]:
        items = [s for s in self._items.values() if s.owner_id == owner_id]
        items.sort(key=lambda s: s.created_at or datetime.min)
        return [copy.deepcopy(s) for s in items]

    async def list_active(
        self,
        strategy_types: Optional[Sequence[StrategyType]] = None,
    ) -> List[Strategy]:
        return [
            copy.deepcopy(s)
            for s in self._items.values()
            if s.status == StrategyStatus.ACTIVE
            and (strategy_types is None or s.strategy_type in strategy_types)
        ]

    async def insert(self, strategy: Strategy) -> Strategy:
        async with self._lock:
            if strategy.strategy_id in self._items:
                raise ConflictError(
                    f"Strategy {strategy.strategy_id} already exists",
                    entity_id=strategy.strategy_id,
                )
            strategy.version = 1
            self._items[strategy.strategy_id] = copy.deepcopy(strategy)
        return strategy

    async def update(self, strategy: Strategy, expected_version: int) -> Strategy:
        async with self._lock:
            stored = self._items.get(strategy.strategy_id)
            if stored is None:
                raise NotFoundError("Strategy", strategy.strategy_id)
            if stored.version != expected_version:
                raise ConcurrencyError("Strategy", strategy.strategy_id, expected_version)

            strategy.version = expected_version + 1
            self._items[strategy.strategy_id] = copy.deepcopy(strategy)
        return strategy

    async def delete(self, strategy_id: str) -> bool:
        async with self._lock:
            return self._items.pop(strategy_id, None) is not None


# ============================================================
# IN-MEMORY OPERATION REPOSITORY
# ============================================================

class InMemoryOperationRepository(OperationRepository):
    """Process-local operation storage."""

    def __init__(self):
        self._items: Dict[str, Operation] = {}
        self._lock = asyncio.Lock()

    async def get(self, operation_id: str) -> Optional[Operation]:
        item = self._items.get(operation_id)
        return copy.deepcopy(item) if item else None

    async def list(
        self,
        owner_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        statuses: Optional[Sequence[OperationStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Operation]:
        items = [
            op for op in self._items.values()
            if (owner_id is None or op.owner_id == owner_id)
            and (strategy_id is None or op.strategy_id == strategy_id)
            and (statuses is None or op.status in statuses)
        ]
        items.sort(key=lambda op: op.created_at or datetime.min, reverse=True)
        return [copy.deepcopy(op) for op in items[offset:offset + limit]]

    async def find_active(self, strategy_id: str) -> Optional[Operation]:
        active = self._active_for(strategy_id)
        return copy.deepcopy(active) if active else None

    def _active_for(self, strategy_id: str) -> Optional[Operation]:
        for op in self._items.values():
            if op.strategy_id == strategy_id and op.status in ACTIVE_OPERATION_STATUSES:
                return op
        return None

    async def create_if_no_active(self, operation: Operation) -> Operation:
        async with self._lock:
            active = self._active_for(operation.strategy_id)
            if active is not None:
                raise ConflictError(
                    f"Strategy {operation.strategy_id} already has active "
                    f"operation {active.operation_id}",
                    entity_id=operation.strategy_id,
                    context={"active_operation_id": active.operation_id},
                )
            if operation.operation_id in self._items:
                raise ConflictError(
                    f"Operation {operation.operation_id} already exists",
                    entity_id=operation.operation_id,
                )

            operation.version = 1
            self._items[operation.operation_id] = copy.deepcopy(operation)
        return operation

    async def delete_strategy_if_no_active(
        self,
        strategy_id: str,
        strategies: StrategyRepository,
    ) -> bool:
        async with self._lock:
            active = self._active_for(strategy_id)
            if active is not None:
                raise ConflictError(
                    f"Strategy {strategy_id} has active operation {active.operation_id}",
                    entity_id=strategy_id,
                    context={"active_operation_id": active.operation_id},
                )
            return await strategies.delete(strategy_id)

    async def update(self, operation: Operation, expected_version: int) -> Operation:
        async with self._lock:
            stored = self._items.get(operation.operation_id)
            if stored is None:
                raise NotFoundError("Operation", operation.operation_id)
            if stored.version != expected_version:
                raise ConcurrencyError("Operation", operation.operation_id, expected_version)

            operation.version = expected_version + 1
            self._items[operation.operation_id] = copy.deepcopy(operation)
        return operation

    async def list_settled(
        self,
        owner_id: str,
        since: datetime,
        until: datetime,
    ) -> List[Operation]:
        return [
            copy.deepcopy(op)
            for op in self._items.values()
            if op.owner_id == owner_id
            and op.status in SETTLED_STATUSES
            and op.completed_at is not None
            and since <= op.completed_at <= until
        ]
