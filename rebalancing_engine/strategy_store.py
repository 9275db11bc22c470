"""
Rebalancing Engine - Strategy Store.

============================================================
PURPOSE
============================================================
Lifecycle of rebalancing strategies.

LIFECYCLE:
    create -> DRAFT
    activate: DRAFT | PAUSED -> ACTIVE
    pause: ACTIVE -> PAUSED (in-flight operations keep running)
    delete: refused while an operation is active

RULES:
- A strategy that fails validation is never persisted
- Every write is conditional on the version read
- Callers only see their own strategies unless privileged

============================================================
"""

import logging
import uuid
from typing import Callable, List, Optional

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import (
    ConcurrencyError,
    NotFoundError,
    StateTransitionError,
)

from .approval import check_access
from .config import ApprovalConfig, SchedulerConfig
from .repository import OperationRepository, StrategyRepository
from .schedule import schedule_for
from .types import Actor, LastRebalance, Strategy, StrategyStatus
from .validation import StrategyValidator


logger = logging.getLogger(__name__)


class StrategyStore:
    """
    Strategy CRUD and lifecycle over a StrategyRepository.
    """

    def __init__(
        self,
        strategies: StrategyRepository,
        operations: OperationRepository,
        validator: Optional[StrategyValidator] = None,
        approval_config: Optional[ApprovalConfig] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._strategies = strategies
        self._operations = operations
        self._validator = validator or StrategyValidator()
        self._approval_config = approval_config or ApprovalConfig()
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._clock = clock or ClockFactory.get_clock()

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    async def get(self, strategy_id: str, actor: Optional[Actor] = None) -> Strategy:
        """
        Load a strategy.

        Raises:
            NotFoundError: unknown id
            AuthorizationError: actor is not the owner
        """
        strategy = await self._strategies.get(strategy_id)
        if strategy is None:
            raise NotFoundError("Strategy", strategy_id)
        self._check_access(strategy.owner_id, actor, "read")
        return strategy

    async def list_for_owner(self, owner_id: str, actor: Optional[Actor] = None) -> List[Strategy]:
        self._check_access(owner_id, actor, "list")
        return await self._strategies.list_by_owner(owner_id)

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    async def create(self, strategy: Strategy, actor: Optional[Actor] = None) -> Strategy:
        """
        Validate and store a new strategy as DRAFT.

        Raises:
            ValidationError: invariants violated (nothing stored)
        """
        self._check_access(strategy.owner_id, actor, "create")

        if not strategy.strategy_id:
            strategy.strategy_id = str(uuid.uuid4())
        now = self._clock.now()
        strategy.status = StrategyStatus.DRAFT
        strategy.last_rebalance = None
        strategy.next_scheduled_rebalance = None
        strategy.created_at = now
        strategy.updated_at = now

        self._validator.validate(strategy)
        stored = await self._strategies.insert(strategy)
        logger.info(f"Strategy {stored.strategy_id} created for {stored.owner_id}")
        return stored

    async def save(self, strategy: Strategy, actor: Optional[Actor] = None) -> Strategy:
        """
        Store edits to a strategy.

        The write is conditional on ``strategy.version``. Status,
        ownership and rebalance bookkeeping are kept from the stored
        copy; use activate/pause for status changes.

        Raises:
            ValidationError: invariants violated (nothing stored)
            ConcurrencyError: the strategy changed since it was read
        """
        stored = await self.get(strategy.strategy_id, actor)

        strategy.owner_id = stored.owner_id
        strategy.status = stored.status
        strategy.created_at = stored.created_at
        strategy.last_rebalance = stored.last_rebalance
        strategy.next_scheduled_rebalance = stored.next_scheduled_rebalance

        self._validator.validate(strategy)

        if strategy.status == StrategyStatus.ACTIVE:
            if not strategy.is_periodic:
                strategy.next_scheduled_rebalance = None
            elif not stored.is_periodic or self._schedule_changed(stored, strategy):
                strategy.next_scheduled_rebalance = schedule_for(strategy.triggers).next_occurrence(
                    self._clock.now()
                )

        strategy.updated_at = self._clock.now()
        updated = await self._strategies.update(strategy, expected_version=strategy.version)
        logger.info(f"Strategy {updated.strategy_id} updated (version {updated.version})")
        return updated

    async def activate(self, strategy_id: str, actor: Optional[Actor] = None) -> Strategy:
        """
        Promote a DRAFT or PAUSED strategy to ACTIVE.

        Periodic strategies get their first due time.

        Raises:
            StateTransitionError: already active
            ValidationError: strategy no longer valid
            ConflictError: concurrent write
        """
        strategy = await self.get(strategy_id, actor)
        if strategy.status == StrategyStatus.ACTIVE:
            raise StateTransitionError(
                f"Strategy {strategy_id} is already active",
                from_state=strategy.status.value,
                to_state=StrategyStatus.ACTIVE.value,
            )

        self._validator.validate(strategy)

        now = self._clock.now()
        strategy.status = StrategyStatus.ACTIVE
        if strategy.is_periodic:
            strategy.next_scheduled_rebalance = schedule_for(strategy.triggers).next_occurrence(now)
        strategy.updated_at = now

        updated = await self._strategies.update(strategy, expected_version=strategy.version)
        logger.info(
            f"Strategy {strategy_id} activated"
            + (f", next rebalance {updated.next_scheduled_rebalance.isoformat()}"
               if updated.next_scheduled_rebalance else "")
        )
        return updated

    async def pause(self, strategy_id: str, actor: Optional[Actor] = None) -> Strategy:
        """
        Pause an ACTIVE strategy. In-flight operations are not cancelled.

        Raises:
            StateTransitionError: strategy is not active
        """
        strategy = await self.get(strategy_id, actor)
        if strategy.status != StrategyStatus.ACTIVE:
            raise StateTransitionError(
                f"Strategy {strategy_id} is not active",
                from_state=strategy.status.value,
                to_state=StrategyStatus.PAUSED.value,
            )

        strategy.status = StrategyStatus.PAUSED
        strategy.updated_at = self._clock.now()
        updated = await self._strategies.update(strategy, expected_version=strategy.version)
        logger.info(f"Strategy {strategy_id} paused")
        return updated

    async def delete(self, strategy_id: str, actor: Optional[Actor] = None) -> None:
        """
        Delete a strategy.

        Raises:
            ConflictError: an operation for the strategy is still active
        """
        await self.get(strategy_id, actor)

        if not await self._operations.delete_strategy_if_no_active(strategy_id, self._strategies):
            raise NotFoundError("Strategy", strategy_id)
        logger.info(f"Strategy {strategy_id} deleted")

    # --------------------------------------------------------
    # REBALANCE BOOKKEEPING
    # --------------------------------------------------------

    async def record_rebalance(
        self,
        strategy_id: str,
        last_rebalance: LastRebalance,
    ) -> Optional[Strategy]:
        """
        Record the latest rebalance on a strategy.

        Returns:
            Updated strategy, or None if it no longer exists
        """
        def apply(strategy: Strategy) -> None:
            strategy.last_rebalance = last_rebalance

        return await self._retrying_update(strategy_id, apply, "recording rebalance")

    async def advance_schedule(self, strategy_id: str) -> Optional[Strategy]:
        """
        Move a periodic strategy's due time to the next occurrence after now.

        Returns:
            Updated strategy, or None if it no longer exists
        """
        now = self._clock.now()

        def apply(strategy: Strategy) -> None:
            if strategy.is_periodic:
                strategy.next_scheduled_rebalance = schedule_for(strategy.triggers).next_occurrence(now)

        updated = await self._retrying_update(strategy_id, apply, "advancing schedule")
        if updated is not None and updated.next_scheduled_rebalance is not None:
            logger.info(
                f"Strategy {strategy_id} next rebalance "
                f"{updated.next_scheduled_rebalance.isoformat()}"
            )
        return updated

    async def _retrying_update(
        self,
        strategy_id: str,
        apply: Callable[[Strategy], None],
        action: str,
    ) -> Optional[Strategy]:
        """
        Conditional write retried after reloading on version conflicts.

        Raises:
            ConcurrencyError: every attempt lost
        """
        attempts = self._scheduler_config.conditional_write_retries
        version = 0
        for attempt in range(1, attempts + 1):
            strategy = await self._strategies.get(strategy_id)
            if strategy is None:
                logger.warning(f"Strategy {strategy_id} vanished before {action}")
                return None

            version = strategy.version
            apply(strategy)
            strategy.updated_at = self._clock.now()

            try:
                return await self._strategies.update(strategy, expected_version=version)
            except ConcurrencyError:
                logger.info(
                    f"Strategy {strategy_id} changed while {action} "
                    f"(attempt {attempt}/{attempts})"
                )

        raise ConcurrencyError("Strategy", strategy_id, version)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _check_access(self, owner_id: str, actor: Optional[Actor], action: str) -> None:
        check_access(owner_id, actor, self._approval_config.override_roles, action)

    @staticmethod
    def _schedule_changed(before: Strategy, after: Strategy) -> bool:
        return (
            before.triggers.schedule != after.triggers.schedule
            or before.triggers.custom_schedule_expr != after.triggers.custom_schedule_expr
        )
