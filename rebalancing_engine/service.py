"""
Rebalancing Engine - Operation Service.

============================================================
PURPOSE
============================================================
Drives operations through their pipeline and serves the
operation API.

PIPELINE:
    pending --plan--> pending (planned)
            --simulate?--> simulating
            --gate--> waitingApproval | executing
            --execute--> completed | failed | partial

Every phase ends with a conditional write of the operation, so a
pipeline that lost a race (cancel, override, another worker)
reloads, sees the newer state and stops.

CONCURRENCY:
- One asyncio task per operation, never two for the same id
- An asyncio.Semaphore bounds operations in flight
- Operations left in simulating/executing are resumed on startup

============================================================
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import (
    ConcurrencyError,
    NotFoundError,
    PlanningError,
    SimulationError,
    StateTransitionError,
)

from .adapters.base import MarketDataProvider
from .approval import ApprovalGate, check_access
from .config import ApprovalConfig, ExecutionConfig
from .executor import Executor
from .notifications import OperationNotifier
from .planner import PlanBuilder
from .repository import OperationRepository
from .simulator import Simulator
from .state_machine import OperationStateMachine
from .strategy_store import StrategyStore
from .types import (
    Actor,
    AllocationSnapshot,
    InitiatedBy,
    LastRebalance,
    Operation,
    OperationError,
    OperationStatus,
    RebalanceOutcome,
    SimulationReport,
    SimulationResult,
    Strategy,
    StrategyStatus,
    Transaction,
)


logger = logging.getLogger(__name__)


RESUMABLE_STATUSES = (
    OperationStatus.PENDING,
    OperationStatus.SIMULATING,
    OperationStatus.EXECUTING,
)

OUTCOME_FOR_STATUS = {
    OperationStatus.COMPLETED: RebalanceOutcome.COMPLETED,
    OperationStatus.FAILED: RebalanceOutcome.FAILED,
    OperationStatus.PARTIAL: RebalanceOutcome.PARTIAL,
    OperationStatus.CANCELLED: RebalanceOutcome.CANCELLED,
}


class RebalancingService:
    """
    Operation pipeline and operation API.

    Stateless apart from the in-flight task registry; operations
    and strategies live in the injected repositories.
    """

    def __init__(
        self,
        store: StrategyStore,
        operations: OperationRepository,
        market_data: MarketDataProvider,
        planner: PlanBuilder,
        simulator: Simulator,
        approval: ApprovalGate,
        executor: Executor,
        notifier: OperationNotifier,
        execution_config: Optional[ExecutionConfig] = None,
        approval_config: Optional[ApprovalConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._operations = operations
        self._market_data = market_data
        self._planner = planner
        self._simulator = simulator
        self._approval = approval
        self._executor = executor
        self._notifier = notifier
        self._execution_config = execution_config or ExecutionConfig()
        self._approval_config = approval_config or ApprovalConfig()
        self._clock = clock or ClockFactory.get_clock()

        self._semaphore = asyncio.Semaphore(self._execution_config.max_concurrent_operations)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._rerun: Set[str] = set()

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    async def start_operation(
        self,
        strategy: Strategy,
        initiated_by: InitiatedBy = InitiatedBy.SYSTEM,
        current_allocation: Optional[List[AllocationSnapshot]] = None,
    ) -> Operation:
        """
        Create a pending operation for a strategy.

        Args:
            strategy: Owning strategy
            initiated_by: Scheduler, user or API
            current_allocation: Snapshot to plan from; fetched when None

        Returns:
            The stored pending operation

        Raises:
            ConflictError: the strategy already has an active operation
        """
        now = self._clock.now()
        operation = Operation(
            operation_id=str(uuid.uuid4()),
            strategy_id=strategy.strategy_id,
            owner_id=strategy.owner_id,
            initiated_by=initiated_by,
            initiated_at=now,
            current_allocation=list(current_allocation or []),
            created_at=now,
            updated_at=now,
        )

        operation = await self._operations.create_if_no_active(operation)
        logger.info(
            f"Operation {operation.operation_id} created for strategy "
            f"{strategy.strategy_id} ({initiated_by.value})"
        )

        await self._record_rebalance(
            operation,
            RebalanceOutcome.PENDING,
            details={"initiated_by": initiated_by.value},
        )
        return operation

    async def create_plan(
        self,
        strategy_id: str,
        actor: Actor,
        manual_allocation: Optional[List[AllocationSnapshot]] = None,
    ) -> Operation:
        """
        Create an operation on request and plan it now.

        The planned operation stays pending until simulate or execute
        is called.

        Raises:
            StateTransitionError: strategy is still a draft
            ConflictError: the strategy already has an active operation
        """
        strategy = await self._store.get(strategy_id, actor)
        if strategy.status == StrategyStatus.DRAFT:
            raise StateTransitionError(
                f"Strategy {strategy_id} must be activated before rebalancing",
                from_state=strategy.status.value,
            )

        operation = await self.start_operation(
            strategy,
            initiated_by=InitiatedBy.USER,
            current_allocation=manual_allocation,
        )
        operation = await self._plan_phase(operation, strategy)
        if operation.is_terminal:
            await self._finish(operation, strategy)
        return operation

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    def dispatch(self, operation_id: str) -> bool:
        """
        Run an operation's pipeline in the background.

        A second request for a running operation makes the running
        task pass once more instead of starting another.

        Returns:
            True if a new task was started
        """
        if operation_id in self._tasks:
            self._rerun.add(operation_id)
            return False

        self._tasks[operation_id] = asyncio.create_task(self._run(operation_id))
        return True

    async def wait_idle(self) -> None:
        """Wait until no pipeline task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def resume_in_flight(self) -> int:
        """
        Dispatch every operation interrupted mid-pipeline.

        Pending operations planned on request wait for their caller
        and are left alone.

        Returns:
            Number of operations dispatched
        """
        interrupted: List[Operation] = []
        offset = 0
        page = 200
        while True:
            batch = await self._operations.list(
                statuses=RESUMABLE_STATUSES,
                limit=page,
                offset=offset,
            )
            interrupted.extend(
                op for op in batch
                if op.status != OperationStatus.PENDING or op.initiated_by == InitiatedBy.SYSTEM
            )
            if len(batch) < page:
                break
            offset += page

        for operation in interrupted:
            logger.warning(
                f"Resuming operation {operation.operation_id} in {operation.status.value}"
            )
            self.dispatch(operation.operation_id)
        return len(interrupted)

    async def shutdown(self) -> None:
        """Cancel running pipelines; they resume on the next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._rerun.clear()

    async def _run(self, operation_id: str) -> None:
        try:
            async with self._semaphore:
                while True:
                    self._rerun.discard(operation_id)
                    await self.run_pipeline(operation_id)
                    if operation_id not in self._rerun:
                        break
        except asyncio.CancelledError:
            logger.info(f"Pipeline of operation {operation_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Pipeline of operation {operation_id} crashed: {e}")
        finally:
            self._tasks.pop(operation_id, None)

    # --------------------------------------------------------
    # PIPELINE
    # --------------------------------------------------------

    async def run_pipeline(self, operation_id: str) -> Optional[Operation]:
        """
        Advance an operation as far as it can go without a human.

        Returns:
            The operation as last stored, or None if unknown
        """
        operation = await self._operations.get(operation_id)
        if operation is None:
            logger.warning(f"Operation {operation_id} not found, nothing to run")
            return None
        if operation.is_terminal:
            return operation

        try:
            strategy = await self._store.get(operation.strategy_id)
        except NotFoundError:
            return await self._fail_orphan(operation)

        try:
            while not operation.is_terminal:
                if operation.status == OperationStatus.PENDING and not operation.planned:
                    operation = await self._plan_phase(operation, strategy)
                elif operation.status in (OperationStatus.PENDING, OperationStatus.SIMULATING):
                    operation = await self._review_phase(operation, strategy)
                elif operation.status == OperationStatus.EXECUTING:
                    operation = await self._executor.run(operation, strategy, self._save)
                else:
                    break
        except ConcurrencyError:
            latest = await self._operations.get(operation_id)
            logger.info(
                f"Operation {operation_id} changed concurrently, now "
                f"{latest.status.value if latest else 'gone'}; pipeline stops"
            )
            return latest

        if operation.is_terminal:
            await self._finish(operation, strategy)
        return operation

    async def _plan_phase(self, operation: Operation, strategy: Strategy) -> Operation:
        try:
            if not operation.current_allocation:
                scopes = sorted({t.scope for t in strategy.target_allocations}, key=lambda s: s.value)
                snapshot = await self._market_data.get_portfolio(strategy.owner_id, scopes)
                operation.current_allocation = snapshot.allocations

            plan = await self._planner.build(strategy, operation.current_allocation)
        except PlanningError as e:
            return await self._fail(operation, e.code, e.message, dict(e.context))
        except Exception as e:
            logger.error(f"Operation {operation.operation_id}: planning failed: {e}")
            return await self._fail(
                operation,
                PlanningError.code,
                f"Planning failed: {e}",
                {"exception": type(e).__name__},
            )

        operation.target_allocation = plan.target_allocation
        if not plan.transactions:
            return await self._fail(
                operation,
                "NO_TRANSACTIONS",
                "Plan contains no transactions",
                {"portfolio_value_usd": str(plan.portfolio_value_usd)},
            )

        operation.transactions = plan.transactions
        operation.planned = True
        operation.updated_at = self._clock.now()
        logger.info(
            f"Operation {operation.operation_id}: {len(plan.transactions)} steps planned"
            + (" (capped)" if plan.capped else "")
            + (" (truncated)" if plan.truncated else "")
        )
        return await self._save(operation)

    async def _review_phase(
        self,
        operation: Operation,
        strategy: Strategy,
        force_simulation: bool = False,
    ) -> Operation:
        if force_simulation or strategy.simulate_before_execution or operation.status == OperationStatus.SIMULATING:
            if operation.status != OperationStatus.SIMULATING:
                OperationStateMachine(operation, self._clock).transition_to(
                    OperationStatus.SIMULATING,
                    "simulation started",
                )
                operation = await self._save(operation)

            operation.simulation = await self._run_simulation(operation, strategy)

        status = self._approval.gate(operation, strategy)
        operation = await self._save(operation)
        operation = await self._notify(operation, strategy)

        if status == OperationStatus.WAITING_APPROVAL and operation.simulation.performed:
            await self._record_rebalance(
                operation,
                RebalanceOutcome.SIMULATED,
                details={"simulation": operation.simulation.result.value},
            )
        return operation

    async def _run_simulation(self, operation: Operation, strategy: Strategy) -> SimulationReport:
        try:
            return await self._simulator.simulate(
                strategy,
                operation.transactions,
                operation.portfolio_value_usd,
            )
        except Exception as e:
            logger.error(f"Operation {operation.operation_id}: simulation error: {e}")
            return SimulationReport(
                performed=True,
                result=SimulationResult.FAILED,
                portfolio_value_before_usd=operation.portfolio_value_usd,
                errors=[f"{SimulationError.code}: {e}"],
                simulated_at=self._clock.now(),
            )

    async def _fail(
        self,
        operation: Operation,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> Operation:
        operation.error = OperationError(code=code, message=message, details=details or {})
        OperationStateMachine(operation, self._clock).transition_to(OperationStatus.FAILED, code)
        return await self._save(operation)

    async def _fail_orphan(self, operation: Operation) -> Optional[Operation]:
        """Fail an operation whose strategy was deleted before it ran."""
        logger.error(
            f"Operation {operation.operation_id}: strategy {operation.strategy_id} "
            f"no longer exists"
        )
        try:
            return await self._fail(
                operation,
                "STRATEGY_NOT_FOUND",
                f"Strategy {operation.strategy_id} no longer exists",
                {"strategy_id": operation.strategy_id},
            )
        except ConcurrencyError:
            return await self._operations.get(operation.operation_id)

    async def _notify(self, operation: Operation, strategy: Strategy) -> Operation:
        """
        Notify about the operation's stored status, then store the
        notification record.
        """
        if await self._notifier.notify_status(operation, strategy) is None:
            return operation
        try:
            return await self._save(operation)
        except ConcurrencyError:
            logger.warning(
                f"Operation {operation.operation_id}: notification record not stored "
                f"(concurrent write)"
            )
            return operation

    async def _finish(self, operation: Operation, strategy: Strategy) -> Operation:
        operation = await self._notify(operation, strategy)

        details = {"operation_status": operation.status.value}
        if operation.error:
            details["error_code"] = operation.error.code
        await self._record_rebalance(operation, OUTCOME_FOR_STATUS[operation.status], details)
        return operation

    async def _save(self, operation: Operation) -> Operation:
        return await self._operations.update(operation, expected_version=operation.version)

    async def _record_rebalance(
        self,
        operation: Operation,
        outcome: RebalanceOutcome,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await self._store.record_rebalance(
                operation.strategy_id,
                LastRebalance(
                    timestamp=self._clock.now(),
                    status=outcome,
                    operation_id=operation.operation_id,
                    details=details or {},
                ),
            )
        except ConcurrencyError as e:
            logger.error(
                f"Strategy {operation.strategy_id}: last rebalance not recorded "
                f"({outcome.value}): {e}"
            )

    # --------------------------------------------------------
    # OPERATION API
    # --------------------------------------------------------

    async def get_operation(self, operation_id: str, actor: Optional[Actor] = None) -> Operation:
        """
        Load an operation.

        Raises:
            NotFoundError: unknown id
            AuthorizationError: actor is not the owner
        """
        operation = await self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError("Operation", operation_id)
        check_access(operation.owner_id, actor, self._approval_config.override_roles, "read")
        return operation

    async def list_operations(
        self,
        actor: Actor,
        strategy_id: Optional[str] = None,
        statuses: Optional[List[OperationStatus]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Operation]:
        """The actor's operations, newest first."""
        return await self._operations.list(
            owner_id=actor.user_id,
            strategy_id=strategy_id,
            statuses=statuses,
            limit=limit,
            offset=offset,
        )

    async def simulate(self, operation_id: str, actor: Actor) -> Operation:
        """
        Simulate a planned operation now and pass it through the gate.

        Allowed for a planned pending operation, or to re-simulate
        one waiting for approval.

        Raises:
            StateTransitionError: operation is in any other status
        """
        operation = await self.get_operation(operation_id, actor)
        if not self._is_reviewable(operation):
            raise StateTransitionError(
                f"Operation {operation_id} cannot be simulated in status {operation.status.value}",
                from_state=operation.status.value,
                to_state=OperationStatus.SIMULATING.value,
            )

        strategy = await self._store.get(operation.strategy_id)
        operation = await self._review_phase(operation, strategy, force_simulation=True)
        if operation.status == OperationStatus.EXECUTING:
            self.dispatch(operation.operation_id)
        return operation

    async def execute(self, operation_id: str, actor: Actor) -> Operation:
        """
        Run the rest of an operation's pipeline in the background.

        A planned pending operation is simulated (if enabled) and gated
        first; an executing one is resumed. The approval gate is never
        skipped.

        Raises:
            StateTransitionError: waiting for approval, or already settled
        """
        operation = await self.get_operation(operation_id, actor)
        if operation.status == OperationStatus.WAITING_APPROVAL:
            raise StateTransitionError(
                f"Operation {operation_id} is waiting for approval",
                from_state=operation.status.value,
                to_state=OperationStatus.EXECUTING.value,
            )
        if operation.is_terminal:
            raise StateTransitionError(
                f"Operation {operation_id} is already {operation.status.value}",
                from_state=operation.status.value,
                to_state=OperationStatus.EXECUTING.value,
            )

        self.dispatch(operation_id)
        return operation

    async def approve(self, operation_id: str, actor: Actor, reason: Optional[str] = None) -> Operation:
        """Approve a waiting operation and start executing it."""
        return await self._decide(operation_id, actor, True, reason)

    async def reject(self, operation_id: str, actor: Actor, reason: Optional[str] = None) -> Operation:
        """Reject a waiting operation; nothing is executed."""
        return await self._decide(operation_id, actor, False, reason)

    async def cancel(self, operation_id: str, actor: Actor, reason: Optional[str] = None) -> Operation:
        """
        Cancel an operation that has not started executing.

        Raises:
            StateTransitionError: operation is executing or settled
        """
        operation = await self.get_operation(operation_id, actor)
        if not operation.status.allows_cancel():
            raise StateTransitionError(
                f"Operation {operation_id} cannot be cancelled in status {operation.status.value}",
                from_state=operation.status.value,
                to_state=OperationStatus.CANCELLED.value,
            )

        OperationStateMachine(operation, self._clock).mark_cancelled(
            f"cancelled: {reason or 'by request'}",
            actor=actor.user_id,
        )
        operation = await self._save(operation)

        strategy = await self._store.get(operation.strategy_id)
        return await self._finish(operation, strategy)

    async def override(
        self,
        operation_id: str,
        actor: Actor,
        reason: str,
        new_plan: Optional[List[Transaction]] = None,
        force: bool = False,
    ) -> Operation:
        """Replace and/or force through the plan of a waiting operation."""
        operation = await self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError("Operation", operation_id)

        strategy = await self._store.get(operation.strategy_id)
        self._approval.apply_override(operation, actor, reason, new_plan=new_plan, force=force)

        operation = await self._save(operation)

        if operation.status == OperationStatus.EXECUTING:
            operation = await self._notify(operation, strategy)
            self.dispatch(operation.operation_id)
        return operation

    async def _decide(
        self,
        operation_id: str,
        actor: Actor,
        approved: bool,
        reason: Optional[str],
    ) -> Operation:
        operation = await self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError("Operation", operation_id)

        self._approval.process_approval(operation, actor, approved, reason)
        strategy = await self._store.get(operation.strategy_id)

        if approved:
            operation = await self._save(operation)
            operation = await self._notify(operation, strategy)
            self.dispatch(operation.operation_id)
            return operation

        operation = await self._save(operation)
        return await self._finish(operation, strategy)

    @staticmethod
    def _is_reviewable(operation: Operation) -> bool:
        if operation.status == OperationStatus.WAITING_APPROVAL:
            return True
        return operation.status == OperationStatus.PENDING and operation.planned
