"""
Rebalancing Engine - Executor.

============================================================
PURPOSE
============================================================
Runs an approved plan step by step against the chain executor.

STATE TABLE:
    executing, all steps completed           -> completed
    executing, >=1 failed, 0 completed       -> failed
    executing, >=1 failed, >=1 completed     -> partial

RULES:
- Steps run strictly in plan order; step i+1 starts only once
  step i is terminal
- Every step transition is checkpointed (persisted) before the
  pipeline advances
- First failure stops the run; later steps stay pending
- No automatic retry of a failed step
- Step errors are recorded on the step, never raised

RESUME:
A step found executing after a restart is reconciled with the
chain executor's lookup; an unknown outcome fails the step
with INTERRUPTED.

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import ChainExecutionError, StateTransitionError

from .adapters.base import ChainExecutor, ChainReceipt
from .config import ExecutionConfig
from .state_machine import OperationStateMachine
from .types import (
    HUNDRED,
    ZERO,
    AllocationScope,
    AllocationSnapshot,
    ErrorInfo,
    Operation,
    OperationError,
    OperationStatus,
    PerformanceMetrics,
    Strategy,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


Checkpoint = Callable[[Operation], Awaitable[Operation]]

PCT_QUANTUM = Decimal("0.0001")
UNALLOCATED_ID = "unallocated"


class Executor:
    """
    Step-by-step plan executor.

    Holds no per-operation state; the operation record is the
    single source of truth and is checkpointed after each step.
    """

    def __init__(
        self,
        chain_executor: ChainExecutor,
        config: Optional[ExecutionConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize executor.

        Args:
            chain_executor: Transaction submitter
            config: Execution configuration
            clock: Time source
        """
        self._chain_executor = chain_executor
        self._config = config or ExecutionConfig()
        self._clock = clock or ClockFactory.get_clock()

    async def run(
        self,
        operation: Operation,
        strategy: Strategy,
        checkpoint: Checkpoint,
    ) -> Operation:
        """
        Execute (or resume) an operation until it settles.

        Args:
            operation: Operation in EXECUTING
            strategy: Owning strategy (execution limits)
            checkpoint: Persists the operation, returns the stored copy

        Returns:
            The settled operation

        Raises:
            StateTransitionError: operation is not executing
        """
        if operation.status != OperationStatus.EXECUTING:
            raise StateTransitionError(
                f"Operation {operation.operation_id} is not executing",
                from_state=operation.status.value,
                to_state=OperationStatus.EXECUTING.value,
            )

        operation = await self._reconcile_interrupted(operation, checkpoint)

        for tx in operation.transactions:
            if tx.status.is_terminal():
                if tx.status == TransactionStatus.FAILED:
                    break
                continue

            if not self._dependency_met(operation, tx):
                logger.warning(
                    f"Operation {operation.operation_id} step {tx.index}: "
                    f"dependency {tx.depends_on} not completed, stopping"
                )
                break

            operation = await self._run_step(operation, strategy, tx.index, checkpoint)
            if self._step(operation, tx.index).status == TransactionStatus.FAILED:
                break

        return await self._settle(operation, checkpoint)

    # --------------------------------------------------------
    # STEPS
    # --------------------------------------------------------

    async def _run_step(
        self,
        operation: Operation,
        strategy: Strategy,
        index: int,
        checkpoint: Checkpoint,
    ) -> Operation:
        machine = OperationStateMachine(operation, self._clock)
        machine.transition_step(index, TransactionStatus.EXECUTING, "submitting")
        operation = await checkpoint(operation)

        tx = self._step(operation, index)
        client_ref = self._client_ref(operation, tx)

        try:
            receipt = await asyncio.wait_for(
                self._chain_executor.submit(tx, strategy.execution_params, client_ref),
                timeout=self._config.step_timeout_seconds,
            )
        except asyncio.TimeoutError:
            receipt = ChainReceipt(
                success=False,
                error_code="TIMEOUT",
                error_message=f"No receipt within {self._config.step_timeout_seconds}s",
            )
        except ChainExecutionError as e:
            receipt = ChainReceipt(
                success=False,
                error_code=e.code,
                error_message=e.message,
                details=dict(e.context),
            )
        except Exception as e:
            logger.error(
                f"Operation {operation.operation_id} step {index}: executor error: {e}"
            )
            receipt = ChainReceipt(
                success=False,
                error_code="EXECUTION_ERROR",
                error_message=str(e) or type(e).__name__,
                details={"exception": type(e).__name__},
            )

        self._apply_receipt(OperationStateMachine(operation, self._clock), tx, receipt)
        return await checkpoint(operation)

    async def _reconcile_interrupted(
        self,
        operation: Operation,
        checkpoint: Checkpoint,
    ) -> Operation:
        interrupted = [tx for tx in operation.transactions if tx.status == TransactionStatus.EXECUTING]
        if not interrupted:
            return operation

        machine = OperationStateMachine(operation, self._clock)
        for tx in interrupted:
            client_ref = self._client_ref(operation, tx)
            try:
                receipt = await self._chain_executor.lookup(client_ref)
            except Exception as e:
                logger.error(f"Receipt lookup failed for {client_ref}: {e}")
                receipt = None

            if receipt is None:
                receipt = ChainReceipt(
                    success=False,
                    error_code="INTERRUPTED",
                    error_message="Step outcome unknown after restart",
                )

            logger.warning(
                f"Operation {operation.operation_id} step {tx.index} reconciled after "
                f"restart: {'completed' if receipt.success else receipt.error_code}"
            )
            self._apply_receipt(machine, tx, receipt)

        return await checkpoint(operation)

    def _apply_receipt(
        self,
        machine: OperationStateMachine,
        tx: Transaction,
        receipt: ChainReceipt,
    ) -> None:
        tx.tx_ref = receipt.tx_ref or tx.tx_ref
        tx.gas = receipt.gas

        if receipt.success:
            if receipt.to_amount is not None:
                tx.to_amount = receipt.to_amount
            if receipt.to_amount_usd is not None:
                tx.to_amount_usd = receipt.to_amount_usd

            if receipt.actual_slippage_pct is not None:
                tx.slippage.actual = receipt.actual_slippage_pct
            elif tx.from_amount_usd > ZERO:
                tx.slippage.actual = (
                    (tx.from_amount_usd - tx.to_amount_usd) / tx.from_amount_usd * HUNDRED
                )

            machine.transition_step(tx.index, TransactionStatus.COMPLETED, "confirmed")
        else:
            tx.error = ErrorInfo(
                code=receipt.error_code or "EXECUTION_ERROR",
                message=receipt.error_message or "Transaction failed",
                details=dict(receipt.details),
            )
            machine.transition_step(tx.index, TransactionStatus.FAILED, tx.error.code)
            logger.warning(
                f"Operation {machine.operation.operation_id} step {tx.index} failed: "
                f"{tx.error.code} {tx.error.message}"
            )

    # --------------------------------------------------------
    # SETTLEMENT
    # --------------------------------------------------------

    async def _settle(self, operation: Operation, checkpoint: Checkpoint) -> Operation:
        operation.achieved_allocation = compute_achieved_allocation(operation)
        operation.performance = self._compute_performance(operation)

        failed = next(
            (tx for tx in operation.transactions if tx.status == TransactionStatus.FAILED),
            None,
        )
        if failed is not None:
            operation.error = OperationError(
                code="EXECUTION_FAILED",
                message=failed.error.message if failed.error else "Step failed",
                transaction_index=failed.index,
                details={"error_code": failed.error.code if failed.error else None},
            )

        OperationStateMachine(operation, self._clock).settle()
        return await checkpoint(operation)

    def _compute_performance(self, operation: Operation) -> PerformanceMetrics:
        submitted = [
            tx for tx in operation.transactions
            if tx.status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)
        ]
        completed = [tx for tx in submitted if tx.status == TransactionStatus.COMPLETED]
        total_steps = len(operation.transactions)

        total_gas = sum((tx.gas.gas_cost_usd for tx in submitted if tx.gas), ZERO)
        total_slippage = sum(
            (tx.slippage.actual for tx in completed if tx.slippage.actual is not None),
            ZERO,
        )

        before = operation.portfolio_value_usd
        after = sum((a.amount_usd for a in operation.achieved_allocation), ZERO) - total_gas

        started = operation.execution_started_at or self._clock.now()
        elapsed = Decimal(str((self._clock.now() - started).total_seconds()))

        success_rate = (
            Decimal(len(completed)) / Decimal(total_steps) * HUNDRED
            if total_steps else HUNDRED
        )

        savings = ZERO
        if operation.simulation.performed:
            savings = max(ZERO, operation.simulation.expected_gas_cost_usd - total_gas)

        return PerformanceMetrics(
            portfolio_value_before_usd=before,
            portfolio_value_after_usd=after,
            total_gas_cost_usd=total_gas,
            total_slippage=total_slippage,
            execution_time_sec=elapsed,
            success_rate_pct=success_rate,
            estimated_savings_usd=savings,
        )

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    @staticmethod
    def _client_ref(operation: Operation, tx: Transaction) -> str:
        return f"{operation.operation_id}:{tx.index}"

    @staticmethod
    def _step(operation: Operation, index: int) -> Transaction:
        return next(tx for tx in operation.transactions if tx.index == index)

    def _dependency_met(self, operation: Operation, tx: Transaction) -> bool:
        if tx.depends_on is None:
            return True
        return self._step(operation, tx.depends_on).status == TransactionStatus.COMPLETED


# ============================================================
# ACHIEVED ALLOCATION
# ============================================================

def compute_achieved_allocation(operation: Operation) -> List[AllocationSnapshot]:
    """
    Project the current snapshot through the completed steps.

    A leg (chain of dependent steps) drains its source when its
    first step completes and funds its destination when its last
    step completes. Value of half-finished legs is reported as an
    "unallocated" asset entry.
    """
    entries: Dict[str, AllocationSnapshot] = {
        a.key: AllocationSnapshot(scope=a.scope, id=a.id, name=a.name, amount_usd=a.amount_usd)
        for a in operation.current_allocation
    }
    targets = {t.key: t for t in operation.target_allocation}

    next_step: Dict[int, Transaction] = {
        tx.depends_on: tx for tx in operation.transactions if tx.depends_on is not None
    }

    unallocated = ZERO
    for head in operation.transactions:
        if head.source_key is None or head.status != TransactionStatus.COMPLETED:
            continue

        if head.source_key in entries:
            entries[head.source_key].amount_usd -= head.from_amount_usd

        leg = [head]
        while leg[-1].destination_key is None and leg[-1].index in next_step:
            leg.append(next_step[leg[-1].index])
        tail = leg[-1]

        if tail.destination_key is not None and tail.status == TransactionStatus.COMPLETED:
            key = tail.destination_key
            if key not in entries:
                template = targets.get(key)
                scope_value, _, ref_id = key.partition(":")
                entries[key] = AllocationSnapshot(
                    scope=template.scope if template else AllocationScope(scope_value),
                    id=template.id if template else ref_id,
                    name=template.name if template else ref_id,
                )
            entries[key].amount_usd += tail.to_amount_usd
        else:
            done = [tx for tx in leg if tx.status == TransactionStatus.COMPLETED]
            unallocated += done[-1].to_amount_usd

    result = [e for e in entries.values()]
    if unallocated > ZERO:
        result.append(AllocationSnapshot(
            scope=AllocationScope.ASSET,
            id=UNALLOCATED_ID,
            name="Unallocated (in transit)",
            amount_usd=unallocated,
        ))

    total = sum((e.amount_usd for e in result), ZERO)
    for entry in result:
        entry.pct = (entry.amount_usd / total * HUNDRED).quantize(PCT_QUANTUM) if total > ZERO else ZERO

    return result
