"""
Rebalancing Engine - Trigger Scheduler.

============================================================
PURPOSE
============================================================
Periodically finds strategies that are due and starts
operations for them.

ELIGIBILITY PER CYCLE:
- threshold / custom: active, spacing since the last rebalance
  elapsed, and the drift evaluator reports a need
- periodic: active and next_scheduled_rebalance <= now; the due
  time is advanced once the operation exists

RULES:
- At most one active operation per strategy: a strategy with an
  active operation is skipped, and a lost creation race is a
  skip, not an error
- One failing strategy never stops the scan
- Cycles are idempotent: rerunning immediately creates nothing new

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import ConflictError

from .adapters.base import MarketDataProvider
from .config import SchedulerConfig
from .drift import compute_drift
from .repository import OperationRepository, StrategyRepository
from .service import RebalancingService
from .strategy_store import StrategyStore
from .types import InitiatedBy, Strategy, StrategyType


logger = logging.getLogger(__name__)


# ============================================================
# SCAN RESULT
# ============================================================

@dataclass
class ScanResult:
    """Outcome of one scheduler cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None

    evaluated: int = 0
    """Active strategies looked at."""

    created: int = 0
    """Operations started."""

    skipped: int = 0
    """Due strategies left alone because an operation was active."""

    errors: int = 0
    """Strategies whose evaluation raised."""

    operation_ids: List[str] = field(default_factory=list)
    error_details: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "evaluated": self.evaluated,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "operation_ids": list(self.operation_ids),
        }


# ============================================================
# TRIGGER SCHEDULER
# ============================================================

class TriggerScheduler:
    """
    Background trigger loop.

    Holds no strategy state between cycles.
    """

    def __init__(
        self,
        strategies: StrategyRepository,
        operations: OperationRepository,
        store: StrategyStore,
        service: RebalancingService,
        market_data: MarketDataProvider,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._strategies = strategies
        self._operations = operations
        self._store = store
        self._service = service
        self._market_data = market_data
        self._config = config or SchedulerConfig()
        self._clock = clock or ClockFactory.get_clock()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._cycle_count = 0
        self._last_result: Optional[ScanResult] = None

    # --------------------------------------------------------
    # CYCLE
    # --------------------------------------------------------

    async def run_cycle(self) -> ScanResult:
        """
        Evaluate every active strategy once.

        Returns:
            ScanResult with counters and created operation ids
        """
        self._cycle_count += 1
        result = ScanResult(started_at=self._clock.now())

        strategies = await self._strategies.list_active()
        for strategy in strategies:
            result.evaluated += 1
            try:
                await self._evaluate(strategy, result)
            except Exception as e:
                result.errors += 1
                result.error_details[strategy.strategy_id] = str(e)
                logger.error(f"Strategy {strategy.strategy_id} evaluation failed: {e}")

        result.finished_at = self._clock.now()
        self._last_result = result

        logger.info(
            f"Scheduler cycle {self._cycle_count}: evaluated {result.evaluated}, "
            f"created {result.created}, skipped {result.skipped}, errors {result.errors}"
        )
        return result

    async def _evaluate(self, strategy: Strategy, result: ScanResult) -> None:
        if strategy.strategy_type == StrategyType.PERIODIC:
            await self._evaluate_periodic(strategy, result)
        else:
            await self._evaluate_threshold(strategy, result)

    async def _evaluate_threshold(self, strategy: Strategy, result: ScanResult) -> None:
        last = strategy.last_rebalance
        min_hours = strategy.triggers.min_hours_between_rebalances
        if last is not None and self._clock.hours_since(last.timestamp) <= min_hours:
            return

        if await self._has_active_operation(strategy, result):
            return

        scopes = sorted({t.scope for t in strategy.target_allocations}, key=lambda s: s.value)
        snapshot = await self._market_data.get_portfolio(strategy.owner_id, scopes)

        report = compute_drift(strategy, snapshot.allocations)
        if not report.needs_rebalancing:
            logger.debug(f"Strategy {strategy.strategy_id}: {report.summary()}")
            return

        logger.info(f"Strategy {strategy.strategy_id} drifted: {report.summary()}")
        await self._start(strategy, result, snapshot.allocations)

    async def _evaluate_periodic(self, strategy: Strategy, result: ScanResult) -> None:
        due = strategy.next_scheduled_rebalance
        if due is None:
            logger.warning(f"Periodic strategy {strategy.strategy_id} has no due time, scheduling")
            await self._store.advance_schedule(strategy.strategy_id)
            return
        if due > self._clock.now():
            return

        if await self._has_active_operation(strategy, result):
            return

        if await self._start(strategy, result, None):
            await self._store.advance_schedule(strategy.strategy_id)

    async def _has_active_operation(self, strategy: Strategy, result: ScanResult) -> bool:
        active = await self._operations.find_active(strategy.strategy_id)
        if active is None:
            return False
        result.skipped += 1
        logger.debug(
            f"Strategy {strategy.strategy_id} skipped: operation "
            f"{active.operation_id} is {active.status.value}"
        )
        return True

    async def _start(self, strategy: Strategy, result: ScanResult, allocations) -> bool:
        try:
            operation = await self._service.start_operation(
                strategy,
                initiated_by=InitiatedBy.SYSTEM,
                current_allocation=allocations,
            )
        except ConflictError as e:
            result.skipped += 1
            logger.info(f"Strategy {strategy.strategy_id} skipped: {e.message}")
            return False

        result.created += 1
        result.operation_ids.append(operation.operation_id)
        self._service.dispatch(operation.operation_id)
        return True

    # --------------------------------------------------------
    # CONTINUOUS OPERATION
    # --------------------------------------------------------

    async def start(self) -> None:
        """Run cycles until stopped."""
        self._running = True
        logger.info(f"Trigger scheduler started (every {self._config.interval_seconds}s)")

        try:
            while self._running:
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error(f"Scheduler cycle failed: {e}")

                await asyncio.sleep(self._config.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Trigger scheduler cancelled")
        finally:
            self._running = False

    def start_background(self) -> asyncio.Task:
        """Start the loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self) -> None:
        """Stop the loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Trigger scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cycle_count": self._cycle_count,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
