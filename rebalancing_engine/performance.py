"""
Rebalancing Engine - Performance Aggregator.

Read-only statistics over settled (completed and partial)
operations of one owner within a time window.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import ValidationError

from .repository import OperationRepository
from .types import ZERO, HUNDRED, OperationStatus


logger = logging.getLogger(__name__)


MAX_WINDOW_DAYS = 3650


@dataclass(frozen=True)
class PerformanceStats:
    """Aggregated rebalancing performance."""

    owner_id: str
    window_days: int
    total_operations: int = 0
    successful_operations: int = 0
    success_rate_pct: Decimal = ZERO
    total_gas_cost_usd: Decimal = ZERO
    avg_gas_cost_usd: Decimal = ZERO
    total_value_improvement_usd: Decimal = ZERO
    avg_value_improvement_usd: Decimal = ZERO
    total_slippage: Decimal = ZERO
    avg_slippage: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in asdict(self).items()
        }


class PerformanceAggregator:
    """Computes PerformanceStats from the operation ledger."""

    def __init__(
        self,
        operations: OperationRepository,
        clock: Optional[ClockProtocol] = None,
    ):
        self._operations = operations
        self._clock = clock or ClockFactory.get_clock()

    async def calculate_performance_stats(self, owner_id: str, window_days: int = 30) -> PerformanceStats:
        """
        Aggregate settled operations completed in the last ``window_days``.

        Averages are over all settled operations; an operation
        without metrics counts as zero.
        """
        if window_days < 1 or window_days > MAX_WINDOW_DAYS:
            raise ValidationError(
                f"window_days must be between 1 and {MAX_WINDOW_DAYS}",
                field="days",
            )

        until = self._clock.now()
        since = until - timedelta(days=window_days)
        operations = await self._operations.list_settled(owner_id, since, until)

        total = len(operations)
        if total == 0:
            return PerformanceStats(owner_id=owner_id, window_days=window_days)

        successful = sum(1 for op in operations if op.status == OperationStatus.COMPLETED)
        gas = ZERO
        improvement = ZERO
        slippage = ZERO
        for op in operations:
            if op.performance is None:
                continue
            gas += op.performance.total_gas_cost_usd
            improvement += op.performance.value_improvement_usd
            slippage += op.performance.total_slippage

        count = Decimal(total)
        stats = PerformanceStats(
            owner_id=owner_id,
            window_days=window_days,
            total_operations=total,
            successful_operations=successful,
            success_rate_pct=Decimal(successful) / count * HUNDRED,
            total_gas_cost_usd=gas,
            avg_gas_cost_usd=gas / count,
            total_value_improvement_usd=improvement,
            avg_value_improvement_usd=improvement / count,
            total_slippage=slippage,
            avg_slippage=slippage / count,
        )

        logger.debug(
            f"Performance of {owner_id} over {window_days}d: "
            f"{successful}/{total} successful, gas {gas:.2f} USD"
        )
        return stats
