"""
Rebalancing Engine - Strategy Validation.

============================================================
PURPOSE
============================================================
Validates strategy definitions before they are persisted.

INVARIANTS:
1. sum(target_pct) within [99.5, 100.5]
2. min_pct <= target_pct <= max_pct where bounds are present
3. Every percentage within [0, 100]
4. (scope, id) unique across target allocations
5. Trigger, execution and advanced settings within their ranges
6. Custom schedules carry a parseable expression

CRITICAL PRINCIPLE:
    Invalid strategies are rejected, never silently corrected.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from core.exceptions import ValidationError

from .schedule import schedule_for
from .types import (
    HUNDRED,
    ZERO,
    ScheduleCadence,
    Strategy,
    StrategyType,
)


logger = logging.getLogger(__name__)


ALLOCATION_SUM_MIN = Decimal("99.5")
ALLOCATION_SUM_MAX = Decimal("100.5")

NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500


# ============================================================
# VALIDATION RESULT
# ============================================================

@dataclass
class ValidationResult:
    """Result of strategy validation."""

    errors: List[str] = field(default_factory=list)
    """Every violation found."""

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, message: str) -> None:
        self.errors.append(message)


# ============================================================
# VALIDATOR
# ============================================================

class StrategyValidator:
    """
    Validates strategy definitions.

    Stateless; one instance can be shared.
    """

    def check(self, strategy: Strategy) -> ValidationResult:
        """
        Collect every violation of a strategy.

        Args:
            strategy: Strategy to check

        Returns:
            ValidationResult
        """
        result = ValidationResult()

        self._check_identity(strategy, result)
        self._check_allocations(strategy, result)
        self._check_triggers(strategy, result)
        self._check_execution_params(strategy, result)
        self._check_advanced(strategy, result)

        return result

    def validate(self, strategy: Strategy) -> None:
        """
        Validate a strategy.

        Raises:
            ValidationError: listing every violation
        """
        result = self.check(strategy)
        if not result.is_valid:
            logger.info(
                f"Strategy {strategy.strategy_id} rejected: {'; '.join(result.errors)}"
            )
            raise ValidationError(result.errors[0], errors=result.errors)

    # --------------------------------------------------------
    # SECTIONS
    # --------------------------------------------------------

    def _check_identity(self, strategy: Strategy, result: ValidationResult) -> None:
        if not strategy.owner_id:
            result.add("Strategy owner is required")

        name = (strategy.name or "").strip()
        if not name:
            result.add("Strategy name is required")
        elif len(name) > NAME_MAX_LENGTH:
            result.add(f"Strategy name cannot exceed {NAME_MAX_LENGTH} characters")

        if strategy.description and len(strategy.description) > DESCRIPTION_MAX_LENGTH:
            result.add(f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")

    def _check_allocations(self, strategy: Strategy, result: ValidationResult) -> None:
        allocations = strategy.target_allocations
        if not allocations:
            result.add("At least one target allocation is required")
            return

        seen = set()
        total = ZERO
        for allocation in allocations:
            label = allocation.name or allocation.id

            if not allocation.id:
                result.add("Target allocation id is required")
            if allocation.key in seen:
                result.add(f"Duplicate target allocation {allocation.key}")
            seen.add(allocation.key)

            total += allocation.target_pct

            if not ZERO <= allocation.target_pct <= HUNDRED:
                result.add(f"Target percentage for {label} must be between 0 and 100")
            for bound_name, bound in (("Minimum", allocation.min_pct), ("Maximum", allocation.max_pct)):
                if bound is not None and not ZERO <= bound <= HUNDRED:
                    result.add(f"{bound_name} percentage for {label} must be between 0 and 100")

            if allocation.min_pct is not None and allocation.min_pct > allocation.target_pct:
                result.add(
                    f"Minimum percentage for {label} cannot be greater than target percentage"
                )
            if allocation.max_pct is not None and allocation.max_pct < allocation.target_pct:
                result.add(
                    f"Maximum percentage for {label} cannot be less than target percentage"
                )

        if total < ALLOCATION_SUM_MIN or total > ALLOCATION_SUM_MAX:
            result.add("Target allocations must sum to 100%")

    def _check_triggers(self, strategy: Strategy, result: ValidationResult) -> None:
        triggers = strategy.triggers

        if not Decimal("1") <= triggers.deviation_threshold_pct <= Decimal("50"):
            result.add("Deviation threshold must be between 1 and 50")

        if triggers.min_hours_between_rebalances < Decimal("1"):
            result.add("Minimum time between rebalances must be at least 1 hour")

        needs_schedule = (
            strategy.strategy_type == StrategyType.PERIODIC
            or triggers.schedule == ScheduleCadence.CUSTOM
        )
        if needs_schedule:
            try:
                schedule_for(triggers)
            except ValidationError as e:
                result.add(e.message)

    def _check_execution_params(self, strategy: Strategy, result: ValidationResult) -> None:
        params = strategy.execution_params

        if not Decimal("0.1") <= params.max_slippage_pct <= Decimal("10"):
            result.add("Maximum slippage must be between 0.1 and 10")

        if not Decimal("1") <= params.max_rebalance_pct <= HUNDRED:
            result.add("Maximum rebalance percentage must be between 1 and 100")

        for label, price in (
            ("Maximum gas price", params.max_gas_price_gwei),
            ("Target gas price", params.target_gas_price_gwei),
        ):
            if price is not None and price <= ZERO:
                result.add(f"{label} must be positive")

        if (
            params.max_gas_price_gwei is not None
            and params.target_gas_price_gwei is not None
            and params.target_gas_price_gwei > params.max_gas_price_gwei
        ):
            result.add("Target gas price cannot exceed maximum gas price")

    def _check_advanced(self, strategy: Strategy, result: ValidationResult) -> None:
        advanced = strategy.advanced

        if not 1 <= advanced.max_transactions <= 50:
            result.add("Maximum transactions must be between 1 and 50")

        for route in advanced.custom_routes:
            if not route.dex:
                result.add("Custom route dex is required")
