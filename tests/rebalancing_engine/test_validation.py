"""
Tests for strategy validation.

Tests:
1. Allocation sum tolerance
2. Bounds ordering
3. Trigger, execution and advanced ranges
4. Every violation is reported
"""

from decimal import Decimal

import pytest

from core.exceptions import ValidationError
from rebalancing_engine.types import (
    CustomRoute,
    ScheduleCadence,
    StrategyType,
)
from rebalancing_engine.validation import StrategyValidator

from conftest import target


@pytest.fixture
def validator():
    return StrategyValidator()


# =============================================================
# ALLOCATIONS
# =============================================================

class TestAllocations:
    """Target allocation checks."""

    def test_valid_strategy_passes(self, validator, make_strategy):
        result = validator.check(make_strategy())

        assert result.is_valid
        assert result.errors == []

    @pytest.mark.parametrize("pcts", [("60", "39.5"), ("60", "40.5"), ("33.3", "33.3", "33.4")])
    def test_sum_within_tolerance_accepted(self, validator, make_strategy, pcts):
        """Sums in [99.5, 100.5] are accepted."""
        symbols = ["DOT", "USDC", "ETH"]
        strategy = make_strategy(
            target_allocations=[target(symbols[i], pct) for i, pct in enumerate(pcts)]
        )

        assert validator.check(strategy).is_valid

    @pytest.mark.parametrize("pcts", [("60", "39.4"), ("60", "40.6"), ("50", "30")])
    def test_sum_outside_tolerance_rejected(self, validator, make_strategy, pcts):
        strategy = make_strategy(
            target_allocations=[target("DOT", pcts[0]), target("USDC", pcts[1])]
        )

        result = validator.check(strategy)

        assert "Target allocations must sum to 100%" in result.errors

    def test_min_above_target_rejected(self, validator, make_strategy):
        strategy = make_strategy(
            target_allocations=[
                target("DOT", "60", min_pct=Decimal("65")),
                target("USDC", "40"),
            ]
        )

        result = validator.check(strategy)

        assert any("Minimum percentage for DOT" in e for e in result.errors)

    def test_max_below_target_rejected(self, validator, make_strategy):
        strategy = make_strategy(
            target_allocations=[
                target("DOT", "60", max_pct=Decimal("55")),
                target("USDC", "40"),
            ]
        )

        result = validator.check(strategy)

        assert any("Maximum percentage for DOT" in e for e in result.errors)

    def test_duplicate_entry_rejected(self, validator, make_strategy):
        strategy = make_strategy(
            target_allocations=[target("DOT", "50"), target("DOT", "50")]
        )

        result = validator.check(strategy)

        assert "Duplicate target allocation asset:DOT" in result.errors

    def test_empty_allocations_rejected(self, validator, make_strategy):
        result = validator.check(make_strategy(target_allocations=[]))

        assert "At least one target allocation is required" in result.errors


# =============================================================
# SETTINGS RANGES
# =============================================================

class TestSettings:
    """Trigger, execution and advanced settings."""

    @pytest.mark.parametrize("threshold", ["0.5", "51"])
    def test_threshold_out_of_range(self, validator, make_strategy, threshold):
        strategy = make_strategy()
        strategy.triggers.deviation_threshold_pct = Decimal(threshold)

        assert "Deviation threshold must be between 1 and 50" in validator.check(strategy).errors

    def test_min_hours_at_least_one(self, validator, make_strategy):
        strategy = make_strategy()
        strategy.triggers.min_hours_between_rebalances = Decimal("0.5")

        assert (
            "Minimum time between rebalances must be at least 1 hour"
            in validator.check(strategy).errors
        )

    @pytest.mark.parametrize("slippage", ["0.05", "10.5"])
    def test_slippage_out_of_range(self, validator, make_strategy, slippage):
        strategy = make_strategy()
        strategy.execution_params.max_slippage_pct = Decimal(slippage)

        assert "Maximum slippage must be between 0.1 and 10" in validator.check(strategy).errors

    def test_target_gas_above_max_rejected(self, validator, make_strategy):
        strategy = make_strategy()
        strategy.execution_params.max_gas_price_gwei = Decimal("50")
        strategy.execution_params.target_gas_price_gwei = Decimal("60")

        assert (
            "Target gas price cannot exceed maximum gas price"
            in validator.check(strategy).errors
        )

    @pytest.mark.parametrize("count", [0, 51])
    def test_max_transactions_out_of_range(self, validator, make_strategy, count):
        strategy = make_strategy()
        strategy.advanced.max_transactions = count

        assert "Maximum transactions must be between 1 and 50" in validator.check(strategy).errors

    def test_custom_route_needs_dex(self, validator, make_strategy):
        strategy = make_strategy()
        strategy.advanced.custom_routes = [CustomRoute(dex="", priority=1)]

        assert "Custom route dex is required" in validator.check(strategy).errors

    def test_periodic_custom_schedule_needs_expression(self, validator, make_strategy):
        strategy = make_strategy(strategy_type=StrategyType.PERIODIC)
        strategy.triggers.schedule = ScheduleCadence.CUSTOM
        strategy.triggers.custom_schedule_expr = None

        assert not validator.check(strategy).is_valid

    def test_periodic_valid_cron_accepted(self, validator, make_strategy):
        strategy = make_strategy(strategy_type=StrategyType.PERIODIC)
        strategy.triggers.schedule = ScheduleCadence.CUSTOM
        strategy.triggers.custom_schedule_expr = "0 9 * * 1"

        assert validator.check(strategy).is_valid


# =============================================================
# REPORTING
# =============================================================

class TestReporting:
    """Violations are collected, not short-circuited."""

    def test_all_violations_reported(self, validator, make_strategy):
        strategy = make_strategy(name="", target_allocations=[target("DOT", "10")])
        strategy.triggers.deviation_threshold_pct = Decimal("80")

        with pytest.raises(ValidationError) as exc_info:
            validator.validate(strategy)

        errors = exc_info.value.context["errors"]
        assert "Strategy name is required" in errors
        assert "Target allocations must sum to 100%" in errors
        assert "Deviation threshold must be between 1 and 50" in errors
        assert exc_info.value.message == errors[0]
