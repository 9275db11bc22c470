"""
Tests for engine configuration loading.
"""

from decimal import Decimal

import pytest

from core.exceptions import ConfigurationError
from rebalancing_engine.config import (
    ExecutionConfig,
    RebalancingEngineConfig,
    SchedulerConfig,
    SimulationConfig,
)


class TestSectionValidation:

    def test_interval_must_be_positive(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SchedulerConfig(interval_seconds=0)

        assert exc_info.value.context["config_key"] == "scheduler.interval_seconds"

    def test_concurrency_at_least_one(self):
        with pytest.raises(ConfigurationError):
            ExecutionConfig(max_concurrent_operations=0)

    def test_thin_liquidity_ratio_bounds(self):
        with pytest.raises(ConfigurationError):
            SimulationConfig(thin_liquidity_ratio=Decimal("1.5"))


class TestFromEnv:

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("REBALANCING_SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("REBALANCING_SCHEDULER_INTERVAL", "60")
        monkeypatch.setenv("REBALANCING_MAX_CONCURRENT_OPERATIONS", "3")
        monkeypatch.setenv("REBALANCING_OVERRIDE_ROLES", "admin, ops ,")
        monkeypatch.setenv("REBALANCING_USE_MEMORY_STORE", "yes")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        config = RebalancingEngineConfig.from_env()

        assert config.scheduler.enabled is False
        assert config.scheduler.interval_seconds == 60.0
        assert config.execution.max_concurrent_operations == 3
        assert config.approval.override_roles == ["admin", "ops"]
        assert config.database.use_memory is True
        assert config.log_level == "DEBUG"

    def test_invalid_override_rejected(self, monkeypatch):
        monkeypatch.setenv("REBALANCING_STEP_TIMEOUT", "-1")

        with pytest.raises(ConfigurationError):
            RebalancingEngineConfig.from_env()


class TestFromYaml:

    def test_sections_loaded(self, tmp_path):
        path = tmp_path / "rebalancing.yaml"
        path.write_text(
            "scheduler:\n"
            "  interval_seconds: 30\n"
            "simulation:\n"
            "  native_token_price_usd: 2500.5\n"
            "database:\n"
            "  use_memory: true\n"
            "log_level: WARNING\n"
        )

        config = RebalancingEngineConfig.from_yaml(path)

        assert config.scheduler.interval_seconds == 30
        assert config.simulation.native_token_price_usd == Decimal("2500.5")
        assert config.database.use_memory is True
        assert config.log_level == "WARNING"
        assert config.execution.max_concurrent_operations == 5

    def test_unknown_top_level_key(self, tmp_path):
        path = tmp_path / "rebalancing.yaml"
        path.write_text("retries: 3\n")

        with pytest.raises(ConfigurationError) as exc_info:
            RebalancingEngineConfig.from_yaml(path)

        assert exc_info.value.context["config_key"] == "retries"

    def test_unknown_section_key(self, tmp_path):
        path = tmp_path / "rebalancing.yaml"
        path.write_text("scheduler:\n  every: 5\n")

        with pytest.raises(ConfigurationError):
            RebalancingEngineConfig.from_yaml(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            RebalancingEngineConfig.from_yaml(tmp_path / "absent.yaml")
