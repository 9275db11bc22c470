"""
Rebalancing Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Rebalancing Engine.

SOURCES:
- Defaults below
- Environment variables (REBALANCING_*, DATABASE_URL), .env supported
- YAML file (same section names as the dataclasses)

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


# ============================================================
# SCHEDULER CONFIGURATION
# ============================================================

@dataclass
class SchedulerConfig:
    """
    Trigger scheduler configuration.
    """

    enabled: bool = True
    """Whether the background poll loop runs."""

    interval_seconds: float = 300.0
    """Delay between poll cycles."""

    conditional_write_retries: int = 3
    """Attempts for lastRebalance / nextScheduledRebalance writes."""

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ConfigurationError(
                "interval_seconds must be positive",
                config_key="scheduler.interval_seconds",
                actual_value=self.interval_seconds,
            )
        if self.conditional_write_retries < 1:
            raise ConfigurationError(
                "conditional_write_retries must be >= 1",
                config_key="scheduler.conditional_write_retries",
                actual_value=self.conditional_write_retries,
            )


# ============================================================
# EXECUTION CONFIGURATION
# ============================================================

@dataclass
class ExecutionConfig:
    """
    Operation pipeline and executor configuration.

    SAFETY: bounded concurrency, no automatic retries.
    """

    max_concurrent_operations: int = 5
    """Operations allowed in flight at once."""

    step_timeout_seconds: float = 120.0
    """Timeout for a single chain submission."""

    resume_on_startup: bool = True
    """Resume operations left executing by a previous process."""

    def __post_init__(self) -> None:
        if self.max_concurrent_operations < 1:
            raise ConfigurationError(
                "max_concurrent_operations must be >= 1",
                config_key="execution.max_concurrent_operations",
                actual_value=self.max_concurrent_operations,
            )
        if self.step_timeout_seconds <= 0:
            raise ConfigurationError(
                "step_timeout_seconds must be positive",
                config_key="execution.step_timeout_seconds",
                actual_value=self.step_timeout_seconds,
            )


# ============================================================
# SIMULATION CONFIGURATION
# ============================================================

@dataclass
class SimulationConfig:
    """
    Defaults used when collaborators give no estimate.
    """

    gas_units: Dict[str, int] = field(default_factory=lambda: {
        "swap": 200000,
        "deposit": 150000,
        "withdrawal": 150000,
    })
    """Gas units per transaction type."""

    fallback_gas_units: int = 100000
    """Gas units for types not listed above."""

    default_gas_price_gwei: Decimal = Decimal("50")

    native_token_price_usd: Decimal = Decimal("3000")
    """Used when market data has no native token price."""

    step_duration_sec: Dict[str, int] = field(default_factory=lambda: {
        "swap": 30,
        "deposit": 45,
        "withdrawal": 60,
    })

    fallback_duration_sec: int = 20
    cross_chain_extra_sec: int = 300

    thin_liquidity_ratio: Decimal = Decimal("0.3")
    """Share of route liquidity above which a warning is raised."""

    slippage_tiers: List[Tuple[Decimal, Decimal]] = field(default_factory=lambda: [
        (Decimal("1000"), Decimal("0.1")),
        (Decimal("10000"), Decimal("0.3")),
        (Decimal("100000"), Decimal("0.5")),
    ])
    """(upper USD bound, slippage pct) for swaps without a quoted route."""

    top_tier_slippage_pct: Decimal = Decimal("1.0")

    def __post_init__(self) -> None:
        if not Decimal("0") < self.thin_liquidity_ratio <= Decimal("1"):
            raise ConfigurationError(
                "thin_liquidity_ratio must be in (0, 1]",
                config_key="simulation.thin_liquidity_ratio",
                actual_value=self.thin_liquidity_ratio,
            )


# ============================================================
# APPROVAL CONFIGURATION
# ============================================================

@dataclass
class ApprovalConfig:
    """
    Approval gate configuration.
    """

    override_roles: List[str] = field(default_factory=lambda: ["admin", "risk_officer"])
    """Roles allowed to replace or force through a plan."""


# ============================================================
# NOTIFICATION CONFIGURATION
# ============================================================

@dataclass
class NotificationConfig:
    """
    Owner notification configuration.
    """

    enabled: bool = True

    telegram_enabled: bool = False
    """Deliver through Telegram instead of the log."""

    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"

    request_timeout_seconds: float = 10.0


# ============================================================
# COLLABORATOR CONFIGURATION
# ============================================================

@dataclass
class CollaboratorConfig:
    """
    External market data and chain executor services.
    """

    use_mock: bool = True
    """Use in-process mock collaborators."""

    market_data_url: str = "http://localhost:8081"
    chain_executor_url: str = "http://localhost:8082"

    api_key_env: str = "REBALANCING_COLLABORATOR_API_KEY"
    """Environment variable holding the bearer token."""

    request_timeout_seconds: float = 15.0


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """
    Persistence configuration.
    """

    use_memory: bool = False
    """Keep strategies and operations in process memory."""

    url: Optional[str] = None
    """Async SQLAlchemy URL; DATABASE_URL when unset."""

    echo: bool = False
    pool_size: int = 10
    create_tables: bool = True


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class RebalancingEngineConfig:
    """
    Master configuration for the Rebalancing Engine.
    """

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    collaborators: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def for_testing(cls) -> "RebalancingEngineConfig":
        """Get configuration for testing."""
        return cls(
            scheduler=SchedulerConfig(enabled=False, interval_seconds=1.0),
            execution=ExecutionConfig(max_concurrent_operations=2, step_timeout_seconds=5.0),
            notification=NotificationConfig(telegram_enabled=False),
            collaborators=CollaboratorConfig(use_mock=True),
            database=DatabaseConfig(use_memory=True),
            log_level="DEBUG",
        )

    @classmethod
    def for_production(cls) -> "RebalancingEngineConfig":
        """Get configuration for production."""
        return cls(
            scheduler=SchedulerConfig(enabled=True, interval_seconds=300.0),
            execution=ExecutionConfig(max_concurrent_operations=5),
            notification=NotificationConfig(telegram_enabled=True),
            collaborators=CollaboratorConfig(use_mock=False),
            database=DatabaseConfig(use_memory=False),
        )

    @classmethod
    def from_env(cls) -> "RebalancingEngineConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - REBALANCING_SCHEDULER_ENABLED
        - REBALANCING_SCHEDULER_INTERVAL
        - REBALANCING_MAX_CONCURRENT_OPERATIONS
        - REBALANCING_STEP_TIMEOUT
        - REBALANCING_NATIVE_TOKEN_PRICE_USD
        - REBALANCING_OVERRIDE_ROLES (comma separated)
        - REBALANCING_TELEGRAM_ENABLED
        - REBALANCING_USE_MOCK_COLLABORATORS
        - REBALANCING_MARKET_DATA_URL
        - REBALANCING_CHAIN_EXECUTOR_URL
        - REBALANCING_USE_MEMORY_STORE
        - DATABASE_URL
        - LOG_LEVEL
        """
        load_dotenv()
        config = cls()

        if os.getenv("REBALANCING_SCHEDULER_ENABLED"):
            config.scheduler.enabled = _env_flag("REBALANCING_SCHEDULER_ENABLED")
        if os.getenv("REBALANCING_SCHEDULER_INTERVAL"):
            config.scheduler.interval_seconds = float(os.getenv("REBALANCING_SCHEDULER_INTERVAL"))

        if os.getenv("REBALANCING_MAX_CONCURRENT_OPERATIONS"):
            config.execution.max_concurrent_operations = int(
                os.getenv("REBALANCING_MAX_CONCURRENT_OPERATIONS")
            )
        if os.getenv("REBALANCING_STEP_TIMEOUT"):
            config.execution.step_timeout_seconds = float(os.getenv("REBALANCING_STEP_TIMEOUT"))

        if os.getenv("REBALANCING_NATIVE_TOKEN_PRICE_USD"):
            config.simulation.native_token_price_usd = Decimal(
                os.getenv("REBALANCING_NATIVE_TOKEN_PRICE_USD")
            )

        if os.getenv("REBALANCING_OVERRIDE_ROLES"):
            config.approval.override_roles = [
                role.strip()
                for role in os.getenv("REBALANCING_OVERRIDE_ROLES").split(",")
                if role.strip()
            ]

        if os.getenv("REBALANCING_TELEGRAM_ENABLED"):
            config.notification.telegram_enabled = _env_flag("REBALANCING_TELEGRAM_ENABLED")

        if os.getenv("REBALANCING_USE_MOCK_COLLABORATORS"):
            config.collaborators.use_mock = _env_flag("REBALANCING_USE_MOCK_COLLABORATORS")
        if os.getenv("REBALANCING_MARKET_DATA_URL"):
            config.collaborators.market_data_url = os.getenv("REBALANCING_MARKET_DATA_URL")
        if os.getenv("REBALANCING_CHAIN_EXECUTOR_URL"):
            config.collaborators.chain_executor_url = os.getenv("REBALANCING_CHAIN_EXECUTOR_URL")

        if os.getenv("REBALANCING_USE_MEMORY_STORE"):
            config.database.use_memory = _env_flag("REBALANCING_USE_MEMORY_STORE")
        if os.getenv("DATABASE_URL"):
            config.database.url = os.getenv("DATABASE_URL")

        if os.getenv("LOG_LEVEL"):
            config.log_level = os.getenv("LOG_LEVEL").upper()

        # Re-run section validation on the overridden values
        config.scheduler.__post_init__()
        config.execution.__post_init__()

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "RebalancingEngineConfig":
        """
        Load configuration from YAML file.

        Unknown keys are rejected.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", config_key="path")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        sections = {
            "scheduler": SchedulerConfig,
            "execution": ExecutionConfig,
            "simulation": SimulationConfig,
            "approval": ApprovalConfig,
            "notification": NotificationConfig,
            "collaborators": CollaboratorConfig,
            "database": DatabaseConfig,
        }

        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key in sections:
                kwargs[key] = _build_section(sections[key], key, value or {})
            elif key in ("log_level", "api_host", "api_port"):
                kwargs[key] = value
            else:
                raise ConfigurationError(f"Unknown configuration key: {key}", config_key=key)

        config = cls(**kwargs)
        logger.info(f"Loaded rebalancing configuration from {path}")
        return config


# ============================================================
# HELPERS
# ============================================================

def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


_DECIMAL_FIELDS = {
    "default_gas_price_gwei",
    "native_token_price_usd",
    "thin_liquidity_ratio",
    "top_tier_slippage_pct",
}


def _build_section(section_cls, name: str, values: Dict[str, Any]):
    """Instantiate one config section from a YAML mapping."""
    known = set(section_cls.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}",
            config_key=name,
        )

    converted = dict(values)
    for key in _DECIMAL_FIELDS & set(converted):
        converted[key] = Decimal(str(converted[key]))
    if "slippage_tiers" in converted:
        converted["slippage_tiers"] = [
            (Decimal(str(bound)), Decimal(str(pct)))
            for bound, pct in converted["slippage_tiers"]
        ]

    return section_cls(**converted)
