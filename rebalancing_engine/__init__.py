"""
Rebalancing Engine Package.

============================================================
PURPOSE
============================================================
Keeps user portfolios aligned with target allocations.

PIPELINE:
    Strategy -> trigger (drift / schedule / manual) -> Operation
    -> plan -> simulate -> approval gate -> execute -> settle

The engine never signs transactions itself; it drives an
external chain executor one step at a time and records the
outcome of every step.

============================================================
MODULES
============================================================
- types: Strategy, Operation, Transaction and their enums
- config: Engine configuration
- validation: Strategy invariants
- drift: Drift evaluation
- schedule: Periodic and cron-like schedules
- state_machine: Operation and step lifecycle
- planner: Transaction plans
- simulator: Dry-run cost and risk estimates
- approval: Approval gate and overrides
- executor: Checkpointed step execution
- notifications: Owner notifications
- repository / sql_repository / models: Persistence
- strategy_store: Strategy lifecycle
- service: Operation pipeline and API
- scheduler: Trigger loop
- performance: Performance statistics
- runtime: Component wiring
- router / schemas: REST API

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    StrategyStatus,
    StrategyType,
    AllocationScope,
    ScheduleCadence,
    GasMode,
    OptimizationTarget,
    NotificationChannel,
    NotificationEvent,
    RebalanceOutcome,
    OperationStatus,
    InitiatedBy,
    TransactionType,
    TransactionStatus,
    SimulationResult,
    # Dataclasses
    TargetAllocation,
    AllocationSnapshot,
    PortfolioSnapshot,
    TriggerSettings,
    ExecutionParams,
    AdvancedOptions,
    NotificationSettings,
    Strategy,
    Transaction,
    SimulationReport,
    PerformanceMetrics,
    Operation,
    Actor,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import RebalancingEngineConfig

# ============================================================
# COMPONENTS
# ============================================================
from .drift import compute_drift, needs_rebalancing
from .validation import StrategyValidator
from .strategy_store import StrategyStore
from .service import RebalancingService
from .scheduler import TriggerScheduler, ScanResult
from .performance import PerformanceAggregator, PerformanceStats
from .runtime import RebalancingEngine


__all__ = [
    "StrategyStatus",
    "StrategyType",
    "AllocationScope",
    "ScheduleCadence",
    "GasMode",
    "OptimizationTarget",
    "NotificationChannel",
    "NotificationEvent",
    "RebalanceOutcome",
    "OperationStatus",
    "InitiatedBy",
    "TransactionType",
    "TransactionStatus",
    "SimulationResult",
    "TargetAllocation",
    "AllocationSnapshot",
    "PortfolioSnapshot",
    "TriggerSettings",
    "ExecutionParams",
    "AdvancedOptions",
    "NotificationSettings",
    "Strategy",
    "Transaction",
    "SimulationReport",
    "PerformanceMetrics",
    "Operation",
    "Actor",
    "RebalancingEngineConfig",
    "compute_drift",
    "needs_rebalancing",
    "StrategyValidator",
    "StrategyStore",
    "RebalancingService",
    "TriggerScheduler",
    "ScanResult",
    "PerformanceAggregator",
    "PerformanceStats",
    "RebalancingEngine",
]
