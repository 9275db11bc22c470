"""
Pydantic Schemas for the Rebalancing API.

Request bodies are validated here, then converted into the engine's
dataclasses. Responses carry the engine records as JSON primitives
(decimals as strings, timestamps ISO 8601 UTC).
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .serialization import from_dict, from_primitive
from .types import (
    AllocationScope,
    AllocationSnapshot,
    GasMode,
    NotificationChannel,
    NotificationEvent,
    OptimizationTarget,
    ScheduleCadence,
    Strategy,
    StrategyType,
    Transaction,
    TransactionType,
)


# =============================================================
# STRATEGY SECTIONS
# =============================================================

class TargetAllocationSchema(BaseModel):
    """One target entry."""
    scope: AllocationScope
    id: str = Field(..., min_length=1)
    name: str = ""
    target_pct: Decimal
    min_pct: Optional[Decimal] = None
    max_pct: Optional[Decimal] = None


class TriggerSettingsSchema(BaseModel):
    deviation_threshold_pct: Decimal = Decimal("5")
    schedule: ScheduleCadence = ScheduleCadence.MONTHLY
    custom_schedule_expr: Optional[str] = None
    manual_approval_required: bool = True
    min_hours_between_rebalances: Decimal = Decimal("24")


class ExecutionParamsSchema(BaseModel):
    max_slippage_pct: Decimal = Decimal("0.5")
    max_gas_price_gwei: Optional[Decimal] = None
    target_gas_price_gwei: Optional[Decimal] = None
    gas_mode: GasMode = GasMode.EFFICIENT
    max_rebalance_pct: Decimal = Decimal("100")


class CustomRouteSchema(BaseModel):
    dex: str
    priority: int = 0


class AdvancedOptionsSchema(BaseModel):
    use_flash_loans: bool = False
    optimization_target: OptimizationTarget = OptimizationTarget.BALANCED
    max_transactions: int = 10
    custom_routes: List[CustomRouteSchema] = Field(default_factory=list)


class NotificationSettingsSchema(BaseModel):
    enabled: bool = True
    channels: List[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.IN_APP]
    )
    events: List[NotificationEvent] = Field(
        default_factory=lambda: list(NotificationEvent)
    )


# =============================================================
# STRATEGY REQUESTS
# =============================================================

class StrategyCreate(BaseModel):
    """
    Schema for creating a strategy.

    Invariants (allocation sum, bounds, limits) are checked by the
    engine's validator, which reports every violation at once.
    """
    name: str
    description: str = ""
    strategy_type: StrategyType = StrategyType.THRESHOLD
    target_allocations: List[TargetAllocationSchema] = Field(default_factory=list)
    triggers: TriggerSettingsSchema = Field(default_factory=TriggerSettingsSchema)
    execution_params: ExecutionParamsSchema = Field(default_factory=ExecutionParamsSchema)
    advanced: AdvancedOptionsSchema = Field(default_factory=AdvancedOptionsSchema)
    notifications: NotificationSettingsSchema = Field(default_factory=NotificationSettingsSchema)
    simulate_before_execution: bool = True

    owner_id: Optional[str] = Field(
        None, description="Owner; defaults to the calling user"
    )

    def to_strategy(self, owner_id: str, strategy_id: str = "") -> Strategy:
        data = self.model_dump(mode="json", exclude={"owner_id"})
        data["strategy_id"] = strategy_id
        data["owner_id"] = owner_id
        return from_dict(Strategy, data)


class StrategyUpdate(StrategyCreate):
    """Full replacement of a strategy's editable fields."""
    version: int = Field(..., ge=1, description="Version read by the caller")

    def to_strategy(self, owner_id: str, strategy_id: str = "") -> Strategy:
        strategy = super().to_strategy(owner_id, strategy_id)
        strategy.version = self.version
        return strategy


# =============================================================
# OPERATION REQUESTS
# =============================================================

class AllocationSnapshotSchema(BaseModel):
    """Observed holding supplied by the caller."""
    scope: AllocationScope
    id: str
    name: str = ""
    pct: Decimal = Decimal("0")
    amount_usd: Decimal = Decimal("0")


class PlanRequest(BaseModel):
    """Manual operation creation."""
    strategy_id: str
    manual_allocation: Optional[List[AllocationSnapshotSchema]] = Field(
        None, description="Holdings to plan from instead of market data"
    )

    def allocation(self) -> Optional[List[AllocationSnapshot]]:
        if self.manual_allocation is None:
            return None
        return from_primitive(
            List[AllocationSnapshot],
            [a.model_dump(mode="json") for a in self.manual_allocation],
        )


class DecisionRequest(BaseModel):
    """Approve, reject or cancel."""
    reason: Optional[str] = Field(None, max_length=500)


class TransactionSchema(BaseModel):
    """Replacement plan step."""
    index: int = Field(..., ge=0)
    tx_type: TransactionType
    from_asset: Optional[str] = None
    to_asset: Optional[str] = None
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    from_protocol: Optional[str] = None
    to_protocol: Optional[str] = None
    from_amount: Decimal = Decimal("0")
    to_amount: Decimal = Decimal("0")
    from_amount_usd: Decimal = Decimal("0")
    to_amount_usd: Decimal = Decimal("0")
    source_key: Optional[str] = None
    destination_key: Optional[str] = None
    depends_on: Optional[int] = None


class OverrideRequest(BaseModel):
    """Privileged plan replacement and/or force-through."""
    reason: str = Field(..., min_length=1, max_length=500)
    new_plan: Optional[List[TransactionSchema]] = None
    force: bool = False

    def plan(self) -> Optional[List[Transaction]]:
        if self.new_plan is None:
            return None
        return [from_dict(Transaction, tx.model_dump(mode="json")) for tx in self.new_plan]


# =============================================================
# RESPONSES
# =============================================================

class StrategyListResponse(BaseModel):
    strategies: List[Dict[str, Any]]
    total: int


class OperationListResponse(BaseModel):
    operations: List[Dict[str, Any]]
    limit: int
    offset: int


class ScanResultResponse(BaseModel):
    """One scheduler cycle."""
    started_at: str
    finished_at: Optional[str] = None
    evaluated: int
    created: int
    skipped: int
    errors: int
    operation_ids: List[str]


class PerformanceResponse(BaseModel):
    """Decimals are returned as strings."""
    owner_id: str
    window_days: int
    total_operations: int
    successful_operations: int
    success_rate_pct: str
    total_gas_cost_usd: str
    avg_gas_cost_usd: str
    total_value_improvement_usd: str
    avg_value_improvement_usd: str
    total_slippage: str
    avg_slippage: str


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
