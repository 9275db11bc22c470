"""
Rebalancing Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Rebalancing Engine.

- Strategy: a user-owned rebalancing policy
- Operation: one end-to-end rebalancing attempt, the audit record
- Transaction: one step of an Operation's ordered plan

All money and percentage values are Decimal.
All timestamps are timezone-aware UTC.

============================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


ZERO = Decimal("0")
HUNDRED = Decimal("100")


def allocation_key(scope: "AllocationScope", ref_id: str) -> str:
    """Stable key of an allocation entry: ``scope:id``."""
    return f"{scope.value}:{ref_id}"


# ============================================================
# STRATEGY ENUMS
# ============================================================

class StrategyStatus(Enum):
    """Strategy lifecycle status."""

    DRAFT = "draft"
    """Created, never activated."""

    ACTIVE = "active"
    """Evaluated by the scheduler."""

    PAUSED = "paused"
    """Ignored by the scheduler until re-activated."""


class StrategyType(Enum):
    """How a strategy decides that a rebalance is due."""

    THRESHOLD = "threshold"
    """Drift beyond the deviation threshold."""

    PERIODIC = "periodic"
    """Fixed cadence."""

    CUSTOM = "custom"
    """Drift-based, with a custom schedule expression."""


class AllocationScope(Enum):
    """What an allocation entry refers to."""

    ASSET = "asset"
    PROTOCOL = "protocol"
    CHAIN = "chain"


class ScheduleCadence(Enum):
    """Cadence of periodic strategies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    CUSTOM = "custom"


class GasMode(Enum):
    """Gas pricing preference."""

    EFFICIENT = "efficient"
    FAST = "fast"
    AGGRESSIVE = "aggressive"


class OptimizationTarget(Enum):
    """Route selection preference."""

    MINIMIZE_GAS = "minimizeGas"
    """Prefer the cheapest route."""

    MAXIMIZE_RETURNS = "maximizeReturns"
    """Prefer the highest net output after costs."""

    BALANCED = "balanced"
    """Cheapest route, custom route priority on ties."""


class NotificationChannel(Enum):
    """Delivery channels for owner notifications."""

    EMAIL = "email"
    PUSH = "push"
    IN_APP = "inApp"


class NotificationEvent(Enum):
    """Operation events the owner can be notified about."""

    STARTED = "started"
    WAITING_APPROVAL = "waitingApproval"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class RebalanceOutcome(Enum):
    """Status recorded in a strategy's last rebalance."""

    PENDING = "pending"
    SIMULATED = "simulated"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


# ============================================================
# OPERATION ENUMS
# ============================================================

class OperationStatus(Enum):
    """
    Operation lifecycle status.

    State Machine:

    PENDING ──► SIMULATING ──► WAITING_APPROVAL ──► EXECUTING
       │            │                 │                 │
       └────────────┴───► CANCELLED ◄─┘                 ├──► COMPLETED
                                                        ├──► PARTIAL
                                                        └──► FAILED
    """

    PENDING = "pending"
    """Created, plan not yet simulated."""

    SIMULATING = "simulating"
    """Dry run in progress."""

    WAITING_APPROVAL = "waitingApproval"
    """Blocked on a human decision."""

    EXECUTING = "executing"
    """Steps are being submitted."""

    COMPLETED = "completed"
    """Every step completed."""

    FAILED = "failed"
    """No step completed."""

    CANCELLED = "cancelled"
    """Cancelled or rejected before execution."""

    PARTIAL = "partial"
    """Some, not all, steps completed."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal status."""
        return self in TERMINAL_OPERATION_STATUSES

    def is_active(self) -> bool:
        """Check if the operation still holds its strategy's slot."""
        return self in ACTIVE_OPERATION_STATUSES

    def allows_cancel(self) -> bool:
        """Check if the operation can still be cancelled."""
        return self in (
            OperationStatus.PENDING,
            OperationStatus.SIMULATING,
            OperationStatus.WAITING_APPROVAL,
        )


TERMINAL_OPERATION_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
    OperationStatus.PARTIAL,
})

ACTIVE_OPERATION_STATUSES = frozenset({
    OperationStatus.PENDING,
    OperationStatus.SIMULATING,
    OperationStatus.WAITING_APPROVAL,
    OperationStatus.EXECUTING,
})


class InitiatedBy(Enum):
    """Who created an operation."""

    SYSTEM = "system"
    USER = "user"
    API = "api"


class TransactionType(Enum):
    """Kind of on-chain step."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SWAP = "swap"
    TRANSFER = "transfer"
    LEND = "lend"
    BORROW = "borrow"
    REPAY = "repay"


class TransactionStatus(Enum):
    """Per-step status. Only ever advances."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal step status."""
        return self in (
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        )


class SimulationResult(Enum):
    """Outcome of a dry run."""

    SUCCESS = "success"
    """Every step feasible, no warnings."""

    PARTIAL = "partial"
    """Feasible with warnings."""

    FAILED = "failed"
    """At least one step infeasible."""


# ============================================================
# ALLOCATIONS
# ============================================================

@dataclass
class TargetAllocation:
    """Target share of portfolio value for one holding."""

    scope: AllocationScope
    """Asset, protocol or chain."""

    id: str
    """Identifier within the scope (symbol, protocol slug, chain id)."""

    name: str = ""
    """Display name."""

    target_pct: Decimal = ZERO
    """Target percentage of portfolio value."""

    min_pct: Optional[Decimal] = None
    """Lower bound; drifting below forces a rebalance."""

    max_pct: Optional[Decimal] = None
    """Upper bound; drifting above forces a rebalance."""

    @property
    def key(self) -> str:
        return allocation_key(self.scope, self.id)


@dataclass
class AllocationSnapshot:
    """Observed share of portfolio value for one holding."""

    scope: AllocationScope
    id: str
    name: str = ""
    pct: Decimal = ZERO
    amount_usd: Decimal = ZERO

    @property
    def key(self) -> str:
        return allocation_key(self.scope, self.id)


@dataclass
class PortfolioSnapshot:
    """Current holdings of an owner as reported by market data."""

    owner_id: str
    allocations: List[AllocationSnapshot] = field(default_factory=list)
    total_value_usd: Optional[Decimal] = None
    as_of: Optional[datetime] = None

    @property
    def value_usd(self) -> Decimal:
        """Total value, summed from entries when not reported."""
        if self.total_value_usd is not None:
            return self.total_value_usd
        return sum((a.amount_usd for a in self.allocations), ZERO)


# ============================================================
# STRATEGY
# ============================================================

@dataclass
class TriggerSettings:
    """When a rebalance is due."""

    deviation_threshold_pct: Decimal = Decimal("5")
    """Absolute drift in percentage points that triggers a rebalance."""

    schedule: ScheduleCadence = ScheduleCadence.MONTHLY
    """Cadence for periodic strategies."""

    custom_schedule_expr: Optional[str] = None
    """Cron-like expression used when schedule is CUSTOM."""

    manual_approval_required: bool = True
    """Every operation waits for a human decision."""

    min_hours_between_rebalances: Decimal = Decimal("24")
    """Cool-down after the last rebalance."""


@dataclass
class ExecutionParams:
    """Cost limits applied while planning and executing."""

    max_slippage_pct: Decimal = Decimal("0.5")
    max_gas_price_gwei: Optional[Decimal] = None
    target_gas_price_gwei: Optional[Decimal] = None
    gas_mode: GasMode = GasMode.EFFICIENT

    max_rebalance_pct: Decimal = HUNDRED
    """Maximum share of portfolio value moved by one operation."""


@dataclass
class CustomRoute:
    """Preferred venue for swaps; lower priority wins."""

    dex: str
    priority: int = 0


@dataclass
class AdvancedOptions:
    """Planner tuning."""

    use_flash_loans: bool = False
    optimization_target: OptimizationTarget = OptimizationTarget.BALANCED
    max_transactions: int = 10
    custom_routes: List[CustomRoute] = field(default_factory=list)


@dataclass
class NotificationSettings:
    """Owner notification preferences."""

    enabled: bool = True

    channels: List[NotificationChannel] = field(
        default_factory=lambda: [NotificationChannel.IN_APP]
    )

    events: List[NotificationEvent] = field(
        default_factory=lambda: list(NotificationEvent)
    )


@dataclass
class LastRebalance:
    """Most recent rebalance recorded on a strategy."""

    timestamp: datetime
    status: RebalanceOutcome
    operation_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Strategy:
    """
    A user-owned rebalancing policy.

    Created as DRAFT, promoted to ACTIVE, may be PAUSED.
    Every write bumps ``version``; writes are conditional on it.
    """

    strategy_id: str
    owner_id: str
    name: str
    strategy_type: StrategyType = StrategyType.THRESHOLD
    description: str = ""
    status: StrategyStatus = StrategyStatus.DRAFT
    target_allocations: List[TargetAllocation] = field(default_factory=list)
    triggers: TriggerSettings = field(default_factory=TriggerSettings)
    execution_params: ExecutionParams = field(default_factory=ExecutionParams)
    advanced: AdvancedOptions = field(default_factory=AdvancedOptions)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    simulate_before_execution: bool = True
    """Run the simulator before the approval gate."""

    last_rebalance: Optional[LastRebalance] = None
    next_scheduled_rebalance: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_periodic(self) -> bool:
        return self.strategy_type == StrategyType.PERIODIC

    def target_for(self, key: str) -> Optional[TargetAllocation]:
        """Find the target entry with the given allocation key."""
        for target in self.target_allocations:
            if target.key == key:
                return target
        return None


# ============================================================
# TRANSACTION
# ============================================================

@dataclass
class GasInfo:
    """Gas estimate or receipt of one step."""

    gas_used: int = 0
    gas_price_gwei: Decimal = ZERO
    gas_cost_native: Decimal = ZERO
    gas_cost_usd: Decimal = ZERO


@dataclass
class RouteStep:
    """One hop of a swap route."""

    dex: str
    from_asset: str
    to_asset: str
    percentage: Decimal = HUNDRED


@dataclass
class Route:
    """Candidate or selected route for a swap, as quoted by market data."""

    route_id: str
    dex: str
    steps: List[RouteStep] = field(default_factory=list)
    expected_slippage_pct: Decimal = ZERO
    expected_gas_cost_usd: Decimal = ZERO
    expected_output_usd: Decimal = ZERO

    liquidity_usd: Optional[Decimal] = None
    """Depth available on the route; None when unknown."""

    @property
    def expected_net_value_usd(self) -> Decimal:
        """Output after gas."""
        return self.expected_output_usd - self.expected_gas_cost_usd


@dataclass
class SlippageInfo:
    expected: Decimal = ZERO
    actual: Optional[Decimal] = None


@dataclass
class ErrorInfo:
    """Failure recorded on a transaction."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Transaction:
    """
    One step of an operation's plan.

    Status only advances: pending -> executing -> terminal,
    or pending -> cancelled when the whole operation is cancelled.
    """

    index: int
    tx_type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING

    from_asset: Optional[str] = None
    to_asset: Optional[str] = None
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    from_protocol: Optional[str] = None
    to_protocol: Optional[str] = None

    from_amount: Decimal = ZERO
    """Amount leaving, in units of from_asset."""

    to_amount: Decimal = ZERO
    """Amount arriving, in units of to_asset (expected, then actual)."""

    from_amount_usd: Decimal = ZERO
    to_amount_usd: Decimal = ZERO

    source_key: Optional[str] = None
    """Allocation entry drained by this step."""

    destination_key: Optional[str] = None
    """Allocation entry funded by this step."""

    depends_on: Optional[int] = None
    """Index of the step whose output this step consumes."""

    tx_ref: Optional[str] = None
    gas: Optional[GasInfo] = None
    route: Optional[Route] = None
    slippage: SlippageInfo = field(default_factory=SlippageInfo)
    error: Optional[ErrorInfo] = None
    executed_at: Optional[datetime] = None

    @property
    def is_cross_chain(self) -> bool:
        return bool(self.from_chain and self.to_chain and self.from_chain != self.to_chain)


# ============================================================
# OPERATION
# ============================================================

@dataclass
class SimulationReport:
    """Dry-run cost and risk estimate of a plan."""

    performed: bool = False
    result: Optional[SimulationResult] = None
    expected_gas_cost_usd: Decimal = ZERO
    expected_slippage: Decimal = ZERO
    estimated_duration_sec: int = 0
    portfolio_value_before_usd: Decimal = ZERO
    portfolio_value_after_usd: Decimal = ZERO
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    simulated_at: Optional[datetime] = None


@dataclass
class ApprovalRecord:
    """Human gate state."""

    required: bool = False
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


@dataclass
class ManualOverride:
    """Privileged replacement or force-through of a plan."""

    overridden: bool = False
    by: Optional[str] = None
    at: Optional[datetime] = None
    reason: Optional[str] = None
    original_plan: Optional[List[Transaction]] = None


@dataclass
class PerformanceMetrics:
    """Outcome of an executed operation."""

    portfolio_value_before_usd: Decimal = ZERO
    portfolio_value_after_usd: Decimal = ZERO
    total_gas_cost_usd: Decimal = ZERO
    total_slippage: Decimal = ZERO
    execution_time_sec: Decimal = ZERO
    success_rate_pct: Decimal = ZERO
    estimated_savings_usd: Decimal = ZERO

    @property
    def value_improvement_usd(self) -> Decimal:
        return self.portfolio_value_after_usd - self.portfolio_value_before_usd


@dataclass
class NotificationRecord:
    """A notification handed to the dispatcher."""

    event: NotificationEvent
    timestamp: datetime
    channels: List[NotificationChannel] = field(default_factory=list)
    delivered: bool = True


@dataclass
class OperationError:
    """Top-level failure of an operation."""

    code: str
    message: str
    transaction_index: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationEvent:
    """Audit trail entry for an operation or one of its steps."""

    timestamp: datetime
    from_status: Optional[str]
    to_status: str
    reason: str = ""
    actor: Optional[str] = None
    transaction_index: Optional[int] = None


@dataclass
class Operation:
    """
    One rebalancing attempt, from planning to settlement.

    Mutated only by its own pipeline. Every write bumps ``version``.
    """

    operation_id: str
    strategy_id: str
    owner_id: str
    status: OperationStatus = OperationStatus.PENDING
    initiated_by: InitiatedBy = InitiatedBy.SYSTEM
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    current_allocation: List[AllocationSnapshot] = field(default_factory=list)
    target_allocation: List[AllocationSnapshot] = field(default_factory=list)
    achieved_allocation: List[AllocationSnapshot] = field(default_factory=list)

    transactions: List[Transaction] = field(default_factory=list)
    planned: bool = False
    """Set once planning completes; the plan length is fixed afterwards."""

    simulation: SimulationReport = field(default_factory=SimulationReport)
    approval: ApprovalRecord = field(default_factory=ApprovalRecord)
    manual_override: ManualOverride = field(default_factory=ManualOverride)
    performance: Optional[PerformanceMetrics] = None
    notifications_sent: List[NotificationRecord] = field(default_factory=list)
    error: Optional[OperationError] = None
    events: List[OperationEvent] = field(default_factory=list)

    execution_started_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def completed_steps(self) -> int:
        return sum(1 for tx in self.transactions if tx.status == TransactionStatus.COMPLETED)

    @property
    def failed_steps(self) -> int:
        return sum(1 for tx in self.transactions if tx.status == TransactionStatus.FAILED)

    @property
    def portfolio_value_usd(self) -> Decimal:
        return sum((a.amount_usd for a in self.current_allocation), ZERO)


@dataclass
class Actor:
    """Caller identity, trusted from the outer authentication layer."""

    user_id: str
    role: str = "user"
