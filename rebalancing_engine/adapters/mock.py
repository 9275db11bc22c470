"""
Rebalancing Engine - Mock Collaborators.

============================================================
PURPOSE
============================================================
In-process collaborators for tests and local runs.

FEATURES:
- Configurable portfolios and route quotes
- Configurable step failures (reported or raised)
- Configurable latency
- Full record of submissions and notifications

============================================================
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple

from core.exceptions import ChainExecutionError, NotificationError

from ..types import (
    HUNDRED,
    AllocationScope,
    AllocationSnapshot,
    ExecutionParams,
    GasInfo,
    PortfolioSnapshot,
    Route,
    RouteStep,
    Transaction,
)
from .base import (
    ChainExecutor,
    ChainReceipt,
    MarketDataProvider,
    NotificationDispatcher,
    NotificationRequest,
    RouteRequest,
)


logger = logging.getLogger(__name__)


GWEI = Decimal("1000000000")


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock collaborators."""

    latency_seconds: float = 0.0
    """Simulated latency per call."""

    native_token_price_usd: Decimal = Decimal("3000")

    auto_routes: bool = True
    """Quote a default route for pairs without configured routes."""

    default_dex: str = "mockswap"
    default_slippage_pct: Decimal = Decimal("0.1")
    default_route_gas_usd: Decimal = Decimal("5")

    gas_used: int = 150000
    gas_price_gwei: Decimal = Decimal("30")

    failing_steps: Set[int] = field(default_factory=set)
    """Step indexes whose receipts report failure."""

    raising_steps: Set[int] = field(default_factory=set)
    """Step indexes whose submission raises."""


# ============================================================
# MARKET DATA
# ============================================================

class StaticMarketDataProvider(MarketDataProvider):
    """
    Market data served from configured fixtures.

    Portfolios are keyed by owner; routes by (from_asset, to_asset).
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._portfolios: Dict[str, List[AllocationSnapshot]] = {}
        self._routes: Dict[Tuple[str, str], List[Route]] = {}
        self._failing_owners: Set[str] = set()
        self.route_requests: List[RouteRequest] = []

    def set_portfolio(self, owner_id: str, allocations: List[AllocationSnapshot]) -> None:
        self._portfolios[owner_id] = list(allocations)

    def set_routes(self, from_asset: str, to_asset: str, routes: List[Route]) -> None:
        self._routes[(from_asset, to_asset)] = list(routes)

    def fail_for(self, owner_id: str) -> None:
        """Make portfolio lookups for an owner raise."""
        self._failing_owners.add(owner_id)

    async def get_portfolio(
        self,
        owner_id: str,
        scopes: Sequence[AllocationScope],
    ) -> PortfolioSnapshot:
        await self._delay()
        if owner_id in self._failing_owners:
            raise ConnectionError(f"Market data unavailable for {owner_id}")

        allocations = [
            a for a in self._portfolios.get(owner_id, [])
            if not scopes or a.scope in scopes
        ]
        return PortfolioSnapshot(owner_id=owner_id, allocations=allocations)

    async def get_routes(self, request: RouteRequest) -> List[Route]:
        await self._delay()
        self.route_requests.append(request)

        key = (request.from_asset, request.to_asset)
        if key in self._routes:
            return list(self._routes[key])
        if not self._config.auto_routes:
            return []

        slippage = self._config.default_slippage_pct
        output = request.amount_usd * (HUNDRED - slippage) / HUNDRED
        return [
            Route(
                route_id=f"{self._config.default_dex}:{request.from_asset}-{request.to_asset}",
                dex=self._config.default_dex,
                steps=[RouteStep(
                    dex=self._config.default_dex,
                    from_asset=request.from_asset,
                    to_asset=request.to_asset,
                )],
                expected_slippage_pct=slippage,
                expected_gas_cost_usd=self._config.default_route_gas_usd,
                expected_output_usd=output,
            )
        ]

    async def get_native_token_price_usd(self, chain: Optional[str] = None) -> Optional[Decimal]:
        return self._config.native_token_price_usd

    async def _delay(self) -> None:
        if self._config.latency_seconds > 0:
            await asyncio.sleep(self._config.latency_seconds)


# ============================================================
# CHAIN EXECUTOR
# ============================================================

class MockChainExecutor(ChainExecutor):
    """
    Chain executor that confirms instantly.

    Receipts are deterministic per client_ref so lookups after a
    restart return the same result.
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._receipts: Dict[str, ChainReceipt] = {}
        self.submissions: List[Tuple[str, Transaction]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def submitted_indexes(self) -> List[int]:
        return [tx.index for _, tx in self.submissions]

    async def submit(
        self,
        transaction: Transaction,
        params: ExecutionParams,
        client_ref: str,
    ) -> ChainReceipt:
        self.submissions.append((client_ref, transaction))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)

        try:
            if self._config.latency_seconds > 0:
                await asyncio.sleep(self._config.latency_seconds)

            if transaction.index in self._config.raising_steps:
                raise ChainExecutionError(
                    f"RPC unavailable for step {transaction.index}",
                    error_code="RPC_UNAVAILABLE",
                )

            if transaction.index in self._config.failing_steps:
                receipt = ChainReceipt(
                    success=False,
                    tx_ref=self._tx_ref(client_ref),
                    gas=self._gas(),
                    error_code="REVERTED",
                    error_message=f"Transaction reverted at step {transaction.index}",
                )
            else:
                slippage = transaction.slippage.expected
                to_usd = transaction.from_amount_usd * (HUNDRED - slippage) / HUNDRED
                receipt = ChainReceipt(
                    success=True,
                    tx_ref=self._tx_ref(client_ref),
                    gas=self._gas(),
                    to_amount=transaction.to_amount or to_usd,
                    to_amount_usd=to_usd,
                    actual_slippage_pct=slippage,
                )

            self._receipts[client_ref] = receipt
            return receipt
        finally:
            self._in_flight -= 1

    async def estimate_gas(self, transaction: Transaction) -> Optional[GasInfo]:
        return self._gas()

    async def lookup(self, client_ref: str) -> Optional[ChainReceipt]:
        return self._receipts.get(client_ref)

    def _gas(self) -> GasInfo:
        native = Decimal(self._config.gas_used) * self._config.gas_price_gwei / GWEI
        return GasInfo(
            gas_used=self._config.gas_used,
            gas_price_gwei=self._config.gas_price_gwei,
            gas_cost_native=native,
            gas_cost_usd=native * self._config.native_token_price_usd,
        )

    @staticmethod
    def _tx_ref(client_ref: str) -> str:
        return "0x" + hashlib.sha256(client_ref.encode()).hexdigest()


# ============================================================
# NOTIFICATIONS
# ============================================================

class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps every notification in memory."""

    def __init__(self, fail: bool = False):
        self._fail = fail
        self.sent: List[NotificationRequest] = []

    async def dispatch(self, request: NotificationRequest) -> bool:
        if self._fail:
            raise NotificationError(f"Dispatcher down for {request.operation_id}")
        self.sent.append(request)
        return True

    def events_for(self, operation_id: str) -> List[str]:
        return [r.event.value for r in self.sent if r.operation_id == operation_id]
