"""
Rebalancing Engine - Collaborator Interfaces.

============================================================
PURPOSE
============================================================
Abstract interfaces for the services the engine consumes.

- MarketDataProvider: current holdings in USD, swap routes,
  native token prices
- ChainExecutor: submits one signed transaction and reports
  the receipt (gas used, output, failure reason)
- NotificationDispatcher: best-effort owner notifications

DESIGN PRINCIPLES:
- Engine logic never depends on a concrete transport
- Fully testable with mock adapters

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from ..types import (
    AllocationScope,
    ExecutionParams,
    GasInfo,
    NotificationChannel,
    NotificationEvent,
    PortfolioSnapshot,
    Route,
    Transaction,
)


logger = logging.getLogger(__name__)


# ============================================================
# REQUEST/RESPONSE TYPES
# ============================================================

@dataclass
class RouteRequest:
    """Request for swap route quotes."""

    from_asset: str
    to_asset: str
    amount_usd: Decimal
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    max_slippage_pct: Optional[Decimal] = None


@dataclass
class ChainReceipt:
    """Outcome of one submitted transaction."""

    success: bool
    """Whether the transaction was confirmed."""

    tx_ref: Optional[str] = None
    """Chain transaction hash or broker reference."""

    gas: Optional[GasInfo] = None

    to_amount: Optional[Decimal] = None
    """Amount received, in units of the destination asset."""

    to_amount_usd: Optional[Decimal] = None

    actual_slippage_pct: Optional[Decimal] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationRequest:
    """Owner notification handed to a dispatcher."""

    operation_id: str
    owner_id: str
    event: NotificationEvent
    channels: List[NotificationChannel] = field(default_factory=list)
    title: str = ""
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# MARKET DATA
# ============================================================

class MarketDataProvider(ABC):
    """Source of holdings and route quotes."""

    @abstractmethod
    async def get_portfolio(
        self,
        owner_id: str,
        scopes: Sequence[AllocationScope],
    ) -> PortfolioSnapshot:
        """
        Get an owner's current holdings.

        Args:
            owner_id: Portfolio owner
            scopes: Scopes the caller allocates over

        Returns:
            PortfolioSnapshot with pct and amount_usd per entry
        """
        pass

    @abstractmethod
    async def get_routes(self, request: RouteRequest) -> List[Route]:
        """Get candidate routes for a swap; empty when none exist."""
        pass

    async def get_native_token_price_usd(self, chain: Optional[str] = None) -> Optional[Decimal]:
        """Price of the gas token; None when unknown."""
        return None

    async def close(self) -> None:
        pass


# ============================================================
# CHAIN EXECUTOR
# ============================================================

class ChainExecutor(ABC):
    """Signs and broadcasts transactions."""

    @abstractmethod
    async def submit(
        self,
        transaction: Transaction,
        params: ExecutionParams,
        client_ref: str,
    ) -> ChainReceipt:
        """
        Submit one transaction and wait for its receipt.

        Args:
            transaction: Planned step
            params: Strategy execution limits
            client_ref: Idempotency key, unique per operation step

        Returns:
            ChainReceipt; failures are reported, not raised
        """
        pass

    async def estimate_gas(self, transaction: Transaction) -> Optional[GasInfo]:
        """Gas estimate for a planned step; None when unsupported."""
        return None

    async def lookup(self, client_ref: str) -> Optional[ChainReceipt]:
        """Receipt of an earlier submission; None when unknown."""
        return None

    async def close(self) -> None:
        pass


# ============================================================
# NOTIFICATIONS
# ============================================================

class NotificationDispatcher(ABC):
    """Delivers owner notifications. Delivery is best effort."""

    @abstractmethod
    async def dispatch(self, request: NotificationRequest) -> bool:
        """
        Deliver a notification.

        Returns:
            Whether the notification was accepted
        """
        pass

    async def close(self) -> None:
        pass
