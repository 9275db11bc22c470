"""
Rebalancing Engine - HTTP Collaborators.

============================================================
PURPOSE
============================================================
aiohttp clients for external market data and chain executor
services. Payloads are JSON with decimals as strings.

ENDPOINTS (market data):
    GET  /portfolios/{owner_id}?scopes=asset,protocol
    POST /routes
    GET  /native-price?chain=...

ENDPOINTS (chain executor):
    POST /transactions           submit, waits for the receipt
    POST /estimates              gas estimate
    GET  /transactions/{ref}     receipt lookup (404 = unknown)

============================================================
"""

import asyncio
import logging
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import ValidationError as PayloadValidationError

from core.exceptions import ChainExecutionError, MarketDataError

from ..config import CollaboratorConfig
from ..serialization import from_primitive, to_primitive
from ..types import (
    HUNDRED,
    ZERO,
    AllocationScope,
    AllocationSnapshot,
    ExecutionParams,
    GasInfo,
    PortfolioSnapshot,
    Route,
    Transaction,
)
from .base import ChainExecutor, ChainReceipt, MarketDataProvider, RouteRequest


logger = logging.getLogger(__name__)


# ============================================================
# JSON CLIENT
# ============================================================

class JsonHttpClient:
    """Minimal JSON client over one aiohttp session."""

    def __init__(
        self,
        base_url: str,
        config: CollaboratorConfig,
        error_cls=MarketDataError,
    ):
        self._base_url = base_url.rstrip("/")
        self._config = config
        self._error_cls = error_cls
        self._api_key = os.environ.get(config.api_key_env, "")
        self._session: Optional[aiohttp.ClientSession] = None

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Any]:
        """
        Make an API request.

        Returns:
            Decoded JSON, or None for a tolerated 404

        Raises:
            MarketDataError / ChainExecutionError on transport or HTTP errors
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
            )

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
            ) as response:
                if response.status == 404 and allow_not_found:
                    return None
                if response.status >= 400:
                    text = await response.text()
                    raise self._error_cls(
                        f"{method} {path} returned {response.status}: {text[:200]}",
                        context={"status": response.status, "url": url},
                    )
                return await response.json()

        except aiohttp.ClientError as e:
            raise self._error_cls(f"Network error calling {url}: {e}", cause=e)
        except asyncio.TimeoutError as e:
            raise self._error_cls(f"Request timeout calling {url}", cause=e)

    def decode(self, target: Any, data: Any, path: str) -> Any:
        """
        Validate a response payload into a domain type.

        Raises:
            MarketDataError / ChainExecutionError on a malformed payload
        """
        try:
            return from_primitive(target, data)
        except PayloadValidationError as e:
            fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            raise self._error_cls(
                f"Malformed response from {path}: invalid {', '.join(fields)}",
                context={"path": path, "fields": fields},
                cause=e,
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


# ============================================================
# MARKET DATA
# ============================================================

class HttpMarketDataProvider(MarketDataProvider):
    """Market data from an HTTP service."""

    def __init__(self, config: CollaboratorConfig):
        self._client = JsonHttpClient(config.market_data_url, config, MarketDataError)

    async def get_portfolio(
        self,
        owner_id: str,
        scopes: Sequence[AllocationScope],
    ) -> PortfolioSnapshot:
        data = await self._client.request(
            "GET",
            f"/portfolios/{owner_id}",
            params={"scopes": ",".join(s.value for s in scopes)} if scopes else None,
        )
        snapshot = PortfolioSnapshot(
            owner_id=owner_id,
            allocations=self._client.decode(
                List[AllocationSnapshot],
                data.get("allocations", []),
                "/portfolios",
            ),
            total_value_usd=(
                Decimal(str(data["total_value_usd"]))
                if data.get("total_value_usd") is not None else None
            ),
        )
        _fill_percentages(snapshot.allocations)
        return snapshot

    async def get_routes(self, request: RouteRequest) -> List[Route]:
        data = await self._client.request("POST", "/routes", body=to_primitive(request))
        return self._client.decode(List[Route], data.get("routes", []), "/routes")

    async def get_native_token_price_usd(self, chain: Optional[str] = None) -> Optional[Decimal]:
        data = await self._client.request(
            "GET",
            "/native-price",
            params={"chain": chain} if chain else None,
            allow_not_found=True,
        )
        if not data or data.get("price_usd") is None:
            return None
        return Decimal(str(data["price_usd"]))

    async def close(self) -> None:
        await self._client.close()


def _fill_percentages(allocations: List[AllocationSnapshot]) -> None:
    """Derive pct from amounts when the service reports amounts only."""
    if any(a.pct > ZERO for a in allocations):
        return
    total = sum((a.amount_usd for a in allocations), ZERO)
    if total <= ZERO:
        return
    for allocation in allocations:
        allocation.pct = allocation.amount_usd / total * HUNDRED


# ============================================================
# CHAIN EXECUTOR
# ============================================================

class HttpChainExecutor(ChainExecutor):
    """Chain executor behind an HTTP service."""

    def __init__(self, config: CollaboratorConfig):
        self._client = JsonHttpClient(config.chain_executor_url, config, ChainExecutionError)

    async def submit(
        self,
        transaction: Transaction,
        params: ExecutionParams,
        client_ref: str,
    ) -> ChainReceipt:
        data = await self._client.request(
            "POST",
            "/transactions",
            body={
                "client_ref": client_ref,
                "transaction": to_primitive(transaction),
                "params": to_primitive(params),
            },
        )
        return self._client.decode(ChainReceipt, data, "/transactions")

    async def estimate_gas(self, transaction: Transaction) -> Optional[GasInfo]:
        data = await self._client.request(
            "POST",
            "/estimates",
            body={"transaction": to_primitive(transaction)},
            allow_not_found=True,
        )
        return self._client.decode(GasInfo, data, "/estimates") if data else None

    async def lookup(self, client_ref: str) -> Optional[ChainReceipt]:
        data = await self._client.request(
            "GET",
            f"/transactions/{client_ref}",
            allow_not_found=True,
        )
        return self._client.decode(ChainReceipt, data, "/transactions") if data else None

    async def close(self) -> None:
        await self._client.close()
