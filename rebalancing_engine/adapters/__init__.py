"""
Rebalancing Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Collaborator implementations.

AVAILABLE ADAPTERS:
- HttpMarketDataProvider / HttpChainExecutor: aiohttp clients
- StaticMarketDataProvider / MockChainExecutor: for testing
- RecordingNotificationDispatcher: for testing

============================================================
"""

# Base types
from .base import (
    ChainExecutor,
    ChainReceipt,
    MarketDataProvider,
    NotificationDispatcher,
    NotificationRequest,
    RouteRequest,
)

# Implementations
from .http import HttpChainExecutor, HttpMarketDataProvider
from .mock import (
    MockChainExecutor,
    MockConfig,
    RecordingNotificationDispatcher,
    StaticMarketDataProvider,
)

__all__ = [
    "ChainExecutor",
    "ChainReceipt",
    "MarketDataProvider",
    "NotificationDispatcher",
    "NotificationRequest",
    "RouteRequest",
    "HttpChainExecutor",
    "HttpMarketDataProvider",
    "MockChainExecutor",
    "MockConfig",
    "RecordingNotificationDispatcher",
    "StaticMarketDataProvider",
]
