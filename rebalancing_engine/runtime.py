"""
Rebalancing Engine - Runtime.

============================================================
PURPOSE
============================================================
Builds the engine's components from RebalancingEngineConfig and
controls their lifecycle.

WIRING:
- Repositories: in-memory or SQLAlchemy async
- Collaborators: mock or HTTP (aiohttp)
- Notifications: logging or Telegram

LIFECYCLE:
    start(): database init, resume in-flight operations,
             scheduler loop (when enabled)
    stop():  scheduler, pipelines, collaborator sessions, engine

============================================================
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from core.clock import ClockProtocol, ClockFactory
from database.engine import create_database_engine, create_session_factory, initialize_database

from .adapters.base import ChainExecutor, MarketDataProvider, NotificationDispatcher
from .adapters.http import HttpChainExecutor, HttpMarketDataProvider
from .adapters.mock import MockChainExecutor, MockConfig, StaticMarketDataProvider
from .approval import ApprovalGate
from .config import RebalancingEngineConfig
from .executor import Executor
from .notifications import (
    LoggingNotificationDispatcher,
    OperationNotifier,
    TelegramNotificationDispatcher,
)
from .performance import PerformanceAggregator
from .planner import PlanBuilder
from .repository import (
    InMemoryOperationRepository,
    InMemoryStrategyRepository,
    OperationRepository,
    StrategyRepository,
)
from .scheduler import TriggerScheduler
from .service import RebalancingService
from .simulator import Simulator
from .sql_repository import SqlOperationRepository, SqlStrategyRepository
from .strategy_store import StrategyStore
from .validation import StrategyValidator


logger = logging.getLogger(__name__)


class RebalancingEngine:
    """
    The wired engine.

    Collaborators and repositories can be injected; anything not
    injected is built from the configuration.
    """

    def __init__(
        self,
        config: Optional[RebalancingEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        market_data: Optional[MarketDataProvider] = None,
        chain_executor: Optional[ChainExecutor] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        strategies: Optional[StrategyRepository] = None,
        operations: Optional[OperationRepository] = None,
    ):
        self.config = config or RebalancingEngineConfig()
        self.clock = clock or ClockFactory.get_clock()
        self._db_engine: Optional[AsyncEngine] = None

        if strategies is None or operations is None:
            strategies, operations = self._build_repositories()
        self.strategies = strategies
        self.operations = operations

        self.market_data = market_data or self._build_market_data()
        self.chain_executor = chain_executor or self._build_chain_executor()
        self.dispatcher = dispatcher or self._build_dispatcher()

        self.store = StrategyStore(
            strategies,
            operations,
            validator=StrategyValidator(),
            approval_config=self.config.approval,
            scheduler_config=self.config.scheduler,
            clock=self.clock,
        )
        self.service = RebalancingService(
            store=self.store,
            operations=operations,
            market_data=self.market_data,
            planner=PlanBuilder(self.market_data),
            simulator=Simulator(
                self.chain_executor,
                self.market_data,
                self.config.simulation,
                self.clock,
            ),
            approval=ApprovalGate(self.config.approval, self.clock),
            executor=Executor(self.chain_executor, self.config.execution, self.clock),
            notifier=OperationNotifier(self.dispatcher, self.config.notification, self.clock),
            execution_config=self.config.execution,
            approval_config=self.config.approval,
            clock=self.clock,
        )
        self.scheduler = TriggerScheduler(
            strategies,
            operations,
            self.store,
            self.service,
            self.market_data,
            self.config.scheduler,
            self.clock,
        )
        self.performance = PerformanceAggregator(operations, self.clock)

    # --------------------------------------------------------
    # BUILDERS
    # --------------------------------------------------------

    def _build_repositories(self):
        db = self.config.database
        if db.use_memory:
            logger.info("Using in-memory strategy and operation repositories")
            return InMemoryStrategyRepository(), InMemoryOperationRepository()

        self._db_engine = create_database_engine(db.url, pool_size=db.pool_size, echo=db.echo)
        session_factory = create_session_factory(self._db_engine)
        return SqlStrategyRepository(session_factory), SqlOperationRepository(session_factory)

    def _build_market_data(self) -> MarketDataProvider:
        if self.config.collaborators.use_mock:
            return StaticMarketDataProvider(
                MockConfig(native_token_price_usd=self.config.simulation.native_token_price_usd)
            )
        return HttpMarketDataProvider(self.config.collaborators)

    def _build_chain_executor(self) -> ChainExecutor:
        if self.config.collaborators.use_mock:
            return MockChainExecutor(
                MockConfig(native_token_price_usd=self.config.simulation.native_token_price_usd)
            )
        return HttpChainExecutor(self.config.collaborators)

    def _build_dispatcher(self) -> NotificationDispatcher:
        if self.config.notification.telegram_enabled:
            telegram = TelegramNotificationDispatcher(self.config.notification)
            if telegram.is_configured:
                return telegram
            logger.warning("Telegram notifications enabled but not configured, logging instead")
        return LoggingNotificationDispatcher()

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self, run_scheduler: Optional[bool] = None) -> None:
        """
        Prepare storage, resume interrupted operations and start
        the scheduler loop.
        """
        if self._db_engine is not None:
            await initialize_database(self._db_engine, self.config.database.create_tables)

        if self.config.execution.resume_on_startup:
            resumed = await self.service.resume_in_flight()
            if resumed:
                logger.warning(f"Resumed {resumed} interrupted operations")

        if run_scheduler is None:
            run_scheduler = self.config.scheduler.enabled
        if run_scheduler:
            self.scheduler.start_background()

        logger.info("Rebalancing engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.service.shutdown()
        await self.market_data.close()
        await self.chain_executor.close()
        await self.dispatcher.close()
        if self._db_engine is not None:
            await self._db_engine.dispose()
            self._db_engine = None
        logger.info("Rebalancing engine stopped")
