"""
Rebalancing Engine - Simulator.

============================================================
PURPOSE
============================================================
Dry-runs a transaction plan: cost and risk estimate without
submitting anything.

PER STEP:
- Gas: chain executor estimate, else default units per type
  at the strategy's target (or default) gas price
- Slippage: quoted route, else size tier capped at max slippage
- Duration: per type, cross-chain legs add a bridge delay

FINDINGS:
- errors (infeasible): route not found, insufficient liquidity,
  broken ordering, failed estimate, empty plan
- warnings (feasible): thin liquidity, gas price above limit,
  cross-chain legs

RESULT:
    errors -> FAILED, warnings only -> PARTIAL, else SUCCESS

Step statuses are never touched; expected gas and slippage are
recorded on the steps.

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from core.clock import ClockProtocol, ClockFactory

from .adapters.base import ChainExecutor, MarketDataProvider
from .config import SimulationConfig
from .types import (
    HUNDRED,
    ZERO,
    GasInfo,
    SimulationReport,
    SimulationResult,
    Strategy,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)


GWEI = Decimal("1000000000")


class Simulator:
    """
    Estimates cost and feasibility of plans.

    Holds no per-operation state.
    """

    def __init__(
        self,
        chain_executor: ChainExecutor,
        market_data: MarketDataProvider,
        config: Optional[SimulationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize simulator.

        Args:
            chain_executor: Source of gas estimates
            market_data: Source of native token prices
            config: Default constants
            clock: Time source
        """
        self._chain_executor = chain_executor
        self._market_data = market_data
        self._config = config or SimulationConfig()
        self._clock = clock or ClockFactory.get_clock()

    async def simulate(
        self,
        strategy: Strategy,
        transactions: List[Transaction],
        portfolio_value_usd: Decimal,
    ) -> SimulationReport:
        """
        Dry-run a plan.

        Args:
            strategy: Strategy with execution limits
            transactions: Ordered plan
            portfolio_value_usd: Value before rebalancing

        Returns:
            SimulationReport with performed=True
        """
        report = SimulationReport(
            performed=True,
            portfolio_value_before_usd=portfolio_value_usd,
        )

        if not transactions:
            report.errors.append("Plan contains no transactions")

        native_prices: Dict[Optional[str], Decimal] = {}
        total_gas = ZERO
        total_slippage_pct = ZERO
        slippage_cost = ZERO
        duration = 0

        for position, tx in enumerate(transactions):
            if tx.depends_on is not None and tx.depends_on >= position:
                report.errors.append(
                    f"Step {tx.index}: depends on step {tx.depends_on} which runs later"
                )

            gas = await self._estimate_gas(strategy, tx, native_prices, report)
            tx.gas = gas
            total_gas += gas.gas_cost_usd

            max_gas = strategy.execution_params.max_gas_price_gwei
            if max_gas is not None and gas.gas_price_gwei > max_gas:
                report.warnings.append(
                    f"Step {tx.index}: gas price {gas.gas_price_gwei} gwei exceeds "
                    f"maximum {max_gas} gwei"
                )

            slippage = self._check_slippage(strategy, tx, report)
            tx.slippage.expected = slippage
            total_slippage_pct += slippage
            slippage_cost += tx.from_amount_usd * slippage / HUNDRED

            duration += self._config.step_duration_sec.get(
                tx.tx_type.value,
                self._config.fallback_duration_sec,
            )
            if tx.is_cross_chain:
                duration += self._config.cross_chain_extra_sec
                report.warnings.append(
                    f"Step {tx.index}: cross-chain transfer {tx.from_chain} -> {tx.to_chain} "
                    f"may take longer to settle"
                )

        report.expected_gas_cost_usd = total_gas
        report.expected_slippage = (
            total_slippage_pct / Decimal(len(transactions)) if transactions else ZERO
        )
        report.estimated_duration_sec = duration
        report.portfolio_value_after_usd = portfolio_value_usd - total_gas - slippage_cost
        report.simulated_at = self._clock.now()

        if report.errors:
            report.result = SimulationResult.FAILED
        elif report.warnings:
            report.result = SimulationResult.PARTIAL
        else:
            report.result = SimulationResult.SUCCESS

        logger.info(
            f"Simulated strategy {strategy.strategy_id}: {report.result.value}, "
            f"gas {total_gas:.2f} USD, {len(report.warnings)} warnings, "
            f"{len(report.errors)} errors"
        )
        return report

    # --------------------------------------------------------
    # ESTIMATES
    # --------------------------------------------------------

    async def _estimate_gas(
        self,
        strategy: Strategy,
        tx: Transaction,
        native_prices: Dict[Optional[str], Decimal],
        report: SimulationReport,
    ) -> GasInfo:
        try:
            estimate = await self._chain_executor.estimate_gas(tx)
        except Exception as e:
            report.errors.append(f"Step {tx.index}: gas estimation failed: {e}")
            estimate = None

        if estimate is not None:
            return estimate

        units = self._config.gas_units.get(tx.tx_type.value, self._config.fallback_gas_units)
        price_gwei = (
            strategy.execution_params.target_gas_price_gwei
            or self._config.default_gas_price_gwei
        )
        native = Decimal(units) * price_gwei / GWEI
        native_price = await self._native_price(tx.from_chain, native_prices)

        return GasInfo(
            gas_used=units,
            gas_price_gwei=price_gwei,
            gas_cost_native=native,
            gas_cost_usd=native * native_price,
        )

    async def _native_price(
        self,
        chain: Optional[str],
        cache: Dict[Optional[str], Decimal],
    ) -> Decimal:
        if chain not in cache:
            try:
                price = await self._market_data.get_native_token_price_usd(chain)
            except Exception as e:
                logger.warning(f"Native token price unavailable for {chain}: {e}")
                price = None
            cache[chain] = price if price is not None else self._config.native_token_price_usd
        return cache[chain]

    def _check_slippage(
        self,
        strategy: Strategy,
        tx: Transaction,
        report: SimulationReport,
    ) -> Decimal:
        if tx.tx_type != TransactionType.SWAP:
            return ZERO

        route = tx.route
        if route is None:
            report.errors.append(
                f"Step {tx.index}: route not found for {tx.from_asset} -> {tx.to_asset} "
                f"within {strategy.execution_params.max_slippage_pct}% slippage"
            )
            return self._tier_slippage(strategy, tx.from_amount_usd)

        if route.liquidity_usd is not None:
            if tx.from_amount_usd > route.liquidity_usd:
                report.errors.append(
                    f"Step {tx.index}: insufficient liquidity on {route.dex} "
                    f"({tx.from_amount_usd:.2f} USD needed, {route.liquidity_usd:.2f} USD available)"
                )
            elif tx.from_amount_usd > route.liquidity_usd * self._config.thin_liquidity_ratio:
                report.warnings.append(
                    f"Step {tx.index}: thin liquidity on {route.dex} "
                    f"({tx.from_amount_usd:.2f} of {route.liquidity_usd:.2f} USD)"
                )

        return route.expected_slippage_pct

    def _tier_slippage(self, strategy: Strategy, amount_usd: Decimal) -> Decimal:
        slippage = self._config.top_tier_slippage_pct
        for bound, pct in self._config.slippage_tiers:
            if amount_usd < bound:
                slippage = pct
                break
        return min(slippage, strategy.execution_params.max_slippage_pct)
