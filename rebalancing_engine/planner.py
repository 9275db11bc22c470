"""
Rebalancing Engine - Plan Builder.

============================================================
PURPOSE
============================================================
Turns drift into an ordered transaction plan.

ALGORITHM:
1. USD delta per entry: target_pct * portfolio value - current
   (entries without a target are drained completely)
2. Decreases and increases sorted by USD amount, descending
3. Total moved capped at max_rebalance_pct of portfolio value
4. Decreases greedily matched to increases into legs
5. Each leg expands into 1..3 steps by scope:
       protocol source   -> withdrawal
       chain involved    -> transfer
       asset -> asset    -> swap (routed)
       protocol target   -> deposit
   later steps of a leg depend on the earlier ones
6. Legs stop once max_transactions would be exceeded;
   a leg is never split
7. Steps ordered so producers precede consumers

ROUTE SELECTION:
Candidates above max_slippage_pct are discarded. Remaining
routes are ranked by lowest expected gas cost, or by highest
net value after gas when optimization_target is
maximizeReturns. Custom route priority breaks ties. A swap
without a qualifying route keeps route=None; the simulator
reports it.

Amounts are USD notional: from_amount == from_amount_usd.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from core.exceptions import PlanningError

from .adapters.base import MarketDataProvider, RouteRequest
from .types import (
    HUNDRED,
    ZERO,
    AllocationScope,
    AllocationSnapshot,
    OptimizationTarget,
    Route,
    SlippageInfo,
    Strategy,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)


DUST_USD = Decimal("0.01")


# ============================================================
# PLAN TYPES
# ============================================================

@dataclass
class PlanLeg:
    """Value moved from one allocation entry to another."""

    source: AllocationSnapshot
    destination: AllocationSnapshot
    amount_usd: Decimal


@dataclass
class TransactionPlan:
    """Output of the plan builder."""

    transactions: List[Transaction] = field(default_factory=list)
    target_allocation: List[AllocationSnapshot] = field(default_factory=list)
    portfolio_value_usd: Decimal = ZERO
    moved_usd: Decimal = ZERO

    capped: bool = False
    """Some drift was left because of max_rebalance_pct."""

    truncated: bool = False
    """Some legs were dropped because of max_transactions."""


# ============================================================
# PLAN BUILDER
# ============================================================

class PlanBuilder:
    """
    Builds transaction plans for operations.

    Stateless apart from the injected market data provider.
    """

    def __init__(self, market_data: MarketDataProvider):
        """
        Initialize plan builder.

        Args:
            market_data: Route quote source
        """
        self._market_data = market_data

    async def build(
        self,
        strategy: Strategy,
        current: List[AllocationSnapshot],
    ) -> TransactionPlan:
        """
        Build the plan that moves ``current`` towards the targets.

        Args:
            strategy: Strategy with targets and limits
            current: Current allocation snapshot

        Returns:
            TransactionPlan

        Raises:
            PlanningError: portfolio without value
        """
        total = sum((a.amount_usd for a in current), ZERO)
        if total <= ZERO:
            raise PlanningError(
                f"Portfolio of strategy {strategy.strategy_id} has no value to rebalance",
                context={"strategy_id": strategy.strategy_id},
            )

        target_snapshot = [
            AllocationSnapshot(
                scope=t.scope,
                id=t.id,
                name=t.name,
                pct=t.target_pct,
                amount_usd=total * t.target_pct / HUNDRED,
            )
            for t in strategy.target_allocations
        ]

        decreases, increases = self._compute_changes(current, target_snapshot)
        budget = total * strategy.execution_params.max_rebalance_pct / HUNDRED
        legs, capped = self._match_legs(decreases, increases, budget)

        plan = TransactionPlan(
            target_allocation=target_snapshot,
            portfolio_value_usd=total,
            capped=capped,
        )

        max_steps = strategy.advanced.max_transactions
        for leg in legs:
            steps = self._expand_leg(leg)
            if len(plan.transactions) + len(steps) > max_steps:
                plan.truncated = True
                logger.info(
                    f"Strategy {strategy.strategy_id}: plan truncated at "
                    f"{len(plan.transactions)} steps (max {max_steps})"
                )
                break

            offset = len(plan.transactions)
            for step in steps:
                step.index += offset
                if step.depends_on is not None:
                    step.depends_on += offset
                if step.tx_type == TransactionType.SWAP:
                    await self._attach_route(strategy, step)
                plan.transactions.append(step)

            plan.moved_usd += leg.amount_usd

        plan.transactions = order_by_dependencies(plan.transactions)

        logger.info(
            f"Strategy {strategy.strategy_id}: planned {len(plan.transactions)} steps "
            f"moving {plan.moved_usd:.2f} USD of {total:.2f} USD"
        )
        return plan

    # --------------------------------------------------------
    # CHANGES AND LEGS
    # --------------------------------------------------------

    @staticmethod
    def _compute_changes(
        current: List[AllocationSnapshot],
        targets: List[AllocationSnapshot],
    ) -> Tuple[List[Tuple[AllocationSnapshot, Decimal]], List[Tuple[AllocationSnapshot, Decimal]]]:
        target_by_key = {t.key: t for t in targets}
        current_by_key = {c.key: c for c in current}

        decreases: List[Tuple[AllocationSnapshot, Decimal]] = []
        increases: List[Tuple[AllocationSnapshot, Decimal]] = []

        for entry in current:
            target = target_by_key.get(entry.key)
            desired = target.amount_usd if target else ZERO
            delta = desired - entry.amount_usd
            if delta <= -DUST_USD:
                decreases.append((entry, -delta))
            elif delta >= DUST_USD:
                increases.append((entry, delta))

        for target in targets:
            if target.key not in current_by_key and target.amount_usd >= DUST_USD:
                increases.append((target, target.amount_usd))

        decreases.sort(key=lambda item: (-item[1], item[0].key))
        increases.sort(key=lambda item: (-item[1], item[0].key))
        return decreases, increases

    @staticmethod
    def _match_legs(
        decreases: List[Tuple[AllocationSnapshot, Decimal]],
        increases: List[Tuple[AllocationSnapshot, Decimal]],
        budget: Decimal,
    ) -> Tuple[List[PlanLeg], bool]:
        legs: List[PlanLeg] = []
        dec_left = [amount for _, amount in decreases]
        inc_left = [amount for _, amount in increases]
        remaining = budget
        i = j = 0

        while i < len(decreases) and j < len(increases):
            amount = min(dec_left[i], inc_left[j], remaining)
            if amount < DUST_USD:
                break

            legs.append(PlanLeg(
                source=decreases[i][0],
                destination=increases[j][0],
                amount_usd=amount,
            ))

            dec_left[i] -= amount
            inc_left[j] -= amount
            remaining -= amount

            if dec_left[i] < DUST_USD:
                i += 1
            if inc_left[j] < DUST_USD:
                j += 1

        unmatched = sum(dec_left[i:], ZERO) if i < len(dec_left) else ZERO
        capped = remaining < DUST_USD and unmatched >= DUST_USD
        return legs, capped

    @staticmethod
    def _expand_leg(leg: PlanLeg) -> List[Transaction]:
        src, dst, amount = leg.source, leg.destination, leg.amount_usd
        steps: List[Transaction] = []

        def add(tx_type: TransactionType, **kwargs) -> None:
            steps.append(Transaction(
                index=len(steps),
                tx_type=tx_type,
                from_amount=amount,
                from_amount_usd=amount,
                to_amount=amount,
                to_amount_usd=amount,
                depends_on=len(steps) - 1 if steps else None,
                **kwargs,
            ))

        if src.scope == AllocationScope.PROTOCOL:
            add(
                TransactionType.WITHDRAWAL,
                from_protocol=src.id,
                to_asset=dst.id if dst.scope == AllocationScope.ASSET else None,
            )

        if AllocationScope.CHAIN in (src.scope, dst.scope):
            add(
                TransactionType.TRANSFER,
                from_chain=src.id if src.scope == AllocationScope.CHAIN else None,
                to_chain=dst.id if dst.scope == AllocationScope.CHAIN else None,
            )

        if src.scope == AllocationScope.ASSET and dst.scope == AllocationScope.ASSET:
            add(TransactionType.SWAP, from_asset=src.id, to_asset=dst.id)

        if dst.scope == AllocationScope.PROTOCOL:
            add(
                TransactionType.DEPOSIT,
                from_asset=src.id if src.scope == AllocationScope.ASSET else None,
                to_protocol=dst.id,
            )

        steps[0].source_key = src.key
        steps[-1].destination_key = dst.key
        return steps

    # --------------------------------------------------------
    # ROUTING
    # --------------------------------------------------------

    async def _attach_route(self, strategy: Strategy, step: Transaction) -> None:
        params = strategy.execution_params
        request = RouteRequest(
            from_asset=step.from_asset or "",
            to_asset=step.to_asset or "",
            amount_usd=step.from_amount_usd,
            from_chain=step.from_chain,
            to_chain=step.to_chain,
            max_slippage_pct=params.max_slippage_pct,
        )

        try:
            candidates = await self._market_data.get_routes(request)
        except Exception as e:
            logger.warning(
                f"Route lookup failed for {request.from_asset}->{request.to_asset}: {e}"
            )
            candidates = []

        route = select_route(candidates, strategy)
        if route is None:
            logger.info(
                f"No route within {params.max_slippage_pct}% slippage for "
                f"{request.from_asset}->{request.to_asset}"
            )
            return

        step.route = route
        step.slippage = SlippageInfo(expected=route.expected_slippage_pct)
        step.to_amount_usd = route.expected_output_usd
        step.to_amount = route.expected_output_usd


# ============================================================
# ROUTE SELECTION
# ============================================================

def select_route(candidates: List[Route], strategy: Strategy) -> Optional[Route]:
    """
    Pick the best route for a strategy.

    Args:
        candidates: Quoted routes
        strategy: Strategy with slippage limit and preferences

    Returns:
        Selected route, or None when none qualifies
    """
    max_slippage = strategy.execution_params.max_slippage_pct
    qualifying = [r for r in candidates if r.expected_slippage_pct <= max_slippage]
    if not qualifying:
        return None

    priorities: Dict[str, int] = {
        route.dex: route.priority for route in strategy.advanced.custom_routes
    }
    unranked = max(priorities.values(), default=0) + 1

    def priority(route: Route) -> int:
        return priorities.get(route.dex, unranked)

    if strategy.advanced.optimization_target == OptimizationTarget.MAXIMIZE_RETURNS:
        def rank(route: Route):
            return (-route.expected_net_value_usd, priority(route), route.expected_gas_cost_usd, route.route_id)
    else:
        def rank(route: Route):
            return (route.expected_gas_cost_usd, priority(route), -route.expected_net_value_usd, route.route_id)

    return min(qualifying, key=rank)


# ============================================================
# DEPENDENCY ORDERING
# ============================================================

def order_by_dependencies(transactions: List[Transaction]) -> List[Transaction]:
    """
    Order steps so every producer precedes its consumer.

    Stable: independent steps keep their relative order.
    Indexes and depends_on are rewritten to the new positions.

    Raises:
        PlanningError: unknown dependency or dependency cycle
    """
    by_index = {tx.index: tx for tx in transactions}
    if len(by_index) != len(transactions):
        raise PlanningError("Plan contains duplicate step indexes")

    for tx in transactions:
        if tx.depends_on is not None and tx.depends_on not in by_index:
            raise PlanningError(
                f"Step {tx.index} depends on unknown step {tx.depends_on}"
            )

    ordered: List[Transaction] = []
    placed = set()
    pending = list(transactions)

    while pending:
        progress = False
        for tx in list(pending):
            if tx.depends_on is None or tx.depends_on in placed:
                ordered.append(tx)
                placed.add(tx.index)
                pending.remove(tx)
                progress = True
                break
        if not progress:
            raise PlanningError(
                "Plan contains a dependency cycle",
                context={"steps": [tx.index for tx in pending]},
            )

    new_index = {tx.index: position for position, tx in enumerate(ordered)}
    for tx in ordered:
        if tx.depends_on is not None:
            tx.depends_on = new_index[tx.depends_on]
        tx.index = new_index[tx.index]

    return ordered
