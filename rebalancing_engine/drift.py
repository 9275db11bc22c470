"""
Rebalancing Engine - Drift Evaluator.

============================================================
PURPOSE
============================================================
Compares current allocations against a strategy's targets.

PURE FUNCTIONS:
- No I/O, no clock, no mutation of inputs
- Identical inputs always give identical outputs

A target entry drifts when:
1. No current entry matches it (by scope + id)
2. |current.pct - target_pct| > deviation_threshold_pct
3. current.pct falls outside [min_pct, max_pct] where defined

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .types import ZERO, AllocationSnapshot, Strategy, TargetAllocation


# ============================================================
# DRIFT REPORT
# ============================================================

@dataclass(frozen=True)
class EntryDrift:
    """Drift of one target entry."""

    key: str
    target_pct: Decimal
    current_pct: Optional[Decimal]
    """None when no current entry matched."""

    deviation_pct: Decimal
    missing: bool = False
    out_of_bounds: bool = False
    exceeds_threshold: bool = False

    @property
    def triggers(self) -> bool:
        return self.missing or self.out_of_bounds or self.exceeds_threshold


@dataclass(frozen=True)
class DriftReport:
    """Drift of every target entry of a strategy."""

    strategy_id: str
    threshold_pct: Decimal
    entries: List[EntryDrift] = field(default_factory=list)
    snapshot_missing: bool = False

    @property
    def needs_rebalancing(self) -> bool:
        return self.snapshot_missing or any(entry.triggers for entry in self.entries)

    @property
    def max_deviation_pct(self) -> Decimal:
        return max((entry.deviation_pct for entry in self.entries), default=ZERO)

    def summary(self) -> str:
        """One-line description for logs."""
        if self.snapshot_missing:
            return "no current allocation data"
        triggered = [entry.key for entry in self.entries if entry.triggers]
        if not triggered:
            return f"within threshold (max deviation {self.max_deviation_pct}%)"
        return f"drift on {', '.join(triggered)} (max deviation {self.max_deviation_pct}%)"


# ============================================================
# EVALUATION
# ============================================================

def _evaluate_entry(
    target: TargetAllocation,
    current: Optional[AllocationSnapshot],
    threshold: Decimal,
) -> EntryDrift:
    if current is None:
        return EntryDrift(
            key=target.key,
            target_pct=target.target_pct,
            current_pct=None,
            deviation_pct=target.target_pct,
            missing=True,
        )

    deviation = abs(current.pct - target.target_pct)
    below = target.min_pct is not None and current.pct < target.min_pct
    above = target.max_pct is not None and current.pct > target.max_pct

    return EntryDrift(
        key=target.key,
        target_pct=target.target_pct,
        current_pct=current.pct,
        deviation_pct=deviation,
        exceeds_threshold=deviation > threshold,
        out_of_bounds=below or above,
    )


def compute_drift(
    strategy: Strategy,
    current_allocations: Optional[Sequence[AllocationSnapshot]],
) -> DriftReport:
    """
    Compute per-entry drift of a strategy.

    Args:
        strategy: Strategy with target allocations
        current_allocations: Current snapshot; None when unknown

    Returns:
        DriftReport
    """
    threshold = strategy.triggers.deviation_threshold_pct

    if current_allocations is None:
        return DriftReport(
            strategy_id=strategy.strategy_id,
            threshold_pct=threshold,
            snapshot_missing=True,
        )

    by_key: Dict[str, AllocationSnapshot] = {a.key: a for a in current_allocations}

    entries = [
        _evaluate_entry(target, by_key.get(target.key), threshold)
        for target in strategy.target_allocations
    ]

    return DriftReport(
        strategy_id=strategy.strategy_id,
        threshold_pct=threshold,
        entries=entries,
    )


def needs_rebalancing(
    strategy: Strategy,
    current_allocations: Optional[Sequence[AllocationSnapshot]],
) -> bool:
    """
    Check whether a strategy's portfolio has drifted.

    Unknown current allocations (None) count as drift.

    Args:
        strategy: Strategy with target allocations
        current_allocations: Current snapshot

    Returns:
        True when any target entry drifts
    """
    if current_allocations is None:
        return True

    threshold = strategy.triggers.deviation_threshold_pct
    by_key = {a.key: a for a in current_allocations}

    for target in strategy.target_allocations:
        if _evaluate_entry(target, by_key.get(target.key), threshold).triggers:
            return True

    return False
