"""
Rebalancing Engine ORM Models.

============================================================
PURPOSE
============================================================
Tables for strategies and the operation ledger.

Queryable fields are real columns; the full domain record is
kept in a JSON payload (decimals as strings) so nested plan,
simulation and audit data survive unchanged.

============================================================
CONSTRAINTS
============================================================
- version: optimistic concurrency counter, every UPDATE is
  conditional on it
- uq_operations_active_strategy: partial unique index, at most
  one non-terminal operation per strategy

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Index, Integer, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from database.engine import Base

from .types import ACTIVE_OPERATION_STATUSES


PayloadType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_STATUS_CLAUSE = "status IN ({})".format(
    ", ".join(f"'{status.value}'" for status in sorted(ACTIVE_OPERATION_STATUSES, key=lambda s: s.value))
)


class StrategyModel(Base):
    """
    Rebalancing strategies.

    Mutability: MUTABLE, version-guarded.
    """

    __tablename__ = "rebalancing_strategies"

    strategy_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Strategy identifier"
    )

    owner_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    strategy_type: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="draft | active | paused"
    )

    next_scheduled_rebalance: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Due time of periodic strategies (UTC)"
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    payload: Mapped[Dict[str, Any]] = mapped_column(
        PayloadType,
        nullable=False,
        comment="Full strategy record"
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_rebalancing_strategies_status_type", "status", "strategy_type"),
    )


class OperationModel(Base):
    """
    Rebalancing operations, the audit ledger.

    Mutability: MUTABLE while active, frozen once terminal.
    """

    __tablename__ = "rebalancing_operations"

    operation_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Operation identifier"
    )

    strategy_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Owning strategy (kept after strategy deletion for audit)"
    )

    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="pending | simulating | waitingApproval | executing | terminal"
    )

    initiated_by: Mapped[str] = mapped_column(String(10), nullable=False)

    portfolio_value_usd: Mapped[Decimal] = mapped_column(
        Numeric(24, 8),
        nullable=False,
        default=Decimal("0"),
        comment="Portfolio value when planned"
    )

    total_gas_cost_usd: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(24, 8),
        nullable=True,
        comment="Gas spent, set on settlement"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True, index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    payload: Mapped[Dict[str, Any]] = mapped_column(
        PayloadType,
        nullable=False,
        comment="Full operation record"
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index(
            "uq_operations_active_strategy",
            "strategy_id",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
        ),
        Index("ix_rebalancing_operations_owner_completed", "owner_id", "completed_at"),
    )
