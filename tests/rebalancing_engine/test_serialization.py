"""
Tests for domain record serialization.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import pytest
from pydantic import ValidationError as PayloadValidationError

from rebalancing_engine.adapters.base import ChainReceipt
from rebalancing_engine.serialization import from_dict, from_primitive, to_primitive
from rebalancing_engine.types import (
    GasInfo,
    Operation,
    OperationStatus,
    SimulationResult,
    Strategy,
    Transaction,
    TransactionType,
)

from conftest import START


class TestToPrimitive:

    def test_scalars(self):
        assert to_primitive(Decimal("0.10")) == "0.10"
        assert to_primitive(OperationStatus.WAITING_APPROVAL) == "waitingApproval"
        assert to_primitive(START).startswith("2025-01-15T12:00:00")
        assert from_primitive(datetime, to_primitive(START)) == START
        assert to_primitive(None) is None

    def test_nested_strategy(self, make_strategy):
        data = to_primitive(make_strategy())

        assert data["status"] == "active"
        assert data["target_allocations"][1] == {
            "scope": "asset",
            "id": "USDC",
            "name": "USDC",
            "target_pct": "40",
            "min_pct": None,
            "max_pct": None,
        }
        assert data["triggers"]["min_hours_between_rebalances"] == "24"


class TestFromPrimitive:

    def test_strategy_rebuilt(self, make_strategy):
        original = make_strategy()

        rebuilt = from_dict(Strategy, to_primitive(original))

        assert rebuilt == original

    def test_operation_with_plan(self):
        operation = Operation(
            operation_id="op-1",
            strategy_id="strat-1",
            owner_id="user-1",
            status=OperationStatus.EXECUTING,
            transactions=[Transaction(
                index=0,
                tx_type=TransactionType.SWAP,
                from_amount=Decimal("12.345"),
                gas=GasInfo(gas_used=150000, gas_cost_usd=Decimal("13.5")),
            )],
            created_at=START,
        )
        operation.simulation.result = SimulationResult.PARTIAL

        rebuilt = from_dict(Operation, to_primitive(operation))

        assert rebuilt.status == OperationStatus.EXECUTING
        assert rebuilt.transactions[0].from_amount == Decimal("12.345")
        assert rebuilt.transactions[0].gas.gas_cost_usd == Decimal("13.5")
        assert rebuilt.simulation.result == SimulationResult.PARTIAL
        assert rebuilt.created_at == START

    def test_missing_keys_use_defaults(self):
        operation = from_dict(Operation, {
            "operation_id": "op-1",
            "strategy_id": "strat-1",
            "owner_id": "user-1",
            "unknown": "ignored",
        })

        assert operation.status == OperationStatus.PENDING
        assert operation.transactions == []

    def test_generic_targets(self):
        assert from_primitive(Optional[Decimal], None) is None
        assert from_primitive(List[Decimal], ["1", "2.5"]) == [Decimal("1"), Decimal("2.5")]

    def test_boolean_strings_parsed(self):
        receipt = from_dict(ChainReceipt, {"success": "false", "error_code": "REVERTED"})

        assert receipt.success is False
        assert receipt.error_code == "REVERTED"

    def test_malformed_payload_rejected(self):
        with pytest.raises(PayloadValidationError):
            from_dict(ChainReceipt, {"success": "perhaps"})

        with pytest.raises(PayloadValidationError):
            from_dict(Operation, {
                "operation_id": "op-1",
                "strategy_id": "strat-1",
                "owner_id": "user-1",
                "status": "finished",
            })
