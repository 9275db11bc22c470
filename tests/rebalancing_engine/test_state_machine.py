"""
Tests for the operation state machine.

Tests:
1. Allowed and rejected operation transitions
2. Step transitions
3. Cancellation and settlement
4. Audit trail
"""

import pytest

from core.exceptions import StateTransitionError
from rebalancing_engine.state_machine import OperationStateMachine, TransitionGuard
from rebalancing_engine.types import (
    Operation,
    OperationStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)


def make_operation(steps: int = 2, status: OperationStatus = OperationStatus.PENDING) -> Operation:
    return Operation(
        operation_id="op-1",
        strategy_id="strat-1",
        owner_id="user-1",
        status=status,
        transactions=[Transaction(index=i, tx_type=TransactionType.SWAP) for i in range(steps)],
        planned=True,
    )


# =============================================================
# OPERATION TRANSITIONS
# =============================================================

class TestOperationTransitions:

    @pytest.mark.parametrize("from_state,to_state", [
        (OperationStatus.PENDING, OperationStatus.SIMULATING),
        (OperationStatus.PENDING, OperationStatus.FAILED),
        (OperationStatus.WAITING_APPROVAL, OperationStatus.FAILED),
        (OperationStatus.SIMULATING, OperationStatus.WAITING_APPROVAL),
        (OperationStatus.WAITING_APPROVAL, OperationStatus.SIMULATING),
        (OperationStatus.WAITING_APPROVAL, OperationStatus.EXECUTING),
        (OperationStatus.EXECUTING, OperationStatus.PARTIAL),
    ])
    def test_allowed(self, from_state, to_state):
        allowed, _ = TransitionGuard.can_transition_operation(from_state, to_state)

        assert allowed

    @pytest.mark.parametrize("from_state,to_state", [
        (OperationStatus.EXECUTING, OperationStatus.CANCELLED),
        (OperationStatus.SIMULATING, OperationStatus.PENDING),
        (OperationStatus.WAITING_APPROVAL, OperationStatus.COMPLETED),
    ])
    def test_rejected(self, from_state, to_state):
        allowed, reason = TransitionGuard.can_transition_operation(from_state, to_state)

        assert not allowed
        assert reason.startswith("Invalid transition")

    @pytest.mark.parametrize("terminal", [
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
        OperationStatus.PARTIAL,
    ])
    def test_terminal_states_are_final(self, clock, terminal):
        machine = OperationStateMachine(make_operation(status=terminal), clock)

        with pytest.raises(StateTransitionError) as exc_info:
            machine.transition_to(OperationStatus.EXECUTING)

        assert "terminal state" in exc_info.value.message

    def test_transition_records_event_and_timestamps(self, clock):
        operation = make_operation()
        machine = OperationStateMachine(operation, clock)

        event = machine.transition_to(OperationStatus.EXECUTING, "approved", actor="user-1")

        assert operation.status == OperationStatus.EXECUTING
        assert operation.execution_started_at == clock.now()
        assert operation.events == [event]
        assert event.from_status == "pending"
        assert event.to_status == "executing"
        assert event.actor == "user-1"


# =============================================================
# STEP TRANSITIONS
# =============================================================

class TestStepTransitions:

    def test_step_advances(self, clock):
        operation = make_operation()
        machine = OperationStateMachine(operation, clock)

        machine.transition_step(0, TransactionStatus.EXECUTING)
        machine.transition_step(0, TransactionStatus.COMPLETED)

        step = operation.transactions[0]
        assert step.status == TransactionStatus.COMPLETED
        assert step.executed_at == clock.now()
        assert operation.events[-1].transaction_index == 0

    def test_step_cannot_go_backwards(self, clock):
        operation = make_operation()
        machine = OperationStateMachine(operation, clock)
        machine.transition_step(0, TransactionStatus.EXECUTING)
        machine.transition_step(0, TransactionStatus.FAILED)

        with pytest.raises(StateTransitionError):
            machine.transition_step(0, TransactionStatus.EXECUTING)

    def test_pending_step_cannot_complete_directly(self, clock):
        machine = OperationStateMachine(make_operation(), clock)

        with pytest.raises(StateTransitionError):
            machine.transition_step(0, TransactionStatus.COMPLETED)

    def test_unknown_step(self, clock):
        machine = OperationStateMachine(make_operation(), clock)

        with pytest.raises(StateTransitionError):
            machine.transition_step(7, TransactionStatus.EXECUTING)


# =============================================================
# CANCEL AND SETTLE
# =============================================================

class TestCancelAndSettle:

    def test_cancel_marks_pending_steps(self, clock):
        operation = make_operation(steps=3)
        machine = OperationStateMachine(operation, clock)

        machine.mark_cancelled("user cancelled", actor="user-1")

        assert operation.status == OperationStatus.CANCELLED
        assert operation.completed_at == clock.now()
        assert all(tx.status == TransactionStatus.CANCELLED for tx in operation.transactions)

    def _executing(self, clock, outcomes):
        operation = make_operation(steps=len(outcomes))
        machine = OperationStateMachine(operation, clock)
        machine.transition_to(OperationStatus.EXECUTING)
        for index, outcome in enumerate(outcomes):
            machine.transition_step(index, TransactionStatus.EXECUTING)
            machine.transition_step(index, outcome)
        return operation, machine

    def test_settle_all_completed(self, clock):
        operation, machine = self._executing(
            clock, [TransactionStatus.COMPLETED, TransactionStatus.COMPLETED]
        )

        machine.settle()

        assert operation.status == OperationStatus.COMPLETED

    def test_settle_none_completed(self, clock):
        operation, machine = self._executing(
            clock, [TransactionStatus.FAILED, TransactionStatus.FAILED]
        )

        machine.settle()

        assert operation.status == OperationStatus.FAILED

    def test_settle_some_completed(self, clock):
        operation, machine = self._executing(
            clock,
            [TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.COMPLETED],
        )

        event = machine.settle()

        assert operation.status == OperationStatus.PARTIAL
        assert event.reason == "2/3 steps completed"
