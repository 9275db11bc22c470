"""
Rebalancing Engine - Operation State Machine.

============================================================
PURPOSE
============================================================
Manages operation and transaction lifecycles with strict
state transitions.

OPERATION:

    PENDING ───► SIMULATING ───► WAITING_APPROVAL ───► EXECUTING
       │  │          │   ▲            │    │               │
       │  │          │   └────────────┘    │               ├──► COMPLETED
       │  │          ▼                     │               ├──► PARTIAL
       │  └──────► EXECUTING               │               └──► FAILED
       ▼                                   ▼
    FAILED (planning)                  CANCELLED  (also from PENDING/SIMULATING)

TRANSACTION:

    PENDING ───► EXECUTING ───► COMPLETED | FAILED | CANCELLED
       │
       └───────► CANCELLED (operation cancelled before execution)

INVARIANTS:
- Terminal states are final
- Each transition has a guard
- Every transition is appended to the operation's audit trail

============================================================
"""

import logging
from typing import Dict, Optional, Set, Tuple

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import StateTransitionError

from .types import (
    Operation,
    OperationEvent,
    OperationStatus,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

OPERATION_TRANSITIONS: Dict[OperationStatus, Set[OperationStatus]] = {
    OperationStatus.PENDING: {
        OperationStatus.SIMULATING,
        OperationStatus.WAITING_APPROVAL,
        OperationStatus.EXECUTING,
        OperationStatus.CANCELLED,
        OperationStatus.FAILED,
    },
    OperationStatus.SIMULATING: {
        OperationStatus.WAITING_APPROVAL,
        OperationStatus.EXECUTING,
        OperationStatus.CANCELLED,
        OperationStatus.FAILED,
    },
    OperationStatus.WAITING_APPROVAL: {
        OperationStatus.SIMULATING,
        OperationStatus.EXECUTING,
        OperationStatus.CANCELLED,
        OperationStatus.FAILED,
    },
    OperationStatus.EXECUTING: {
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.PARTIAL,
    },
    # Terminal states - no transitions out
    OperationStatus.COMPLETED: set(),
    OperationStatus.FAILED: set(),
    OperationStatus.CANCELLED: set(),
    OperationStatus.PARTIAL: set(),
}


TRANSACTION_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
    TransactionStatus.PENDING: {
        TransactionStatus.EXECUTING,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.EXECUTING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition_operation(
        from_state: OperationStatus,
        to_state: OperationStatus,
    ) -> Tuple[bool, str]:
        """
        Check if an operation transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in OPERATION_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def can_transition_transaction(
        from_state: TransactionStatus,
        to_state: TransactionStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a transaction transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in TRANSACTION_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


# ============================================================
# OPERATION STATE MACHINE
# ============================================================

class OperationStateMachine:
    """
    State machine for one operation and its steps.

    Mutates the operation in place and appends an audit event for
    every transition. Persisting the result is the caller's job.
    """

    def __init__(self, operation: Operation, clock: Optional[ClockProtocol] = None):
        """
        Initialize state machine.

        Args:
            operation: Operation to manage
            clock: Time source (global clock by default)
        """
        self._operation = operation
        self._clock = clock or ClockFactory.get_clock()

    @property
    def current_state(self) -> OperationStatus:
        return self._operation.status

    @property
    def operation(self) -> Operation:
        return self._operation

    def can_transition_to(self, target_state: OperationStatus) -> Tuple[bool, str]:
        return TransitionGuard.can_transition_operation(self.current_state, target_state)

    def transition_to(
        self,
        target_state: OperationStatus,
        reason: str = "",
        actor: Optional[str] = None,
    ) -> OperationEvent:
        """
        Transition the operation to a new status.

        Args:
            target_state: Target status
            reason: Reason for transition
            actor: Who requested it (None for the engine itself)

        Returns:
            OperationEvent appended to the audit trail

        Raises:
            StateTransitionError: If transition is not allowed
        """
        allowed, guard_reason = self.can_transition_to(target_state)
        if not allowed:
            raise StateTransitionError(
                f"Cannot transition operation {self._operation.operation_id} from "
                f"{self.current_state.value} to {target_state.value}: {guard_reason}",
                from_state=self.current_state.value,
                to_state=target_state.value,
            )

        now = self._clock.now()
        event = OperationEvent(
            timestamp=now,
            from_status=self.current_state.value,
            to_status=target_state.value,
            reason=reason,
            actor=actor,
        )

        self._operation.status = target_state
        self._operation.updated_at = now
        if target_state == OperationStatus.EXECUTING and self._operation.execution_started_at is None:
            self._operation.execution_started_at = now
        if target_state.is_terminal():
            self._operation.completed_at = now

        self._operation.events.append(event)

        logger.info(
            f"Operation {self._operation.operation_id}: "
            f"{event.from_status} -> {event.to_status} ({reason})"
        )

        return event

    def transition_step(
        self,
        index: int,
        target_state: TransactionStatus,
        reason: str = "",
    ) -> OperationEvent:
        """
        Transition one transaction of the plan.

        Raises:
            StateTransitionError: If transition is not allowed
        """
        transaction = self._step(index)

        allowed, guard_reason = TransitionGuard.can_transition_transaction(
            transaction.status,
            target_state,
        )
        if not allowed:
            raise StateTransitionError(
                f"Cannot transition step {index} of operation "
                f"{self._operation.operation_id}: {guard_reason}",
                from_state=transaction.status.value,
                to_state=target_state.value,
            )

        now = self._clock.now()
        event = OperationEvent(
            timestamp=now,
            from_status=transaction.status.value,
            to_status=target_state.value,
            reason=reason,
            transaction_index=index,
        )

        transaction.status = target_state
        if target_state.is_terminal() and target_state != TransactionStatus.CANCELLED:
            transaction.executed_at = now

        self._operation.updated_at = now
        self._operation.events.append(event)

        logger.debug(
            f"Operation {self._operation.operation_id} step {index}: "
            f"{event.from_status} -> {event.to_status}"
        )

        return event

    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------

    def mark_cancelled(self, reason: str, actor: Optional[str] = None) -> OperationEvent:
        """Cancel the operation and every step not yet started."""
        event = self.transition_to(OperationStatus.CANCELLED, reason, actor)
        for transaction in self._operation.transactions:
            if transaction.status == TransactionStatus.PENDING:
                self.transition_step(transaction.index, TransactionStatus.CANCELLED, reason)
        return event

    def settle(self) -> OperationEvent:
        """
        Move an executing operation to its terminal status.

        all steps completed               -> COMPLETED
        >=1 failed, 0 completed           -> FAILED
        >=1 failed, >=1 completed         -> PARTIAL
        """
        total = len(self._operation.transactions)
        completed = self._operation.completed_steps

        if completed == total:
            target = OperationStatus.COMPLETED
        elif completed == 0:
            target = OperationStatus.FAILED
        else:
            target = OperationStatus.PARTIAL

        return self.transition_to(target, f"{completed}/{total} steps completed")

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _step(self, index: int) -> Transaction:
        for transaction in self._operation.transactions:
            if transaction.index == index:
                return transaction
        raise StateTransitionError(
            f"Operation {self._operation.operation_id} has no step {index}"
        )
