"""
Rebalancing Engine - Approval Gate.

============================================================
PURPOSE
============================================================
Decides whether a plan needs human sign-off and records the
human decisions.

GATE RULE:
    waitingApproval  iff  manual_approval_required
                          or (simulated and result != success)

The manual flag is evaluated independently of the simulation:
a clean simulation never removes the human gate.

DECISIONS:
- process_approval: approve -> executing, reject -> cancelled
- apply_override: privileged replacement or force-through of a
  plan; the original plan is preserved for audit and the
  executor still runs every step one by one

============================================================
"""

import copy
import logging
from typing import List, Optional, Sequence

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import (
    AuthorizationError,
    PlanningError,
    StateTransitionError,
    ValidationError,
)

from .config import ApprovalConfig
from .planner import order_by_dependencies
from .state_machine import OperationStateMachine
from .types import (
    Actor,
    Operation,
    OperationStatus,
    SimulationReport,
    SimulationResult,
    Strategy,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


def check_access(
    owner_id: str,
    actor: Optional[Actor],
    override_roles: Sequence[str],
    action: str,
) -> None:
    """
    Allow owners and privileged roles; None means an internal caller.

    Raises:
        AuthorizationError: actor may not act on the owner's records
    """
    if actor is None or actor.user_id == owner_id or actor.role in override_roles:
        return
    raise AuthorizationError(
        f"User {actor.user_id} cannot {action} records of {owner_id}",
        actor_id=actor.user_id,
        action=action,
    )


class ApprovalGate:
    """
    Human approval gate for operations.

    Mutates the operation passed in; persisting is the caller's job.
    """

    def __init__(
        self,
        config: Optional[ApprovalConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or ApprovalConfig()
        self._clock = clock or ClockFactory.get_clock()

    # --------------------------------------------------------
    # GATE
    # --------------------------------------------------------

    @staticmethod
    def requires_approval(strategy: Strategy, simulation: SimulationReport) -> bool:
        """
        Check whether a plan must wait for a human.

        A skipped simulation leaves only the manual flag.
        """
        if strategy.triggers.manual_approval_required:
            return True
        return simulation.performed and simulation.result != SimulationResult.SUCCESS

    def gate(self, operation: Operation, strategy: Strategy) -> OperationStatus:
        """
        Route an operation after planning/simulation.

        Returns:
            The new status: WAITING_APPROVAL or EXECUTING
        """
        machine = OperationStateMachine(operation, self._clock)
        required = self.requires_approval(strategy, operation.simulation)
        operation.approval.required = required

        if required:
            reasons = []
            if strategy.triggers.manual_approval_required:
                reasons.append("manual approval required")
            if operation.simulation.performed and operation.simulation.result != SimulationResult.SUCCESS:
                reasons.append(f"simulation {operation.simulation.result.value}")
            machine.transition_to(OperationStatus.WAITING_APPROVAL, ", ".join(reasons))
        else:
            machine.transition_to(OperationStatus.EXECUTING, "no approval required")

        return operation.status

    # --------------------------------------------------------
    # DECISIONS
    # --------------------------------------------------------

    def process_approval(
        self,
        operation: Operation,
        approver: Actor,
        approved: bool,
        reason: Optional[str] = None,
    ) -> None:
        """
        Record a human decision on a waiting operation.

        Args:
            operation: Operation in WAITING_APPROVAL
            approver: Deciding user
            approved: Approve or reject
            reason: Free text, stored on rejection

        Raises:
            AuthorizationError: approver is neither owner nor privileged
            StateTransitionError: operation is not waiting for approval
        """
        self._check_can_decide(operation, approver)

        if operation.status != OperationStatus.WAITING_APPROVAL or not operation.approval.required:
            raise StateTransitionError(
                f"Operation {operation.operation_id} is not waiting for approval",
                from_state=operation.status.value,
            )

        machine = OperationStateMachine(operation, self._clock)
        now = self._clock.now()

        if approved:
            operation.approval.approved = True
            operation.approval.approved_by = approver.user_id
            operation.approval.approved_at = now
            machine.transition_to(
                OperationStatus.EXECUTING,
                reason or "approved",
                actor=approver.user_id,
            )
        else:
            operation.approval.approved = False
            operation.approval.rejected_by = approver.user_id
            operation.approval.rejected_at = now
            operation.approval.rejection_reason = reason or "rejected"
            machine.mark_cancelled(f"rejected: {reason or 'no reason given'}", actor=approver.user_id)

        logger.info(
            f"Operation {operation.operation_id} "
            f"{'approved' if approved else 'rejected'} by {approver.user_id}"
        )

    def apply_override(
        self,
        operation: Operation,
        actor: Actor,
        reason: str,
        new_plan: Optional[List[Transaction]] = None,
        force: bool = False,
    ) -> None:
        """
        Replace and/or force through a plan awaiting approval.

        Args:
            operation: Operation in WAITING_APPROVAL
            actor: Privileged user
            reason: Mandatory justification
            new_plan: Replacement steps (pending, unsubmitted)
            force: Approve and start execution immediately

        Raises:
            AuthorizationError: actor lacks an override role
            ValidationError: missing reason or unusable plan
            StateTransitionError: operation is past the gate
        """
        if actor.role not in self._config.override_roles:
            raise AuthorizationError(
                f"Role '{actor.role}' cannot override plans",
                actor_id=actor.user_id,
                action="override",
            )
        if not reason or not reason.strip():
            raise ValidationError("Override reason is required", field="reason")
        if operation.status != OperationStatus.WAITING_APPROVAL:
            raise StateTransitionError(
                f"Operation {operation.operation_id} cannot be overridden in "
                f"status {operation.status.value}",
                from_state=operation.status.value,
            )
        if new_plan is None and not force:
            raise ValidationError("Override needs a new plan or force", field="new_plan")

        now = self._clock.now()
        override = operation.manual_override

        if new_plan is not None:
            replacement = self._prepare_plan(new_plan)
            if override.original_plan is None:
                override.original_plan = copy.deepcopy(operation.transactions)
            operation.transactions = replacement

        override.overridden = True
        override.by = actor.user_id
        override.at = now
        override.reason = reason

        if force:
            operation.approval.approved = True
            operation.approval.approved_by = actor.user_id
            operation.approval.approved_at = now
            OperationStateMachine(operation, self._clock).transition_to(
                OperationStatus.EXECUTING,
                f"override: {reason}",
                actor=actor.user_id,
            )

        logger.warning(
            f"Operation {operation.operation_id} overridden by {actor.user_id} "
            f"(new_plan={new_plan is not None}, force={force}): {reason}"
        )

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _check_can_decide(self, operation: Operation, actor: Actor) -> None:
        check_access(operation.owner_id, actor, self._config.override_roles, "approve")

    @staticmethod
    def _prepare_plan(new_plan: List[Transaction]) -> List[Transaction]:
        if not new_plan:
            raise ValidationError("Replacement plan is empty", field="new_plan")

        for tx in new_plan:
            if tx.status != TransactionStatus.PENDING or tx.tx_ref:
                raise ValidationError(
                    f"Replacement step {tx.index} must be pending and unsubmitted",
                    field="new_plan",
                )

        try:
            return order_by_dependencies(copy.deepcopy(new_plan))
        except PlanningError as e:
            raise ValidationError(e.message, field="new_plan", cause=e)
