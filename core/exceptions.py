"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the rebalancing engine.

- Provides clear exception hierarchy
- Enables specific error handling at the API boundary
- Supports error categorization for alerting
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
RebalancingException (base)
├── ConfigurationError
├── ValidationError
├── NotFoundError
├── AuthorizationError
├── ConflictError
│   └── ConcurrencyError
├── StateTransitionError
├── PlanningError
├── SimulationError
├── ChainExecutionError
└── NotificationError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class RebalancingException(Exception):
    """
    Base exception for all rebalancing engine errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - classification: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE
    code: str = "REBALANCING_ERROR"

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    @property
    def requires_immediate_action(self) -> bool:
        """Check if error requires immediate action."""
        return self.severity in (Severity.HIGH, Severity.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if ctx_str:
            line += f" | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(RebalancingException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


# ============================================================
# REQUEST ERRORS
# ============================================================

class ValidationError(RebalancingException):
    """
    Input rejected by validation.

    Carries every violation found, not just the first one.
    """

    default_severity = Severity.LOW
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        field: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        self.errors = list(errors) if errors else [message]
        context["errors"] = self.errors
        if field:
            context["field"] = field

        super().__init__(message, context=context, **kwargs)


class NotFoundError(RebalancingException):
    """Requested entity does not exist."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str, **kwargs):
        context = kwargs.pop("context", {})
        context["entity"] = entity
        context["entity_id"] = entity_id

        super().__init__(f"{entity} {entity_id} not found", context=context, **kwargs)


class AuthorizationError(RebalancingException):
    """Actor is not allowed to perform the action."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "FORBIDDEN"

    def __init__(
        self,
        message: str,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if actor_id:
            context["actor_id"] = actor_id
        if action:
            context["action"] = action

        super().__init__(message, context=context, **kwargs)


class ConflictError(RebalancingException):
    """Action conflicts with the current state of an entity."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.RECOVERABLE
    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if entity_id:
            context["entity_id"] = entity_id

        super().__init__(message, context=context, **kwargs)


class ConcurrencyError(ConflictError):
    """
    Optimistic write lost against a concurrent writer.

    Raised when the stored version no longer matches the version read.
    """

    default_classification = ErrorClassification.TRANSIENT
    code = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: int,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["entity"] = entity
        context["expected_version"] = expected_version

        super().__init__(
            f"{entity} {entity_id} was modified concurrently "
            f"(expected version {expected_version})",
            entity_id=entity_id,
            context=context,
            **kwargs,
        )


class StateTransitionError(RebalancingException):
    """Invalid lifecycle transition was requested."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state

        super().__init__(message, context=context, **kwargs)


# ============================================================
# PIPELINE ERRORS
# ============================================================

class PlanningError(RebalancingException):
    """A transaction plan could not be built."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT
    code = "PLANNING_ERROR"


class SimulationError(RebalancingException):
    """The dry run of a plan could not be performed."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT
    code = "SIMULATION_ERROR"


class MarketDataError(RebalancingException):
    """Holdings or route quotes could not be fetched."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT
    code = "MARKET_DATA_ERROR"


class ChainExecutionError(RebalancingException):
    """
    The chain executor failed to submit or confirm a transaction.

    The error code is reported by the executor when available.
    """

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT
    code = "EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        tx_ref: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if error_code:
            self.code = error_code
            context["error_code"] = error_code
        if tx_ref:
            context["tx_ref"] = tx_ref

        super().__init__(message, context=context, **kwargs)


class NotificationError(RebalancingException):
    """A notification could not be delivered."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.TRANSIENT
    code = "NOTIFICATION_ERROR"


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "ErrorClassification",
    "RebalancingException",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "ConcurrencyError",
    "StateTransitionError",
    "PlanningError",
    "SimulationError",
    "MarketDataError",
    "ChainExecutionError",
    "NotificationError",
]
