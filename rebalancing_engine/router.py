"""
FastAPI Router for Rebalancing Endpoints.

Provides REST API for the rebalancing workflow:
- Strategy CRUD, activate, pause
- Operation planning, simulation, execution and decisions
- Threshold scan trigger
- Performance statistics

The caller's identity comes from the X-User-Id / X-User-Role
headers set by the authentication layer in front of the service.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse

from core.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    MarketDataError,
    NotFoundError,
    RebalancingException,
    StateTransitionError,
    ValidationError,
)

from .runtime import RebalancingEngine
from .schemas import (
    DecisionRequest,
    OperationListResponse,
    OverrideRequest,
    PerformanceResponse,
    PlanRequest,
    ScanResultResponse,
    StrategyCreate,
    StrategyListResponse,
    StrategyUpdate,
)
from .serialization import to_primitive
from .types import Actor, OperationStatus


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rebalancing", tags=["Rebalancing"])


# =============================================================
# HELPER: Dependencies
# =============================================================

def get_engine(request: Request) -> RebalancingEngine:
    return request.app.state.rebalancing_engine


def get_actor(
    x_user_id: str = Header(..., description="Authenticated user id"),
    x_user_role: str = Header("user", description="Role of the user"),
) -> Actor:
    return Actor(user_id=x_user_id, role=x_user_role)


# =============================================================
# HELPER: Error mapping
# =============================================================

STATUS_FOR_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StateTransitionError, status.HTTP_409_CONFLICT),
    (MarketDataError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(error: RebalancingException) -> int:
    for error_cls, code in STATUS_FOR_ERROR:
        if isinstance(error, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def rebalancing_exception_handler(request: Request, exc: RebalancingException) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(exc.to_log_format())
    return JSONResponse(
        status_code=code,
        content={"code": exc.code, "message": exc.message, "details": to_primitive(exc.context)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RebalancingException, rebalancing_exception_handler)


# =============================================================
# STRATEGY ENDPOINTS
# =============================================================

@router.post("/strategies", status_code=status.HTTP_201_CREATED)
async def create_strategy(
    body: StrategyCreate,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """
    Create a strategy as draft.

    Returns 400 with every violation when the strategy is invalid;
    nothing is stored in that case.
    """
    strategy = body.to_strategy(owner_id=body.owner_id or actor.user_id)
    created = await engine.store.create(strategy, actor)
    return to_primitive(created)


@router.get("/strategies", response_model=StrategyListResponse)
async def list_strategies(
    owner_id: Optional[str] = Query(None, description="Owner; defaults to the caller"),
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    strategies = await engine.store.list_for_owner(owner_id or actor.user_id, actor)
    return StrategyListResponse(
        strategies=[to_primitive(s) for s in strategies],
        total=len(strategies),
    )


@router.get("/strategies/{strategy_id}")
async def get_strategy(
    strategy_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    return to_primitive(await engine.store.get(strategy_id, actor))


@router.put("/strategies/{strategy_id}")
async def update_strategy(
    strategy_id: str,
    body: StrategyUpdate,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """
    Replace a strategy's editable fields.

    The write is conditional on the version in the body; a stale
    version returns 409.
    """
    strategy = body.to_strategy(owner_id=body.owner_id or actor.user_id, strategy_id=strategy_id)
    return to_primitive(await engine.store.save(strategy, actor))


@router.delete("/strategies/{strategy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_strategy(
    strategy_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """Delete a strategy; 409 while one of its operations is active."""
    await engine.store.delete(strategy_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/strategies/{strategy_id}/activate")
async def activate_strategy(
    strategy_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    return to_primitive(await engine.store.activate(strategy_id, actor))


@router.post("/strategies/{strategy_id}/pause")
async def pause_strategy(
    strategy_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    return to_primitive(await engine.store.pause(strategy_id, actor))


# =============================================================
# OPERATION ENDPOINTS
# =============================================================

@router.get("/operations", response_model=OperationListResponse)
async def list_operations(
    strategy_id: Optional[str] = Query(None),
    status_filter: Optional[List[OperationStatus]] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """The caller's operations, newest first."""
    operations = await engine.service.list_operations(
        actor,
        strategy_id=strategy_id,
        statuses=status_filter,
        limit=limit,
        offset=offset,
    )
    return OperationListResponse(
        operations=[to_primitive(op) for op in operations],
        limit=limit,
        offset=offset,
    )


@router.get("/operations/{operation_id}")
async def get_operation(
    operation_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    return to_primitive(await engine.service.get_operation(operation_id, actor))


@router.post("/operations", status_code=status.HTTP_201_CREATED)
async def create_operation(
    body: PlanRequest,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """
    Create and plan an operation now.

    The planned operation stays pending until simulate or execute
    is called. 409 when the strategy already has an active operation.
    """
    operation = await engine.service.create_plan(
        body.strategy_id,
        actor,
        manual_allocation=body.allocation(),
    )
    return to_primitive(operation)


@router.post("/operations/{operation_id}/simulate")
async def simulate_operation(
    operation_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    return to_primitive(await engine.service.simulate(operation_id, actor))


@router.post("/operations/{operation_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_operation(
    operation_id: str,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """Run the rest of the pipeline in the background. Never skips approval."""
    return to_primitive(await engine.service.execute(operation_id, actor))


@router.post("/operations/{operation_id}/approve")
async def approve_operation(
    operation_id: str,
    body: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    reason = body.reason if body else None
    return to_primitive(await engine.service.approve(operation_id, actor, reason))


@router.post("/operations/{operation_id}/reject")
async def reject_operation(
    operation_id: str,
    body: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    reason = body.reason if body else None
    return to_primitive(await engine.service.reject(operation_id, actor, reason))


@router.post("/operations/{operation_id}/cancel")
async def cancel_operation(
    operation_id: str,
    body: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    reason = body.reason if body else None
    return to_primitive(await engine.service.cancel(operation_id, actor, reason))


@router.post("/operations/{operation_id}/override")
async def override_operation(
    operation_id: str,
    body: OverrideRequest,
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """
    Replace and/or force through the plan of a waiting operation.

    Restricted to override roles; a reason is mandatory.
    """
    operation = await engine.service.override(
        operation_id,
        actor,
        body.reason,
        new_plan=body.plan(),
        force=body.force,
    )
    return to_primitive(operation)


# =============================================================
# SCAN AND PERFORMANCE
# =============================================================

@router.post("/check-thresholds", response_model=ScanResultResponse)
async def check_thresholds(
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    """Run one scheduler cycle now."""
    logger.info(f"Threshold scan requested by {actor.user_id}")
    result = await engine.scheduler.run_cycle()
    return ScanResultResponse(**result.to_dict())


@router.get("/performance", response_model=PerformanceResponse)
async def get_performance(
    days: int = Query(30, description="Window in days"),
    actor: Actor = Depends(get_actor),
    engine: RebalancingEngine = Depends(get_engine),
):
    stats = await engine.performance.calculate_performance_stats(actor.user_id, days)
    return PerformanceResponse(**stats.to_dict())
