"""
Payment status check endpoints.
"""
import time
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request, status
from payment_check.api.deps import get_run_manager
from payment_check.models.schemas.base import ResponseBase
from payment_check.models.schemas.payments import (
    CheckStatusRequest,
    CheckStatusResultRead,
    CheckStatusRunRead,
    CheckStatusStarted,
    ProgressRead,
)
from payment_check.services.run_manager import RunManager
from payment_check.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/check-status",
    response_model=CheckStatusStarted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a payment status check run"
)
async def start_check_status(
    payload: CheckStatusRequest,
    request: Request,
    manager: RunManager = Depends(get_run_manager),
) -> CheckStatusStarted:
    """Accept a batch of payment ids and return the run id immediately.

    Lookups, batch notifications and status triggers happen in the background
    worker; poll the run endpoint for progress and the final result.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    config = manager.default_config
    if payload.config is not None:
        config = payload.config.apply(config)

    run_id = manager.start(payload.payment_ids, config, correlation_id=request_id)
    logger.info(
        "Payment status check accepted",
        run_id=run_id,
        payment_count=len(payload.payment_ids),
        request_id=request_id
    )
    log_performance(
        operation="start_check_status",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"run_id": run_id, "payment_count": len(payload.payment_ids)}
    )
    return CheckStatusStarted(run_id=run_id)


@router.get(
    "/check-status/{run_id}",
    response_model=CheckStatusRunRead,
    summary="Get run status, progress and result"
)
async def get_check_status(
    run_id: str,
    manager: RunManager = Depends(get_run_manager),
) -> CheckStatusRunRead:
    run_status = manager.status(run_id)
    result = manager.result(run_id)
    return CheckStatusRunRead(
        run_id=run_id,
        status=run_status,
        progress=ProgressRead.from_snapshot(manager.progress(run_id)),
        result=CheckStatusResultRead.from_result(result) if result is not None else None,
        error_message=manager.error_message(run_id),
        retrieved_at=datetime.now(timezone.utc),
    )


@router.get(
    "/check-status/{run_id}/progress",
    response_model=ProgressRead,
    summary="Get live progress of a run"
)
async def get_check_status_progress(
    run_id: str,
    manager: RunManager = Depends(get_run_manager),
) -> ProgressRead:
    return ProgressRead.from_snapshot(manager.progress(run_id))


@router.post(
    "/check-status/{run_id}/cancel",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a running payment status check"
)
async def cancel_check_status(
    run_id: str,
    request: Request,
    manager: RunManager = Depends(get_run_manager),
) -> ResponseBase:
    """Request cooperative cancellation.

    Work already in flight settles normally; chunks not yet started are
    reported with the CANCELLED stage.
    """
    accepted = manager.cancel(run_id)
    logger.info(
        "Cancel requested",
        run_id=run_id,
        accepted=accepted,
        request_id=getattr(request.state, "request_id", None)
    )
    return ResponseBase(
        success=accepted,
        message="Cancellation requested" if accepted else "Run already finished",
        data={"run_id": run_id, "status": manager.status(run_id).value},
    )
