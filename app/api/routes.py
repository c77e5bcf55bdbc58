"""
API Routes - FastAPI endpoints for in-app purchase operations.

Routes only translate HTTP to service calls. IAPError subclasses propagate to
the exception handler in app.main, which renders the ``ok=false`` envelope.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_iap_service
from app.db.session import get_read_db
from app.models.api import (
    CancelResponse,
    ErrorResponse,
    HealthResponse,
    RestoreRequest,
    RestoreResponse,
    SyncResponse,
    UserRequest,
    UserSubscriptionResponse,
    VerifyRequest,
    VerifyResponse,
)
from app.services.iap import IAPService

router = APIRouter()

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@router.post(
    "/iap/verify",
    response_model=VerifyResponse,
    responses=ERROR_RESPONSES,
)
async def verify_purchase(
    request: VerifyRequest,
    service: IAPService = Depends(get_iap_service),
) -> VerifyResponse:
    """
    Verify a store transaction and apply its entitlement exactly once.

    Retries and concurrent duplicates converge on the same state and report
    ``alreadyProcessed: true``.
    """
    return await service.verify(request)


@router.post(
    "/iap/restore",
    response_model=RestoreResponse,
    responses=ERROR_RESPONSES,
)
async def restore_purchases(
    request: RestoreRequest,
    service: IAPService = Depends(get_iap_service),
) -> RestoreResponse:
    """Restore subscription transactions; failures are reported per item."""
    return await service.restore(request)


@router.post(
    "/iap/cancel",
    response_model=CancelResponse,
    responses=ERROR_RESPONSES,
)
async def cancel_subscription(
    request: UserRequest,
    service: IAPService = Depends(get_iap_service),
) -> CancelResponse:
    return await service.cancel(request.user_id)


@router.post(
    "/iap/sync",
    response_model=SyncResponse,
    responses=ERROR_RESPONSES,
)
async def sync_subscription(
    request: UserRequest,
    service: IAPService = Depends(get_iap_service),
) -> SyncResponse:
    """Re-derive the user's subscription from the store's renewal status."""
    return await service.sync(request.user_id)


@router.get(
    "/iap/subscription/{user_id}",
    response_model=UserSubscriptionResponse,
    responses=ERROR_RESPONSES,
)
async def get_subscription(
    user_id: str,
    service: IAPService = Depends(get_iap_service),
) -> UserSubscriptionResponse:
    return await service.get_subscription(user_id)


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
