"""
Entitlements endpoints. The current user is taken from request.state.user_id,
set by the host application's auth middleware.
"""

from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .errors import UnknownFeatureError
from .guard import FeatureGuard
from .schemas import (
    FeatureCheckResponse,
    FeatureRequest,
    FeatureUsageResponse,
    TrackUsageResponse,
    UsageSummaryResponse,
)


def _user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return str(user_id)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _require_feature(guard: FeatureGuard, body: FeatureRequest) -> str:
    feature = (body.feature or "").strip()
    if not feature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Feature is required")
    if not guard.catalog.is_known_feature(feature):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UnknownFeatureError(feature).to_dict(),
        )
    return feature


def _store_unavailable(user) -> HTTPException:
    detail = user.load_error.to_dict() if user.load_error else {"error": "USAGE_STORE_READ_FAILED"}
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def create_router(get_guard: Callable[[], FeatureGuard]) -> APIRouter:
    """Build the /entitlements router around a guard provider dependency."""
    router = APIRouter(prefix="/entitlements", tags=["entitlements"])

    @router.get("/usage", response_model=UsageSummaryResponse)
    async def get_usage_summary(
        request: Request,
        guard: FeatureGuard = Depends(get_guard),
    ) -> UsageSummaryResponse:
        user = await guard.for_user(_user_id(request))
        summary = user.usage_summary
        if summary is None:
            raise _store_unavailable(user)
        return UsageSummaryResponse.from_summary(summary)

    @router.get("/usage/{feature}", response_model=FeatureUsageResponse)
    async def get_feature_usage(
        feature: str,
        request: Request,
        guard: FeatureGuard = Depends(get_guard),
    ) -> FeatureUsageResponse:
        user_id = _user_id(request)
        if not guard.catalog.is_known_feature(feature):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=UnknownFeatureError(feature).to_dict(),
            )
        user = await guard.for_user(user_id)
        usage = user.get_usage(feature)
        if usage is None:
            raise _store_unavailable(user)
        return FeatureUsageResponse.from_snapshot(usage)

    @router.post("/check", response_model=FeatureCheckResponse)
    async def check_feature(
        body: FeatureRequest,
        request: Request,
        guard: FeatureGuard = Depends(get_guard),
    ) -> FeatureCheckResponse:
        user_id = _user_id(request)
        feature = _require_feature(guard, body)
        return FeatureCheckResponse.from_check(await guard.check_user(user_id, feature))

    @router.post("/track", response_model=TrackUsageResponse)
    async def track_usage(
        body: FeatureRequest,
        request: Request,
        guard: FeatureGuard = Depends(get_guard),
    ) -> TrackUsageResponse:
        user_id = _user_id(request)
        feature = _require_feature(guard, body)
        await guard.track_usage(user_id, feature)
        return TrackUsageResponse(success=True)

    return router
