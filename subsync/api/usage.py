"""
Usage API routes.

- GET  /api/usage: Counters, limits and remaining per meter
- POST /api/usage/calculations: Consume one calculation
- POST /api/usage/api-calls: Consume one API call
"""
from fastapi import APIRouter, Depends

from subsync.core.auth import get_current_user_id
from subsync.features.usage.service import (
    METER_API_CALLS,
    METER_CALCULATIONS,
    UsageReport,
    get_usage,
    record_usage,
)


router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageReport)
def usage(user_id: str = Depends(get_current_user_id)):
    return get_usage(user_id)


@router.post("/calculations", response_model=UsageReport)
def consume_calculation(user_id: str = Depends(get_current_user_id)):
    """403 quota_exceeded once the period's calculations are used up."""
    return record_usage(user_id, METER_CALCULATIONS)


@router.post("/api-calls", response_model=UsageReport)
def consume_api_call(user_id: str = Depends(get_current_user_id)):
    return record_usage(user_id, METER_API_CALLS)
