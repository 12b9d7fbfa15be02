from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from carecall.core.errors import RateLimitedError

from .config import IdentifierKind, RateLimitAction
from .guard import QuotaGuard


router = APIRouter()


class RateLimitCheckRequest(BaseModel):
    action: RateLimitAction
    phone: Optional[str] = None
    ip: Optional[str] = None
    account_id: Optional[str] = None
    session_id: Optional[str] = None


class RateLimitCheckResponse(BaseModel):
    allowed: bool
    limit_type: Optional[str] = None
    retry_after_seconds: int = 0
    remaining: Optional[int] = None
    store_available: bool = True
    reason: Optional[str] = None


@lru_cache
def get_quota_guard() -> QuotaGuard:
    return QuotaGuard()


@router.post("/check", response_model=RateLimitCheckResponse)
def check_rate_limit_endpoint(
    payload: RateLimitCheckRequest,
    request: Request,
    guard: QuotaGuard = Depends(get_quota_guard),
):
    """Consume one unit of quota for `action`; 429 when any supplied identifier is over its limit."""
    ip = payload.ip or (request.client.host if request.client else None)
    result = guard.check(
        payload.action,
        {
            IdentifierKind.PHONE: payload.phone,
            IdentifierKind.IP: ip,
            IdentifierKind.ACCOUNT: payload.account_id,
            IdentifierKind.SESSION: payload.session_id,
        },
    )
    if not result.allowed:
        raise RateLimitedError("Too many requests; please try again later", result.to_dict())
    return RateLimitCheckResponse(**{k: v for k, v in result.to_dict().items() if k != "metadata"})


@router.post("/actions/{action}/disable", status_code=204)
def disable_action_endpoint(action: RateLimitAction, guard: QuotaGuard = Depends(get_quota_guard)):
    guard.disable_action(action)


@router.post("/actions/{action}/enable", status_code=204)
def enable_action_endpoint(action: RateLimitAction, guard: QuotaGuard = Depends(get_quota_guard)):
    guard.enable_action(action)
