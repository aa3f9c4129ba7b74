"""
Rate limit router with admin tools to inspect and reset rate limit counters.
"""

import logfire

from fastapi import APIRouter, Depends, Query, Request

from security.guards import require_admin
from security.helpers import get_client_ip
from services.rate_limit import DEFAULT_ACTION, RateLimitService, get_rate_limit_service

from schema.security import (
    RateLimitCheckRequest,
    RateLimitClearRequest,
    RateLimitRule,
    RateLimitStats,
    ResolvedIdentity,
)

from typing import Annotated, Dict, Optional

router = APIRouter(
    prefix="/api/v1/rate-limit",
    tags=["Rate limit"],
    dependencies=[Depends(require_admin)],
)


@router.get("/rules", response_model=Dict[str, RateLimitRule])
async def get_rules(
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
):
    """Lists the configured rules by action name."""
    return rate_limiter.get_rules()


@router.get("/status")
async def get_rate_limit_status(
    request: Request,
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
    identifier: Annotated[Optional[str], Query()] = None,
    action: Annotated[str, Query()] = DEFAULT_ACTION,
):
    """Shows the counter of an identifier without counting a request.

    The identifier defaults to the caller's IP address.
    """
    identifier = identifier or get_client_ip(request)
    status = await rate_limiter.get_rate_limit_status(identifier, action)

    return {"identifier": identifier, "action": action, "status": status}


@router.get("/stats", response_model=RateLimitStats)
async def get_rate_limit_stats(
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
):
    return await rate_limiter.get_rate_limit_stats()


@router.post("/check")
async def check_rate_limit(
    request: Request,
    payload: RateLimitCheckRequest,
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
):
    """Counts one request for an identifier, under a named rule or a custom one."""
    identifier = payload.identifier or get_client_ip(request)

    if payload.rule:
        result = await rate_limiter.apply_custom_rate_limit(identifier, payload.rule, payload.action)
    else:
        result = await rate_limiter.check_rate_limit(identifier, payload.action)

    return {
        "identifier": identifier,
        "action": payload.action,
        "result": result,
        "message": "Request allowed" if result.allowed else "Rate limit exceeded",
    }


@router.delete("/clear")
async def clear_rate_limit(
    request: Request,
    payload: RateLimitClearRequest,
    admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
):
    """Removes the counter and any block of an identifier."""
    identifier = payload.identifier or get_client_ip(request)
    cleared = await rate_limiter.clear_rate_limit(identifier, payload.action)

    logfire.info(f"Admin {admin.user_id} cleared rate limit of {identifier} on {payload.action}")

    return {
        "identifier": identifier,
        "action": payload.action,
        "cleared": cleared,
        "message": "Rate limit cleared" if cleared else "No rate limit found to clear",
    }
