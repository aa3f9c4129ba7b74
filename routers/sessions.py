"""
Session router for the server-side session login flow.

Clients using this flow keep an opaque session id instead of signed tokens and
send it back in the ``Session-Id`` header.
"""

import logfire

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from security.guards import rate_limit_headers, require_admin
from security.helpers import authenticate_user, get_client_ip
from services.rate_limit import RateLimitService, get_rate_limit_service
from services.sessions import SessionService, get_session_service
from services.users import UserRepository, get_user_repository

from schema.security import ResolvedIdentity
from schema.sessions import (
    SessionLoginRequest,
    SessionLoginResponse,
    SessionMetadata,
    SessionStats,
    SessionValidationResponse,
    UserSession,
    UserSessionsResponse,
)

from typing import Annotated, Optional

router = APIRouter(
    prefix="/api/v1/session",
    tags=["Sessions"],
)


@router.post("/login", response_model=SessionLoginResponse)
async def session_login(
    request: Request,
    payload: SessionLoginRequest,
    users: Annotated[UserRepository, Depends(get_user_repository)],
    sessions: Annotated[SessionService, Depends(get_session_service)],
    rate_limiter: Annotated[RateLimitService, Depends(get_rate_limit_service)],
    user_agent: Annotated[Optional[str], Header()] = None,
):
    """Logs in with email and password and creates a server-side session.

    ## Possible Errors
    - 401 Unauthorized: If the credentials are wrong.
    - 429 Too Many Requests: If too many login attempts came from the same address.
    """
    ip_address = get_client_ip(request)

    rate_limit_result = await rate_limiter.check_rate_limit(ip_address, "login")
    if not rate_limit_result.allowed:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "Too many login attempts",
                "blocked": rate_limit_result.blocked,
                "retry_after": rate_limit_result.retry_after,
            },
            headers=rate_limit_headers(rate_limit_result),
        )

    user = await authenticate_user(users, payload.email, payload.password)
    if not user:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Incorrect email or password"},
        )

    session_id = await sessions.create_session(
        user.id,
        user.email,
        SessionMetadata(
            username=payload.username or user.name,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )

    return SessionLoginResponse(
        session_id=session_id,
        user_id=user.id,
        email=user.email,
        remaining=rate_limit_result.remaining,
    )


@router.get("/validate/{session_id}", response_model=SessionValidationResponse)
async def validate_session(
    session_id: str,
    sessions: Annotated[SessionService, Depends(get_session_service)],
):
    """Checks a session id. A valid session has its expiry extended."""
    session = await sessions.validate_session(session_id)
    return SessionValidationResponse(valid=session is not None, session=session)


@router.get("/protected", response_model=UserSession)
async def protected_resource(
    sessions: Annotated[SessionService, Depends(get_session_service)],
    session_id: Annotated[Optional[str], Header(alias="Session-Id")] = None,
):
    """Example resource that requires a valid ``Session-Id`` header."""
    if not session_id:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Session ID required in headers"},
        )

    session = await sessions.validate_session(session_id)
    if session is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Invalid or expired session"},
        )

    return session


@router.delete("/logout/{session_id}")
async def session_logout(
    session_id: str,
    sessions: Annotated[SessionService, Depends(get_session_service)],
):
    """Ends a single session."""
    deleted = await sessions.delete_session(session_id)

    if not deleted:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Session not found"},
        )

    return {"message": "Logout successful", "session_id": session_id}


@router.get("/user/{user_id}", response_model=UserSessionsResponse)
async def get_user_sessions(
    user_id: str,
    _admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    sessions: Annotated[SessionService, Depends(get_session_service)],
):
    """Lists the live sessions of a user. Admin only."""
    await sessions.clean_expired_sessions(user_id)
    user_sessions = await sessions.get_user_sessions_info(user_id)

    return UserSessionsResponse(
        user_id=user_id, active_sessions=len(user_sessions), sessions=user_sessions
    )


@router.delete("/logout-all/{user_id}")
async def session_logout_all(
    user_id: str,
    admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    sessions: Annotated[SessionService, Depends(get_session_service)],
):
    """Ends every session of a user. Admin only."""
    deleted_count = await sessions.delete_all_user_sessions(user_id)

    logfire.info(f"Admin {admin.user_id} ended {deleted_count} sessions of user {user_id}")

    return {
        "message": f"Logged out from {deleted_count} devices",
        "deleted_sessions": deleted_count,
        "user_id": user_id,
    }


@router.get("/stats", response_model=SessionStats)
async def get_session_stats(
    _admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    sessions: Annotated[SessionService, Depends(get_session_service)],
):
    """Counts live sessions across all users. Admin only."""
    return await sessions.get_session_stats()
