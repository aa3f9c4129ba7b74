""" User router for handling all user-related endpoints.
"""

import logfire

from fastapi import APIRouter, status, Depends
from fastapi.responses import JSONResponse

from security.guards import optional_user, require_admin, require_user
from security.token_service import TokenService, get_token_service
from services.users import UserRepository, get_user_repository

from schema.security import ActiveSession, ResolvedIdentity
from schema.users import GreetingResponse, PublicUser

from typing import Annotated, List, Optional

router = APIRouter(
    prefix="/api/v1/users",
    tags=["Users"],
)


@router.get("", response_model=PublicUser)
async def get_my_profile(
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
    users: Annotated[UserRepository, Depends(get_user_repository)],
):
    """This endpoint returns the profile of the authenticated user.

    ## Possible Errors
    - 401 Unauthorized: If the request is not authenticated.
    - 404 Not Found: If the profile was deleted after the token was issued.
    """
    user = await users.get_by_id(identity.user_id)

    if not user or not user.is_active:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Account does not exist"},
        )

    return PublicUser.from_record(user)


@router.get("/greeting", response_model=GreetingResponse)
async def greet(identity: Annotated[Optional[ResolvedIdentity], Depends(optional_user)]):
    """Greets members by email and everyone else as a guest."""
    if identity is None:
        return GreetingResponse(message="Welcome, guest!", authenticated=False)

    return GreetingResponse(
        message=f"Welcome back, {identity.email or identity.user_id}!", authenticated=True
    )


@router.get("/{user_id}/sessions", response_model=List[ActiveSession])
async def list_user_sessions(
    user_id: str,
    admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Lists the token sessions of any user. Admin only."""
    logfire.info(f"Admin {admin.user_id} listed sessions of user {user_id}")
    return await token_service.get_user_active_sessions(user_id)


@router.delete("/{user_id}/sessions")
async def revoke_user_sessions(
    user_id: str,
    admin: Annotated[ResolvedIdentity, Depends(require_admin)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Revokes every refresh token of a user, signing them out everywhere. Admin only.

    Access tokens already issued stay valid until they expire.
    """
    revoked = 0
    for session in await token_service.get_user_active_sessions(user_id):
        if await token_service.revoke_user_session(session.session_id):
            revoked += 1

    logfire.warning(f"Admin {admin.user_id} revoked {revoked} sessions of user {user_id}")

    return {"message": "User sessions revoked", "user_id": user_id, "revoked_sessions": revoked}
