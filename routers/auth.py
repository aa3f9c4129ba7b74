"""
Auth router for handling user authentication and session token related endpoints.
"""

import logfire

from fastapi import HTTPException, status, APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

from pymongo.errors import DuplicateKeyError

from middleware.rate_limiting import rate_limit_by_ip
from security.errors import IdentityProviderError, TokenError
from security.guards import require_user
from security.helpers import authenticate_user, extract_token, get_password_hash
from security.identity_provider import IdentityProvider, get_identity_provider
from security.token_service import TokenService, get_token_service
from services.users import UserRepository, get_user_repository

from schema.security import (
    AccessTokenResponse,
    ActiveSession,
    RefreshTokenRequest,
    ResolvedIdentity,
    TokenPair,
    TokenSubject,
)
from schema.users import (
    CurrentIdentityResponse,
    ProviderSignInRequest,
    ProviderSignInResponse,
    PublicUser,
    RegisterRequest,
)

from typing import Annotated, List

router = APIRouter(
    prefix="/api/v1/auth",
    tags=["Auth"],
)


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    response_model=PublicUser,
    dependencies=[Depends(rate_limit_by_ip("register"))],
)
async def register(
    payload: RegisterRequest,
    users: Annotated[UserRepository, Depends(get_user_repository)],
):
    """This endpoint creates a new community member account with a password login.

    ## Possible Errors
    - 409 Conflict: If a user with the provided email already exists.
    - 429 Too Many Requests: If too many accounts were registered from the same address.
    """
    if await users.get_by_email(payload.email):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "User with this email already exists"},
        )

    try:
        with logfire.span(f"Registering new user: {payload.email}"):
            user = await users.create(
                email=payload.email,
                password_hash=get_password_hash(payload.password),
                name=payload.name,
            )
    except DuplicateKeyError:
        logfire.warning(f"Duplicate registration attempt for {payload.email}")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "User with this email already exists"},
        )

    return PublicUser.from_record(user)


@router.post(
    "/firebase",
    response_model=ProviderSignInResponse,
    dependencies=[Depends(rate_limit_by_ip("login"))],
)
async def sign_in_with_firebase(
    payload: ProviderSignInRequest,
    response: Response,
    users: Annotated[UserRepository, Depends(get_user_repository)],
    identity_provider: Annotated[IdentityProvider, Depends(get_identity_provider)],
):
    """This endpoint links a Firebase account to a community member profile.

    The profile already linked to the Firebase subject is returned as is. Otherwise
    the profile with the verified email is linked, or a new passwordless profile is
    created. Afterwards the same Firebase ID token authorizes API calls.

    ## Possible Errors
    - 401 Unauthorized: If the Firebase ID token is invalid or expired.
    - 403 Forbidden: If the email is not verified or the account is disabled.
    - 409 Conflict: If the email belongs to a profile linked to another Firebase account.
    """
    try:
        external = await identity_provider.verify_external_token(payload.id_token)
    except IdentityProviderError as e:
        logfire.warning(f"Firebase sign in rejected: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired identity token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    created = False
    user = await users.get_by_firebase_uid(external.subject)

    if user is None:
        if not external.email or not external.email_verified:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"detail": "A verified email address is required"},
            )

        user = await users.get_by_email(external.email)

        if user is not None and user.firebase_uid:
            logfire.warning(f"Email {external.email} is linked to another Firebase account")
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"detail": "Email is linked to another account"},
            )

        if user is not None:
            user = await users.link_firebase_uid(user.id, external.subject)
            if user is None:
                return JSONResponse(
                    status_code=status.HTTP_404_NOT_FOUND,
                    content={"detail": "User not found"},
                )
        else:
            try:
                with logfire.span(f"Creating Firebase user: {external.email}"):
                    user = await users.create(
                        email=external.email,
                        password_hash=None,
                        name=payload.name,
                        firebase_uid=external.subject,
                    )
            except DuplicateKeyError:
                return JSONResponse(
                    status_code=status.HTTP_409_CONFLICT,
                    content={"detail": "User with this email already exists"},
                )
            created = True

    if not user.is_active:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": "Account is disabled"},
        )

    await users.touch_last_active(user.id)

    if created:
        response.status_code = status.HTTP_201_CREATED

    return ProviderSignInResponse(user=PublicUser.from_record(user), created=created)


@router.post(
    "/login",
    response_model=TokenPair,
    dependencies=[Depends(rate_limit_by_ip("login"))],
)
async def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    users: Annotated[UserRepository, Depends(get_user_repository)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Login endpoint that returns both access and refresh tokens.

    Each login starts a new session, so the same account can stay signed in on
    several devices at once.
    """
    user = await authenticate_user(users, form_data.username, form_data.password)

    if not user:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Incorrect email or password"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_pair = await token_service.create_token_pair(
        TokenSubject(id=user.id, email=user.email, roles=user.roles)
    )
    await users.touch_last_active(user.id)

    logfire.info(f"User {user.email} logged in successfully")

    return token_pair


@router.post(
    "/refresh", response_model=AccessTokenResponse, response_model_exclude_none=True
)
async def refresh_access_token(
    payload: RefreshTokenRequest,
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Refresh endpoint to get a new access token using a refresh token.

    The response also carries a new refresh token when rotation is enabled,
    in which case the submitted one stops working.
    """
    try:
        return await token_service.refresh_access_token(payload.refresh_token)
    except TokenError as e:
        logfire.warning(f"Refresh rejected: {e.reason}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.post("/logout")
async def logout(
    request: Request,
    payload: RefreshTokenRequest,
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Logout endpoint that revokes the refresh token, and the access token when one is sent."""
    await token_service.revoke_token(payload.refresh_token)

    access_token = extract_token(request)
    if access_token:
        await token_service.revoke_token(access_token)

    return {"message": "Successfully logged out"}


@router.post("/logout-all")
async def logout_all_devices(
    request: Request,
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Logout from all devices by revoking every refresh token of the user."""
    sessions = await token_service.get_user_active_sessions(identity.user_id)

    revoked = 0
    for session in sessions:
        if await token_service.revoke_user_session(session.session_id):
            revoked += 1

    await token_service.revoke_token(extract_token(request))

    logfire.info(f"All devices logged out for user {identity.user_id}")

    return {"message": "Successfully logged out from all devices", "revoked_sessions": revoked}


@router.get("/me", response_model=CurrentIdentityResponse)
async def read_current_identity(
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
):
    """Returns the identity resolved from the presented credential."""
    return CurrentIdentityResponse(
        user_id=identity.user_id,
        email=identity.email,
        roles=identity.roles,
        session_id=identity.session_id,
        source=identity.source.value,
    )


@router.get("/sessions", response_model=List[ActiveSession])
async def list_my_sessions(
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Lists the signed in sessions of the current user."""
    return await token_service.get_user_active_sessions(identity.user_id)


@router.delete("/sessions/{session_id}")
async def revoke_my_session(
    session_id: str,
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Signs out one session of the current user, e.g. a lost device.

    ## Possible Errors
    - 404 Not Found: If the session does not exist or belongs to another user.
    """
    sessions = await token_service.get_user_active_sessions(identity.user_id)

    if session_id not in {session.session_id for session in sessions}:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Session not found"},
        )

    await token_service.revoke_user_session(session_id)

    return {"message": "Session revoked", "session_id": session_id}
