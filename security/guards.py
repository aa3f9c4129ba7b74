"""
Request authentication guards.

A request is authenticated in a strict sequence:

1. extract the credential (``Authorization: Bearer`` or ``X-Auth-Token``)
2. rate limit the credential under the ``api_access`` action
3. verify it as a session access token
4. only if that fails, verify it with the external identity provider and
   resolve the provider subject to a user profile

Both verification paths produce a tagged outcome that is turned into a
``ResolvedIdentity``. Routes receive the identity through ``require_user``,
``require_admin`` or ``optional_user`` dependencies.
"""

import hashlib

from dataclasses import dataclass
from typing import Annotated, Optional, Union

import logfire

from fastapi import Depends, HTTPException, Request, status
from redis.exceptions import RedisError

from models.helpers import ADMIN_ROLES, AuthSource, TokenType
from schema.security import RateLimitResult, RateLimitRule, ResolvedIdentity, TokenPayload
from schema.users import UserRecord
from security.errors import (
    AdminAccessDenied,
    AuthenticationFailed,
    AuthError,
    IdentityProviderError,
    MissingToken,
    RateLimited,
    TokenError,
    UserNotFound,
    WrongTokenType,
)
from security.helpers import extract_token, oauth2_scheme
from security.identity_provider import ExternalIdentity, IdentityProvider
from security.token_service import TokenService
from services.rate_limit import RateLimitService
from services.users import UserRepository

API_ACCESS_ACTION = "api_access"
API_ACCESS_RULE = RateLimitRule(requests=100, window_seconds=60, block_seconds=5 * 60)

# Length of the credential fingerprint used as rate limit identifier
CREDENTIAL_FINGERPRINT_LENGTH = 16

EXTERNAL_SESSION_PREFIX = "firebase_"


@dataclass(frozen=True)
class VerifiedViaSession:
    """The credential is a valid session access token."""

    payload: TokenPayload

    def to_identity(self) -> ResolvedIdentity:
        return ResolvedIdentity(
            user_id=self.payload.user_id,
            email=self.payload.email,
            roles=list(self.payload.roles),
            session_id=self.payload.session_id,
            token_type=self.payload.type,
            source=AuthSource.SESSION,
        )


@dataclass(frozen=True)
class VerifiedViaExternalProvider:
    """The credential is a valid identity provider token of a known user."""

    external: ExternalIdentity
    user: UserRecord

    def to_identity(self) -> ResolvedIdentity:
        return ResolvedIdentity(
            user_id=self.user.id,
            email=self.user.email or self.external.email,
            roles=list(self.user.roles),
            session_id=f"{EXTERNAL_SESSION_PREFIX}{self.external.subject}",
            token_type=TokenType.ACCESS,
            source=AuthSource.EXTERNAL_PROVIDER,
        )


VerificationOutcome = Union[VerifiedViaSession, VerifiedViaExternalProvider]


def credential_fingerprint(token: str) -> str:
    """Short stable identifier of a credential for rate limiting.

    Session tokens share their header segment, so a plain prefix of the token
    would put every caller in the same bucket.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:CREDENTIAL_FINGERPRINT_LENGTH]


class Authenticator:
    """Runs the authentication sequence for a single request.

    Args:
        token_service (TokenService): Primary verifier for session tokens.
        rate_limiter (RateLimitService): Rate limiter for credentials.
        identity_provider (IdentityProvider): Fallback verifier.
        users (UserRepository): Resolves provider subjects to user profiles.
        rule (RateLimitRule, optional): Budget for a single credential.
    """

    def __init__(
        self,
        token_service: TokenService,
        rate_limiter: RateLimitService,
        identity_provider: IdentityProvider,
        users: UserRepository,
        rule: RateLimitRule = API_ACCESS_RULE,
    ):
        self.token_service = token_service
        self.rate_limiter = rate_limiter
        self.identity_provider = identity_provider
        self.users = users
        self.rule = rule

    def extract_credential(self, request: Request) -> str:
        token = extract_token(request)
        if token is None:
            raise MissingToken("No authentication token provided")
        return token

    async def enforce_rate_limit(self, token: str) -> RateLimitResult:
        """Count the request against the credential's budget.

        Raises:
            RateLimited: Raised when the budget is exhausted or the credential
                is blocked.
        """
        identifier = credential_fingerprint(token)
        result = await self.rate_limiter.check_rate_limit(identifier, API_ACCESS_ACTION, self.rule)

        if not result.allowed:
            raise RateLimited(result, "Too many requests")

        return result

    async def verify_via_session(self, token: str) -> Optional[VerifiedViaSession]:
        """Primary path. Returns None when the token is not a valid access token.

        Store errors are not caught.
        """
        try:
            payload = await self.token_service.verify_token(token)
            if payload.type != TokenType.ACCESS:
                raise WrongTokenType("Refresh tokens cannot authorize requests")
        except TokenError as e:
            logfire.warning(f"Session token verification failed: {e.reason}")
            return None

        return VerifiedViaSession(payload=payload)

    async def verify_via_external_provider(self, token: str) -> VerifiedViaExternalProvider:
        """Fallback path.

        Raises:
            IdentityProviderError: Raised when the provider rejects the token.
            UserNotFound: Raised when no active profile is linked to the
                provider subject.
        """
        external = await self.identity_provider.verify_external_token(token)

        user = await self.users.get_by_firebase_uid(external.subject)
        if user is None or not user.is_active:
            raise UserNotFound(f"No user profile for provider subject {external.subject}")

        return VerifiedViaExternalProvider(external=external, user=user)

    async def verify_credential(self, token: str) -> VerificationOutcome:
        """Verify ``token`` through the session path, then the provider path.

        Raises:
            AuthenticationFailed: Raised when both paths reject the token.
            UserNotFound: Raised when the provider accepts the token but the
                subject has no profile.
        """
        outcome = await self.verify_via_session(token)
        if outcome is not None:
            return outcome

        try:
            return await self.verify_via_external_provider(token)
        except IdentityProviderError as e:
            logfire.warning(f"Identity provider verification failed: {str(e)}")
            raise AuthenticationFailed("Invalid or expired token") from e

    async def authenticate(self, request: Request) -> ResolvedIdentity:
        """Authenticate ``request`` and return the caller's identity.

        Raises:
            MissingToken: Raised when the request carries no credential.
            RateLimited: Raised when the credential is over budget.
            AuthenticationFailed: Raised when the credential is invalid.
            UserNotFound: Raised when a provider subject has no profile.
        """
        token = self.extract_credential(request)
        await self.enforce_rate_limit(token)

        outcome = await self.verify_credential(token)
        identity = outcome.to_identity()

        logfire.debug(
            f"Authenticated user {identity.user_id} via {identity.source.value}"
        )
        return identity

    def authorize_admin(self, identity: ResolvedIdentity) -> ResolvedIdentity:
        """Require an admin tier role among the verified role claims.

        Raises:
            AdminAccessDenied: Raised when no admin role is present.
        """
        if not ADMIN_ROLES.intersection(identity.roles):
            logfire.warning(f"Admin access denied for user {identity.user_id}")
            raise AdminAccessDenied("Admin access required")
        return identity

    async def authenticate_optional(self, request: Request) -> Optional[ResolvedIdentity]:
        """Same as ``authenticate`` but any failure means an anonymous caller."""
        if extract_token(request) is None:
            return None

        try:
            return await self.authenticate(request)
        except Exception as e:
            logfire.debug(f"Proceeding unauthenticated: {str(e)}")
            return None


def get_authenticator(request: Request) -> Authenticator:
    """Get the authenticator instance wired at startup."""
    return request.app.state.authenticator


def rate_limit_headers(result: RateLimitResult) -> dict:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_time.isoformat(),
        "Retry-After": str(result.retry_after),
    }
    if result.block_expires_at:
        headers["X-RateLimit-Block-Expires"] = result.block_expires_at.isoformat()
    return headers


def to_http_exception(error: AuthError) -> HTTPException:
    """Translate an authentication error into the response sent to the client.

    Token and user resolution failures collapse into one generic message.
    """
    if isinstance(error, MissingToken):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(error, RateLimited):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Too many requests",
            headers={"WWW-Authenticate": "Bearer", **rate_limit_headers(error.result)},
        )
    if isinstance(error, AdminAccessDenied):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required"
        )

    logfire.warning(f"Authentication failed: {error.reason}")
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication failed",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_user(
    request: Request,
    authenticator: Annotated[Authenticator, Depends(get_authenticator)],
    _token: Annotated[Optional[str], Depends(oauth2_scheme)],
) -> ResolvedIdentity:
    """Dependency rejecting unauthenticated requests with 401.

    An unreachable store also rejects the request, with the generic failure.
    """
    try:
        return await authenticator.authenticate(request)
    except AuthError as e:
        raise to_http_exception(e)
    except RedisError as e:
        logfire.error(f"Authentication store unavailable: {str(e)}")
        raise to_http_exception(AuthenticationFailed("Authentication store unavailable"))


async def require_admin(
    identity: Annotated[ResolvedIdentity, Depends(require_user)],
    authenticator: Annotated[Authenticator, Depends(get_authenticator)],
) -> ResolvedIdentity:
    """Dependency rejecting callers without an admin role with 403."""
    try:
        return authenticator.authorize_admin(identity)
    except AuthError as e:
        raise to_http_exception(e)


async def optional_user(
    request: Request,
    authenticator: Annotated[Authenticator, Depends(get_authenticator)],
) -> Optional[ResolvedIdentity]:
    """Dependency resolving the caller when possible, None otherwise."""
    return await authenticator.authenticate_optional(request)
