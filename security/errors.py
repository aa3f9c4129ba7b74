"""Error taxonomy for token, session and request authentication failures.

Every authentication error carries a short machine readable ``reason`` that is
logged server-side. Clients only ever see a generic message, see
``security.guards``.
"""

from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when security configuration is missing or unsafe.

    The process must not serve traffic after this error.
    """


class AuthError(Exception):
    """Base class for authentication and authorization failures."""

    reason = "auth_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason)


class TokenError(AuthError):
    """Base class for failures while verifying a session token."""

    reason = "token_error"


class MalformedToken(TokenError):
    reason = "malformed_token"


class InvalidSignature(TokenError):
    reason = "invalid_signature"


class TokenExpired(TokenError):
    reason = "token_expired"


class TokenRevoked(TokenError):
    reason = "token_revoked"


class RefreshTokenRevokedOrRotated(TokenError):
    reason = "refresh_token_revoked_or_rotated"


class WrongTokenType(TokenError):
    reason = "wrong_token_type"


class MissingToken(AuthError):
    reason = "missing_token"


class RateLimited(AuthError):
    """The caller exceeded the rate limit for an action.

    Args:
        result (RateLimitResult): Outcome of the rate limit check, used to
            build ``Retry-After`` and ``X-RateLimit-*`` headers.
    """

    reason = "rate_limited"

    def __init__(self, result, message: Optional[str] = None):
        super().__init__(message)
        self.result = result


class IdentityProviderError(AuthError):
    """The external identity provider rejected the credential."""

    reason = "identity_provider_rejected"


class UserNotFound(AuthError):
    reason = "user_not_found"


class AuthenticationFailed(AuthError):
    """Both verification paths failed for a credential."""

    reason = "authentication_failed"


class AdminAccessDenied(AuthError):
    reason = "admin_access_required"
