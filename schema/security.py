"""Defines schema of requests and responses related to security"""

import math

from datetime import datetime
from typing import Annotated, List, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.helpers import AuthSource, TokenType
from utils.clock import utc_now


class TokenPayload(BaseModel):
    """Claims carried inside a signed session token.

    Serialized with compact claim names (``sub``, ``sid``) through aliases.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: Annotated[str, Field(alias="sub", min_length=1)]
    email: str
    session_id: Annotated[str, Field(alias="sid", min_length=1)]
    roles: Annotated[List[str], Field(default_factory=lambda: ["user"])]
    iat: int  # Issued at, epoch seconds
    exp: int  # Expires at, epoch seconds
    type: TokenType

    @model_validator(mode="after")
    def check_expiry_after_issue(self) -> Self:
        if self.exp <= self.iat:
            raise ValueError("Token expiry must be later than its issue time")
        return self


class TokenSubject(BaseModel):
    """The user a token pair is minted for."""

    id: str
    email: str
    roles: Annotated[List[str], Field(default_factory=lambda: ["user"])]


class TokenPair(BaseModel):
    """Model representing both access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int  # Access token expiry in seconds
    refresh_expires_in: int  # Refresh token expiry in seconds


class AccessTokenResponse(BaseModel):
    """Model returned when an access token is refreshed.

    ``refresh_token`` is only set when refresh token rotation is enabled.
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None


class RefreshTokenRequest(BaseModel):
    """Model for refresh token request."""

    refresh_token: str


class ActiveSession(BaseModel):
    """A live refresh token record, exposed for security review."""

    session_id: str
    created_at: datetime
    expires_at: datetime


class ResolvedIdentity(BaseModel):
    """Request scoped outcome of a successful authentication."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    roles: List[str] = []
    session_id: str
    token_type: TokenType = TokenType.ACCESS
    source: AuthSource = AuthSource.SESSION


class RateLimitRule(BaseModel):
    """Budget for a named action.

    ``block_seconds`` of ``None`` denies over-budget calls without blocking.
    """

    model_config = ConfigDict(frozen=True)

    requests: Annotated[int, Field(gt=0)]
    window_seconds: Annotated[int, Field(gt=0)]
    block_seconds: Annotated[Optional[int], Field(gt=0)] = None


class RateLimitResult(BaseModel):
    """Outcome of a single rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime
    blocked: bool = False
    block_expires_at: Optional[datetime] = None

    @property
    def retry_after(self) -> int:
        """Seconds until the caller may try again (at least 1)."""
        target = self.block_expires_at or self.reset_time
        delta = (target - utc_now()).total_seconds()
        return max(1, math.ceil(delta))


class RateLimitStatus(BaseModel):
    """Read-only view of a rate limit counter."""

    requests: int
    limit: int
    remaining: int
    reset_time: Optional[datetime] = None
    blocked: bool = False
    block_expires_at: Optional[datetime] = None


class RateLimitStats(BaseModel):
    total_rate_limit_entries: int
    total_blocked_entries: int
    rate_limit_keys: List[str]
    blocked_keys: List[str]


class RateLimitCheckRequest(BaseModel):
    """Body of the admin rate limit check endpoint."""

    identifier: Optional[str] = None
    action: str = "custom"
    rule: Optional[RateLimitRule] = None


class RateLimitClearRequest(BaseModel):
    identifier: Optional[str] = None
    action: str = "general"
