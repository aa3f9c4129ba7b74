"""
Session token service: issues, verifies, refreshes and revokes token pairs.
Refresh tokens are registered in Redis per session id and revoked tokens are
blacklisted until their natural expiry.
"""

import hashlib
import secrets

from typing import List, Optional

import logfire

from fastapi import Request
from redis.exceptions import RedisError

from models.helpers import TokenType
from schema.security import (
    AccessTokenResponse,
    ActiveSession,
    TokenPair,
    TokenPayload,
    TokenSubject,
)
from security.codec import TokenCodec
from security.errors import (
    RefreshTokenRevokedOrRotated,
    TokenError,
    TokenExpired,
    TokenRevoked,
    WrongTokenType,
)
from services.cache import RedisCacheService
from utils.clock import epoch_seconds, from_epoch
from utils.settings import DEFAULT_ACCESS_TOKEN_TTL, DEFAULT_REFRESH_TOKEN_TTL

SESSION_ID_BYTES = 32  # 256 bits of entropy


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Service for managing access/refresh token pairs."""

    def __init__(
        self,
        cache: RedisCacheService,
        codec: TokenCodec,
        access_token_ttl: int = DEFAULT_ACCESS_TOKEN_TTL,
        refresh_token_ttl: int = DEFAULT_REFRESH_TOKEN_TTL,
        rotate_refresh_tokens: bool = False,
    ):
        self.cache = cache
        self.codec = codec
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.blacklist_prefix = "blacklisted_token:"
        self.refresh_token_prefix = "refresh_token:"

    def _mint(
        self, subject: TokenSubject, session_id: str, token_type: TokenType, now: int
    ) -> str:
        ttl = self.access_token_ttl if token_type == TokenType.ACCESS else self.refresh_token_ttl
        payload = TokenPayload(
            user_id=subject.id,
            email=subject.email,
            session_id=session_id,
            roles=list(subject.roles),
            iat=now,
            exp=now + ttl,
            type=token_type,
        )
        return self.codec.sign(payload)

    async def create_token_pair(self, user: TokenSubject) -> TokenPair:
        """Create access and refresh tokens sharing a new session id.

        Args:
            user (TokenSubject): The authenticated user.

        Returns:
            TokenPair: Both tokens and their lifetimes in seconds.
        """
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        now = epoch_seconds()

        access_token = self._mint(user, session_id, TokenType.ACCESS, now)
        refresh_token = self._mint(user, session_id, TokenType.REFRESH, now)

        await self._store_refresh_token(session_id, refresh_token)

        logfire.info(
            f"Created token pair for user {user.id} with session {session_id[:8]}..."
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_token_ttl,
            refresh_expires_in=self.refresh_token_ttl,
        )

    async def verify_token(self, token: str) -> TokenPayload:
        """Verify a token and return its claims.

        Args:
            token (str): An access or refresh token.

        Raises:
            TokenRevoked: Raised when the token has been blacklisted.
            MalformedToken: Raised when the token cannot be decoded.
            InvalidSignature: Raised when the signature does not match.
            TokenExpired: Raised when the token is past its expiry.
            RefreshTokenRevokedOrRotated: Raised when a refresh token is no
                longer the one registered for its session.

        Returns:
            TokenPayload: The verified claims.
        """
        if await self.is_token_blacklisted(token):
            raise TokenRevoked("Token has been revoked")

        payload = self.codec.verify(token)

        if payload.exp < epoch_seconds():
            raise TokenExpired("Token has expired")

        if payload.type == TokenType.REFRESH:
            stored_token = await self.get_stored_refresh_token(payload.session_id)
            if stored_token is None or not secrets.compare_digest(stored_token, token):
                raise RefreshTokenRevokedOrRotated(
                    "Refresh token is invalid or has been revoked"
                )

        return payload

    async def refresh_access_token(self, refresh_token: str) -> AccessTokenResponse:
        """Mint a new access token for the session of ``refresh_token``.

        The refresh token is only replaced when rotation is enabled.

        Raises:
            WrongTokenType: Raised when ``refresh_token`` is an access token.
            TokenError: Any verification failure from ``verify_token``.
        """
        payload = await self.verify_token(refresh_token)

        if payload.type != TokenType.REFRESH:
            raise WrongTokenType("Invalid token type for refresh")

        subject = TokenSubject(id=payload.user_id, email=payload.email, roles=payload.roles)
        now = epoch_seconds()
        access_token = self._mint(subject, payload.session_id, TokenType.ACCESS, now)

        response = AccessTokenResponse(
            access_token=access_token, expires_in=self.access_token_ttl
        )

        if self.rotate_refresh_tokens:
            new_refresh_token = self._mint(subject, payload.session_id, TokenType.REFRESH, now)
            # Overwriting the record invalidates the presented refresh token
            await self._store_refresh_token(payload.session_id, new_refresh_token)
            response.refresh_token = new_refresh_token
            response.refresh_expires_in = self.refresh_token_ttl

        logfire.info(
            f"Refreshed access token for user {payload.user_id} with session {payload.session_id[:8]}..."
        )

        return response

    async def revoke_token(self, token: str) -> None:
        """Blacklist ``token`` until it expires. Never raises.

        Revoking a refresh token also removes its session record.
        """
        try:
            payload = self.codec.verify(token)
            remaining_ttl = payload.exp - epoch_seconds()

            if remaining_ttl <= 0:
                return

            await self.cache.set_with_expiry(
                f"{self.blacklist_prefix}{hash_token(token)}", True, remaining_ttl
            )

            if payload.type == TokenType.REFRESH:
                await self._remove_refresh_token(payload.session_id)

            logfire.info(
                f"Revoked {payload.type.value} token for user {payload.user_id} with session {payload.session_id[:8]}..."
            )
        except TokenError as e:
            logfire.debug(f"Ignoring revocation of an invalid token: {e.reason}")
        except RedisError as e:
            logfire.warning(f"Failed to revoke token: {str(e)}")

    async def revoke_user_session(self, session_id: str) -> bool:
        """Delete the refresh record of ``session_id`` without needing the token.

        Returns:
            bool: True if a record existed.
        """
        removed = await self._remove_refresh_token(session_id)
        logfire.info(f"Revoked session {session_id[:8]}... (existed: {removed})")
        return removed

    async def get_user_active_sessions(self, user_id: str) -> List[ActiveSession]:
        """List live refresh records belonging to ``user_id``.

        Scans every stored refresh token, so it is meant for administration
        and security review rather than request authorization.
        """
        sessions: List[ActiveSession] = []

        for key in await self.cache.get_keys(f"{self.refresh_token_prefix}*"):
            token = await self.cache.get(key)
            if not isinstance(token, str):
                continue

            try:
                payload = self.codec.verify(token)
            except TokenError:
                continue

            if payload.user_id == user_id:
                sessions.append(
                    ActiveSession(
                        session_id=payload.session_id,
                        created_at=from_epoch(payload.iat),
                        expires_at=from_epoch(payload.exp),
                    )
                )

        sessions.sort(key=lambda session: session.created_at)
        return sessions

    async def is_token_blacklisted(self, token: str) -> bool:
        return bool(await self.cache.get(f"{self.blacklist_prefix}{hash_token(token)}"))

    async def get_stored_refresh_token(self, session_id: str) -> Optional[str]:
        stored = await self.cache.get(f"{self.refresh_token_prefix}{session_id}")
        return stored if isinstance(stored, str) else None

    async def _store_refresh_token(self, session_id: str, refresh_token: str) -> None:
        await self.cache.set_with_expiry(
            f"{self.refresh_token_prefix}{session_id}", refresh_token, self.refresh_token_ttl
        )

    async def _remove_refresh_token(self, session_id: str) -> bool:
        return await self.cache.delete(f"{self.refresh_token_prefix}{session_id}")


def get_token_service(request: Request) -> TokenService:
    """Get the token service instance wired at startup."""
    return request.app.state.token_service
