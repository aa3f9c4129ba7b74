"""
Tests for security/token_service.py
"""
import pytest

from redis.exceptions import ConnectionError as RedisConnectionError

from models.helpers import TokenType
from schema.security import TokenSubject
from security.errors import (
    InvalidSignature,
    MalformedToken,
    RefreshTokenRevokedOrRotated,
    TokenExpired,
    TokenRevoked,
    WrongTokenType,
)
from security.token_service import TokenService, hash_token
from services.cache import RedisCacheService

DANA = TokenSubject(id="user-1", email="dana@example.org", roles=["user", "volunteer"])
OMER = TokenSubject(id="user-2", email="omer@example.org", roles=["user"])


class BrokenRedis:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def delete(self, *keys):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_create_token_pair_shares_session_and_registers_refresh(token_service, codec):
    pair = await token_service.create_token_pair(DANA)

    access = codec.verify(pair.access_token)
    refresh = codec.verify(pair.refresh_token)

    assert pair.token_type == "Bearer"
    assert pair.expires_in == 3600
    assert pair.refresh_expires_in == 30 * 24 * 60 * 60
    assert access.type == TokenType.ACCESS
    assert refresh.type == TokenType.REFRESH
    assert access.session_id == refresh.session_id
    assert len(access.session_id) == 64
    assert access.exp - access.iat == 3600
    assert await token_service.get_stored_refresh_token(access.session_id) == pair.refresh_token


@pytest.mark.asyncio
async def test_verify_token_returns_claims(token_service):
    pair = await token_service.create_token_pair(DANA)

    payload = await token_service.verify_token(pair.access_token)

    assert payload.user_id == "user-1"
    assert payload.email == "dana@example.org"
    assert payload.roles == ["user", "volunteer"]


@pytest.mark.asyncio
async def test_access_token_is_valid_until_its_expiry_second(token_service, clock):
    pair = await token_service.create_token_pair(DANA)

    clock.advance(3600)
    await token_service.verify_token(pair.access_token)

    clock.advance(1)
    with pytest.raises(TokenExpired):
        await token_service.verify_token(pair.access_token)


@pytest.mark.asyncio
async def test_tampered_token_fails_verification(token_service):
    pair = await token_service.create_token_pair(DANA)
    header, body, signature = pair.access_token.split(".")
    altered = ("A" if signature[0] != "A" else "B") + signature[1:]

    with pytest.raises(InvalidSignature):
        await token_service.verify_token(f"{header}.{body}.{altered}")

    with pytest.raises(MalformedToken):
        await token_service.verify_token("not-a-token")


@pytest.mark.asyncio
async def test_revoked_access_token_fails_before_expiry(token_service, redis_client):
    pair = await token_service.create_token_pair(DANA)

    await token_service.revoke_token(pair.access_token)

    with pytest.raises(TokenRevoked):
        await token_service.verify_token(pair.access_token)

    ttl = redis_client.ttl(f"blacklisted_token:{hash_token(pair.access_token)}")
    assert ttl == pytest.approx(3600, abs=1)


@pytest.mark.asyncio
async def test_blacklist_entry_disappears_with_the_token(token_service, redis_client, clock):
    pair = await token_service.create_token_pair(DANA)
    await token_service.revoke_token(pair.access_token)

    clock.advance(3601)

    assert redis_client.ttl(f"blacklisted_token:{hash_token(pair.access_token)}") is None
    with pytest.raises(TokenExpired):
        await token_service.verify_token(pair.access_token)


@pytest.mark.asyncio
async def test_revoking_refresh_token_removes_its_record(token_service, codec):
    pair = await token_service.create_token_pair(DANA)
    session_id = codec.verify(pair.refresh_token).session_id

    await token_service.revoke_token(pair.refresh_token)

    assert await token_service.get_stored_refresh_token(session_id) is None
    with pytest.raises(TokenRevoked):
        await token_service.refresh_access_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_revoke_token_ignores_invalid_and_expired_tokens(token_service, redis_client, clock):
    await token_service.revoke_token("garbage")

    pair = await token_service.create_token_pair(DANA)
    clock.advance(3601)
    await token_service.revoke_token(pair.access_token)

    assert redis_client.ttl(f"blacklisted_token:{hash_token(pair.access_token)}") is None


@pytest.mark.asyncio
async def test_refresh_rejects_access_tokens(token_service):
    pair = await token_service.create_token_pair(DANA)

    with pytest.raises(WrongTokenType):
        await token_service.refresh_access_token(pair.access_token)


@pytest.mark.asyncio
async def test_refresh_without_rotation_keeps_refresh_token_usable(token_service, codec, clock):
    pair = await token_service.create_token_pair(DANA)
    clock.advance(10)

    first = await token_service.refresh_access_token(pair.refresh_token)
    second = await token_service.refresh_access_token(pair.refresh_token)

    assert first.refresh_token is None
    assert first.expires_in == 3600
    new_access = await token_service.verify_token(first.access_token)
    assert new_access.type == TokenType.ACCESS
    assert new_access.session_id == codec.verify(pair.refresh_token).session_id
    assert new_access.iat == codec.verify(pair.access_token).iat + 10
    assert second.access_token


@pytest.mark.asyncio
async def test_refresh_with_rotation_invalidates_previous_refresh_token(cache, codec, clock):
    service = TokenService(cache, codec, rotate_refresh_tokens=True)
    pair = await service.create_token_pair(DANA)
    clock.advance(5)

    response = await service.refresh_access_token(pair.refresh_token)

    assert response.refresh_token and response.refresh_token != pair.refresh_token
    assert response.refresh_expires_in == 30 * 24 * 60 * 60

    with pytest.raises(RefreshTokenRevokedOrRotated):
        await service.refresh_access_token(pair.refresh_token)

    await service.refresh_access_token(response.refresh_token)


@pytest.mark.asyncio
async def test_revoke_user_session_invalidates_refresh_token(token_service, codec):
    pair = await token_service.create_token_pair(DANA)
    session_id = codec.verify(pair.refresh_token).session_id

    assert await token_service.revoke_user_session(session_id) is True
    assert await token_service.revoke_user_session(session_id) is False

    with pytest.raises(RefreshTokenRevokedOrRotated):
        await token_service.verify_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_concurrent_logins_are_independently_revocable(token_service, codec):
    phone = await token_service.create_token_pair(DANA)
    laptop = await token_service.create_token_pair(DANA)

    phone_session = codec.verify(phone.refresh_token).session_id
    laptop_session = codec.verify(laptop.refresh_token).session_id
    assert phone_session != laptop_session

    await token_service.revoke_token(phone.refresh_token)

    with pytest.raises(TokenRevoked):
        await token_service.refresh_access_token(phone.refresh_token)
    assert (await token_service.refresh_access_token(laptop.refresh_token)).access_token


@pytest.mark.asyncio
async def test_get_user_active_sessions_lists_only_that_user(token_service, codec, clock):
    first = await token_service.create_token_pair(DANA)
    clock.advance(60)
    second = await token_service.create_token_pair(DANA)
    await token_service.create_token_pair(OMER)

    sessions = await token_service.get_user_active_sessions("user-1")

    assert [session.session_id for session in sessions] == [
        codec.verify(first.refresh_token).session_id,
        codec.verify(second.refresh_token).session_id,
    ]
    assert sessions[0].expires_at > sessions[0].created_at


@pytest.mark.asyncio
async def test_store_failures_propagate_from_verification(codec):
    service = TokenService(RedisCacheService(BrokenRedis()), codec)

    with pytest.raises(RedisConnectionError):
        await service.verify_token("a.b.c")

    with pytest.raises(RedisConnectionError):
        await service.create_token_pair(DANA)


@pytest.mark.asyncio
async def test_revoke_token_swallows_store_failures(token_service, codec):
    pair = await token_service.create_token_pair(DANA)
    broken = TokenService(RedisCacheService(BrokenRedis()), codec)

    await broken.revoke_token(pair.access_token)
