"""
Tests for services/sessions.py
"""
import pytest

from schema.sessions import SessionMetadata

HOUR = 60 * 60


@pytest.mark.asyncio
async def test_create_session_stores_record_and_index(session_service, clock):
    session_id = await session_service.create_session(
        "user-1",
        "dana@example.org",
        SessionMetadata(username="dana", ip_address="10.0.0.1", user_agent="pytest"),
    )

    session = await session_service.get_session(session_id)

    assert len(session_id) == 64
    assert session.user_id == "user-1"
    assert session.email == "dana@example.org"
    assert session.username == "dana"
    assert session.ip_address == "10.0.0.1"
    assert session.user_agent == "pytest"
    assert await session_service.get_user_sessions("user-1") == [session_id]


@pytest.mark.asyncio
async def test_session_ids_are_unique(session_service):
    first = await session_service.create_session("user-1", "dana@example.org")
    second = await session_service.create_session("user-1", "dana@example.org")

    assert first != second
    assert await session_service.get_user_sessions("user-1") == [first, second]


@pytest.mark.asyncio
async def test_get_session_slides_expiry(session_service, redis_client, clock):
    session_id = await session_service.create_session("user-1", "dana@example.org")

    clock.advance(20 * HOUR)
    touched = await session_service.get_session(session_id)
    assert touched is not None
    assert redis_client.ttl(f"session:{session_id}") == pytest.approx(24 * HOUR)

    clock.advance(20 * HOUR)
    assert await session_service.get_session(session_id) is not None


@pytest.mark.asyncio
async def test_get_session_updates_last_activity(session_service, clock):
    session_id = await session_service.create_session("user-1", "dana@example.org")
    created = await session_service.get_session(session_id)

    clock.advance(90)
    touched = await session_service.get_session(session_id)

    assert touched.login_time == created.login_time
    assert touched.last_activity > created.last_activity


@pytest.mark.asyncio
async def test_untouched_session_expires(session_service, clock):
    session_id = await session_service.create_session("user-1", "dana@example.org")

    clock.advance(24 * HOUR)

    assert await session_service.get_session(session_id) is None
    assert await session_service.validate_session(session_id) is None


@pytest.mark.asyncio
async def test_get_session_of_unknown_id_is_none(session_service):
    assert await session_service.get_session("missing") is None
    assert await session_service.get_session("") is None


@pytest.mark.asyncio
async def test_delete_session_removes_record_and_index_entry(session_service):
    kept = await session_service.create_session("user-1", "dana@example.org")
    dropped = await session_service.create_session("user-1", "dana@example.org")

    assert await session_service.delete_session(dropped) is True
    assert await session_service.delete_session(dropped) is False

    assert await session_service.get_session(dropped) is None
    assert await session_service.get_user_sessions("user-1") == [kept]


@pytest.mark.asyncio
async def test_delete_all_user_sessions_counts_only_live_records(session_service, cache):
    first = await session_service.create_session("user-1", "dana@example.org")
    await session_service.create_session("user-1", "dana@example.org")
    await session_service.create_session("user-1", "dana@example.org")
    other = await session_service.create_session("user-2", "omer@example.org")

    # Record gone but still indexed
    await cache.delete(f"session:{first}")

    assert await session_service.delete_all_user_sessions("user-1") == 2
    assert await session_service.get_user_sessions("user-1") == []
    assert await session_service.get_session(other) is not None


@pytest.mark.asyncio
async def test_clean_expired_sessions_reconciles_index(session_service, cache):
    stale = await session_service.create_session("user-1", "dana@example.org")
    live = await session_service.create_session("user-1", "dana@example.org")
    await cache.delete(f"session:{stale}")

    await session_service.clean_expired_sessions("user-1")

    assert await session_service.get_user_sessions("user-1") == [live]
    assert [s.user_id for s in await session_service.get_user_sessions_info("user-1")] == ["user-1"]


@pytest.mark.asyncio
async def test_clean_expired_sessions_drops_empty_index(session_service, cache):
    stale = await session_service.create_session("user-1", "dana@example.org")
    await cache.delete(f"session:{stale}")

    await session_service.clean_expired_sessions("user-1")

    assert await cache.exists("user_sessions:user-1") is False


@pytest.mark.asyncio
async def test_session_stats_count_live_sessions(session_service):
    await session_service.create_session("user-1", "dana@example.org")
    await session_service.create_session("user-2", "omer@example.org")

    stats = await session_service.get_session_stats()

    assert stats.total_active_sessions == 2
    assert all(key.startswith("session:") for key in stats.session_keys)
