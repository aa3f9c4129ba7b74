"""
Tests for services/rate_limit.py
"""
import pytest

from schema.security import RateLimitRule
from services.rate_limit import DEFAULT_RULES, RateLimitService

FIVE_PER_MINUTE = RateLimitRule(requests=5, window_seconds=60, block_seconds=300)


@pytest.fixture
def limiter(cache):
    return RateLimitService(cache, rules={"general": DEFAULT_RULES["general"], "login": FIVE_PER_MINUTE})


@pytest.mark.asyncio
async def test_sixth_call_in_window_is_denied_and_blocked(limiter, clock):
    results = [await limiter.check_rate_limit("10.0.0.1", "login") for _ in range(5)]

    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == [4, 3, 2, 1, 0]

    denied = await limiter.check_rate_limit("10.0.0.1", "login")

    assert denied.allowed is False
    assert denied.blocked is True
    assert denied.remaining == 0
    assert denied.block_expires_at.timestamp() == clock.now + 300


@pytest.mark.asyncio
async def test_blocked_caller_stays_blocked_until_block_ends(limiter, clock):
    for _ in range(6):
        await limiter.check_rate_limit("10.0.0.1", "login")

    clock.advance(299)
    still_blocked = await limiter.check_rate_limit("10.0.0.1", "login")
    assert still_blocked.allowed is False
    assert still_blocked.blocked is True

    clock.advance(1)
    after_block = await limiter.check_rate_limit("10.0.0.1", "login")
    assert after_block.allowed is True
    assert after_block.remaining == 4


@pytest.mark.asyncio
async def test_rule_without_block_only_denies_until_window_resets(cache, clock):
    limiter = RateLimitService(cache)
    rule = RateLimitRule(requests=2, window_seconds=60)

    assert (await limiter.check_rate_limit("u", "custom", rule)).allowed
    assert (await limiter.check_rate_limit("u", "custom", rule)).allowed

    denied = await limiter.check_rate_limit("u", "custom", rule)
    assert denied.allowed is False
    assert denied.blocked is False
    assert denied.block_expires_at is None

    clock.advance(60)
    assert (await limiter.check_rate_limit("u", "custom", rule)).allowed


@pytest.mark.asyncio
async def test_window_expiry_starts_a_fresh_count(limiter, clock):
    for _ in range(4):
        await limiter.check_rate_limit("10.0.0.1", "login")

    clock.advance(61)
    result = await limiter.check_rate_limit("10.0.0.1", "login")

    assert result.allowed is True
    assert result.remaining == 4
    assert result.reset_time.timestamp() == clock.now + 60


@pytest.mark.asyncio
async def test_identifiers_and_actions_are_counted_separately(limiter):
    for _ in range(6):
        await limiter.check_rate_limit("10.0.0.1", "login")

    assert (await limiter.check_rate_limit("10.0.0.2", "login")).allowed
    assert (await limiter.check_rate_limit("10.0.0.1", "general")).allowed


@pytest.mark.asyncio
async def test_unknown_action_uses_general_rule(cache):
    limiter = RateLimitService(cache)

    result = await limiter.check_rate_limit("10.0.0.1", "no_such_action")

    assert result.limit == 100
    assert result.remaining == 99


@pytest.mark.asyncio
async def test_status_does_not_count_requests(limiter):
    await limiter.check_rate_limit("10.0.0.1", "login")

    first = await limiter.get_rate_limit_status("10.0.0.1", "login")
    second = await limiter.get_rate_limit_status("10.0.0.1", "login")

    assert first == second
    assert first.requests == 1
    assert first.remaining == 4
    assert first.blocked is False


@pytest.mark.asyncio
async def test_clear_rate_limit_lifts_a_block(limiter):
    for _ in range(6):
        await limiter.check_rate_limit("10.0.0.1", "login")

    assert (await limiter.get_rate_limit_status("10.0.0.1", "login")).blocked is True
    assert await limiter.clear_rate_limit("10.0.0.1", "login") is True
    assert await limiter.clear_rate_limit("10.0.0.1", "login") is False

    assert (await limiter.check_rate_limit("10.0.0.1", "login")).allowed


@pytest.mark.asyncio
async def test_stats_count_counters_and_blocks(limiter):
    await limiter.check_rate_limit("10.0.0.1", "general")
    for _ in range(6):
        await limiter.check_rate_limit("10.0.0.2", "login")

    stats = await limiter.get_rate_limit_stats()

    assert stats.total_rate_limit_entries == 1
    assert stats.total_blocked_entries == 1
    assert stats.blocked_keys == ["blocked:login:10.0.0.2"]


@pytest.mark.asyncio
async def test_retry_after_points_at_block_expiry(limiter, clock):
    for _ in range(5):
        await limiter.check_rate_limit("10.0.0.1", "login")
    denied = await limiter.check_rate_limit("10.0.0.1", "login")

    clock.advance(100)

    assert denied.retry_after == 200


@pytest.mark.asyncio
async def test_custom_rate_limit_uses_its_own_counter(cache):
    limiter = RateLimitService(cache)
    rule = RateLimitRule(requests=1, window_seconds=10, block_seconds=20)

    assert (await limiter.apply_custom_rate_limit("10.0.0.1", rule, "upload")).allowed
    assert not (await limiter.apply_custom_rate_limit("10.0.0.1", rule, "upload")).allowed
    assert (await limiter.check_rate_limit("10.0.0.1", "general")).allowed


def test_default_rules():
    assert DEFAULT_RULES["general"] == RateLimitRule(requests=100, window_seconds=60, block_seconds=300)
    assert DEFAULT_RULES["login"] == RateLimitRule(requests=5, window_seconds=900, block_seconds=1800)
    assert DEFAULT_RULES["register"] == RateLimitRule(requests=3, window_seconds=3600, block_seconds=7200)
    assert DEFAULT_RULES["password_reset"].block_seconds == 3600
    assert DEFAULT_RULES["chat"] == RateLimitRule(requests=50, window_seconds=60, block_seconds=600)
    assert DEFAULT_RULES["search"].requests == 30
