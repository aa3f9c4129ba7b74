"""
Redis backed rate limiting with per action rules and block windows.

Each (action, identifier) pair owns a counter record holding the request
count and the window reset time, plus an optional block marker holding the
time the block ends. Both expire through Redis TTLs, after which the next call
starts a fresh window.

The read-increment-write sequence is not atomic: two concurrent requests at
the threshold may both be admitted.
"""

import math
import time

from typing import Dict, Optional

import logfire

from fastapi import Request

from schema.security import (
    RateLimitResult,
    RateLimitRule,
    RateLimitStats,
    RateLimitStatus,
)
from services.cache import RedisCacheService
from utils.clock import from_epoch

DEFAULT_ACTION = "general"

DEFAULT_RULES: Dict[str, RateLimitRule] = {
    # General API calls
    "general": RateLimitRule(requests=100, window_seconds=60, block_seconds=5 * 60),
    "login": RateLimitRule(requests=5, window_seconds=15 * 60, block_seconds=30 * 60),
    "register": RateLimitRule(requests=3, window_seconds=60 * 60, block_seconds=2 * 60 * 60),
    "password_reset": RateLimitRule(requests=3, window_seconds=60 * 60, block_seconds=60 * 60),
    # Chat/messaging
    "chat": RateLimitRule(requests=50, window_seconds=60, block_seconds=10 * 60),
    "search": RateLimitRule(requests=30, window_seconds=60, block_seconds=5 * 60),
}


def _ttl(until: float, now: float) -> int:
    return max(1, math.ceil(until - now))


class RateLimitService:
    """Service enforcing request budgets per identifier and action."""

    def __init__(self, cache: RedisCacheService, rules: Optional[Dict[str, RateLimitRule]] = None):
        self.cache = cache
        self.rules = dict(rules or DEFAULT_RULES)
        self.rate_limit_prefix = "rate_limit:"
        self.blocked_prefix = "blocked:"

    def _counter_key(self, action: str, identifier: str) -> str:
        return f"{self.rate_limit_prefix}{action}:{identifier}"

    def _block_key(self, action: str, identifier: str) -> str:
        return f"{self.blocked_prefix}{action}:{identifier}"

    def get_rule(self, action: str) -> RateLimitRule:
        return self.rules.get(action) or self.rules[DEFAULT_ACTION]

    def get_rules(self) -> Dict[str, RateLimitRule]:
        return dict(self.rules)

    async def _get_block_expiry(self, action: str, identifier: str, now: float) -> Optional[float]:
        blocked_until = await self.cache.get(self._block_key(action, identifier))
        if isinstance(blocked_until, (int, float)) and blocked_until > now:
            return float(blocked_until)
        return None

    async def check_rate_limit(
        self,
        identifier: str,
        action: str = DEFAULT_ACTION,
        rule: Optional[RateLimitRule] = None,
    ) -> RateLimitResult:
        """Count a request for ``identifier`` and decide whether it may proceed.

        Args:
            identifier (str): Who is being limited, e.g. an IP address or a
                token fingerprint.
            action (str, optional): Name of the limited action. Defaults to "general".
            rule (Optional[RateLimitRule], optional): Explicit budget for this
                call. Defaults to the configured rule for ``action``.

        Returns:
            RateLimitResult: Whether the request is allowed and the counter state.
        """
        rule = rule or self.get_rule(action)
        now = time.time()

        # Blocked callers are rejected without touching the counter
        blocked_until = await self._get_block_expiry(action, identifier, now)
        if blocked_until is not None:
            return RateLimitResult(
                allowed=False,
                limit=rule.requests,
                remaining=0,
                reset_time=from_epoch(blocked_until),
                blocked=True,
                block_expires_at=from_epoch(blocked_until),
            )

        counter_key = self._counter_key(action, identifier)
        counter = await self.cache.get(counter_key)

        if not isinstance(counter, dict) or counter.get("reset_at", 0) <= now:
            counter = {"count": 0, "reset_at": now + rule.window_seconds}

        count = int(counter.get("count", 0)) + 1
        reset_at = float(counter["reset_at"])

        if count > rule.requests:
            if rule.block_seconds:
                blocked_until = now + rule.block_seconds
                await self.cache.set_with_expiry(
                    self._block_key(action, identifier), blocked_until, rule.block_seconds
                )
                # The next window starts fresh once the block ends
                await self.cache.delete(counter_key)

                logfire.warning(
                    f"Rate limit exceeded for {identifier} on {action}, blocked for {rule.block_seconds}s"
                )

                return RateLimitResult(
                    allowed=False,
                    limit=rule.requests,
                    remaining=0,
                    reset_time=from_epoch(reset_at),
                    blocked=True,
                    block_expires_at=from_epoch(blocked_until),
                )

            logfire.warning(f"Rate limit exceeded for {identifier} on {action}")
            return RateLimitResult(
                allowed=False,
                limit=rule.requests,
                remaining=0,
                reset_time=from_epoch(reset_at),
            )

        await self.cache.set_with_expiry(
            counter_key, {"count": count, "reset_at": reset_at}, _ttl(reset_at, now)
        )

        return RateLimitResult(
            allowed=True,
            limit=rule.requests,
            remaining=rule.requests - count,
            reset_time=from_epoch(reset_at),
        )

    async def apply_custom_rate_limit(
        self, identifier: str, rule: RateLimitRule, custom_key: Optional[str] = None
    ) -> RateLimitResult:
        return await self.check_rate_limit(identifier, custom_key or "custom", rule)

    async def clear_rate_limit(self, identifier: str, action: str = DEFAULT_ACTION) -> bool:
        """Remove the counter and any block for ``identifier``.

        Returns:
            bool: True if anything was removed.
        """
        counter_deleted = await self.cache.delete(self._counter_key(action, identifier))
        block_deleted = await self.cache.delete(self._block_key(action, identifier))

        if counter_deleted or block_deleted:
            logfire.info(f"Cleared rate limit for {identifier} on {action}")

        return counter_deleted or block_deleted

    async def get_rate_limit_status(
        self, identifier: str, action: str = DEFAULT_ACTION
    ) -> RateLimitStatus:
        """Read the counter state without counting a request."""
        rule = self.get_rule(action)
        now = time.time()

        blocked_until = await self._get_block_expiry(action, identifier, now)

        counter = await self.cache.get(self._counter_key(action, identifier))
        if not isinstance(counter, dict) or counter.get("reset_at", 0) <= now:
            counter = None

        requests = int(counter["count"]) if counter else 0

        return RateLimitStatus(
            requests=requests,
            limit=rule.requests,
            remaining=0 if blocked_until else max(0, rule.requests - requests),
            reset_time=from_epoch(counter["reset_at"]) if counter else None,
            blocked=blocked_until is not None,
            block_expires_at=from_epoch(blocked_until) if blocked_until else None,
        )

    async def get_rate_limit_stats(self) -> RateLimitStats:
        rate_limit_keys = await self.cache.get_keys(f"{self.rate_limit_prefix}*")
        blocked_keys = await self.cache.get_keys(f"{self.blocked_prefix}*")

        return RateLimitStats(
            total_rate_limit_entries=len(rate_limit_keys),
            total_blocked_entries=len(blocked_keys),
            rate_limit_keys=rate_limit_keys,
            blocked_keys=blocked_keys,
        )


def get_rate_limit_service(request: Request) -> RateLimitService:
    """Get the rate limit service instance wired at startup."""
    return request.app.state.rate_limiter
