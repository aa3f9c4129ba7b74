"""
FastAPI Rate Limiting Middleware backed by the shared Redis rate limiter

Every request outside the excluded paths is counted per client IP address
against a named rule of ``RateLimitService`` (``general`` by default), so all
application instances share the same counters.
"""

from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from security.guards import rate_limit_headers
from security.helpers import get_client_ip
from services.rate_limit import DEFAULT_ACTION, RateLimitService
from utils.logger import get_logfire

logger = get_logfire(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware enforcing a per client rate limit rule.

    The rate limiter is read from ``app.state.rate_limiter`` on each request,
    since it is only created once the application has started.
    """

    def __init__(
        self,
        app: FastAPI,
        action: str = DEFAULT_ACTION,
        exclude_paths: Optional[list] = None,
    ):
        """
        Initialize the rate limiting middleware.

        Args:
            app: FastAPI application instance
            action: Name of the rate limit rule applied to every request (default: "general")
            exclude_paths: List of paths to exclude from rate limiting (default: None)
        """
        super().__init__(app)

        self.action = action
        self.exclude_paths = set(exclude_paths) if exclude_paths else set()

        logger.info(f"Rate limiter middleware initialized with rule '{action}'")

    def _should_exclude_path(self, path: str) -> bool:
        """
        Check if the request path should be excluded from rate limiting.

        Args:
            path: Request path

        Returns:
            True if path should be excluded, False otherwise
        """
        return path in self.exclude_paths

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process incoming requests and enforce rate limiting.

        Args:
            request: FastAPI Request object
            call_next: Next middleware or route handler

        Returns:
            Response object, 429 when the client is over its budget
        """
        if self._should_exclude_path(request.url.path):
            return await call_next(request)

        rate_limiter: Optional[RateLimitService] = getattr(request.app.state, "rate_limiter", None)
        if rate_limiter is None:
            return await call_next(request)

        client_id = get_client_ip(request)

        try:
            result = await rate_limiter.check_rate_limit(client_id, self.action)
        except RedisError as e:
            # Availability over strictness when the store is down
            logger.error(f"Rate limit check failed for {client_id}, letting request through: {str(e)}")
            return await call_next(request)

        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {client_id} on {request.url.path}")

            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "message": f"Too many requests. Maximum {result.limit} requests allowed.",
                    "retry_after": result.retry_after,
                },
                headers=rate_limit_headers(result),
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)

        return response


def rate_limit_by_ip(action: str) -> Callable:
    """
    Build a route dependency applying the ``action`` rule per client IP.

    Args:
        action: Name of the rate limit rule, e.g. "login"

    Returns:
        Dependency raising a 429 HTTPException when the client is over budget
    """

    async def check(request: Request) -> None:
        rate_limiter: RateLimitService = request.app.state.rate_limiter
        client_id = get_client_ip(request)

        result = await rate_limiter.check_rate_limit(client_id, action)
        if not result.allowed:
            logger.warning(f"Rate limit '{action}' exceeded for {client_id}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers=rate_limit_headers(result),
            )

    return check
