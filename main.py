import os
import logfire

import httpx

from logging import INFO, basicConfig

from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from contextlib import asynccontextmanager

import redis.asyncio

from middleware.rate_limiting import RateLimitMiddleware

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from models.users import UserProfile

from routers import auth, users, sessions, rate_limit

from security.codec import TokenCodec
from security.guards import Authenticator
from security.identity_provider import FirebaseTokenVerifier, IdentityProvider
from security.token_service import TokenService
from services.cache import RedisCacheService
from services.rate_limit import RateLimitService
from services.sessions import SessionService
from services.users import UserRepository
from utils.logger import instrument_libraries
from utils.settings import AuthSettings, load_settings


# Load environment variables first
load_dotenv()

# Configure logfire BEFORE creating FastAPI app
logfire.configure(token=os.getenv("LOGFIRE_WRITE_TOKEN"), send_to_logfire="if-token-present")
basicConfig(handlers=[logfire.LogfireLoggingHandler()], level=INFO)


def configure_services(
    app: FastAPI,
    settings: AuthSettings,
    cache: RedisCacheService,
    users: UserRepository,
    identity_provider: IdentityProvider,
) -> None:
    """Builds the authentication services and attaches them to ``app.state``.

    Raises:
        ConfigurationError: Raised when the signing secret is unusable.
    """
    token_service = TokenService(
        cache,
        TokenCodec(settings.jwt_secret),
        access_token_ttl=settings.access_token_ttl,
        refresh_token_ttl=settings.refresh_token_ttl,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )
    rate_limiter = RateLimitService(cache)

    app.state.settings = settings
    app.state.cache = cache
    app.state.users = users
    app.state.identity_provider = identity_provider
    app.state.token_service = token_service
    app.state.rate_limiter = rate_limiter
    app.state.session_service = SessionService(cache, settings.session_ttl)
    app.state.authenticator = Authenticator(token_service, rate_limiter, identity_provider, users)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logfire.info("Starting Karma Community application...")

    # Aborts startup on a missing or short JWT_SECRET
    settings = load_settings()

    client = AsyncIOMotorClient(
        settings.database_connection_string
    )  # * Connect to MongoDB

    await init_beanie(
        database=client[settings.database_name],
        document_models=[UserProfile],
    )
    logfire.info("Database initialized successfully")

    redis_connection = redis.asyncio.from_url(settings.redis_url, decode_responses=True)
    cache = RedisCacheService(redis_connection)
    await cache.ping()
    logfire.info("Redis connection established")

    http_client = httpx.AsyncClient(timeout=10.0)

    if not settings.firebase_project_id:
        logfire.warning("FIREBASE_PROJECT_ID is not set, identity provider tokens will be rejected")

    configure_services(
        app,
        settings,
        cache,
        UserRepository(),
        FirebaseTokenVerifier(settings.firebase_project_id, http_client),
    )

    if settings.logfire_instrument:
        instrument_libraries(app)
        logfire.info("FastAPI application instrumented with logfire")

    yield

    logfire.info("Shutting down Karma Community application...")
    await http_client.aclose()
    client.close()
    await redis_connection.aclose()
    logfire.info("Application shutdown complete")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Creates the application with its middleware stack and routers.

    Args:
        lifespan_handler (optional): Startup/shutdown handler. Tests pass None
            and wire services with ``configure_services`` themselves.
    """
    app = FastAPI(
        title="Karma Community API",
        description="Authentication, session and rate limiting core of the Karma Community backend.",
        lifespan=lifespan_handler,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        RateLimitMiddleware,
        exclude_paths=["/docs", "/openapi.json", "/redoc"],
    )
    # Added last so it runs first and rate limits see the forwarded client
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["127.0.0.1"])

    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(sessions.router)
    app.include_router(rate_limit.router)

    return app


app = create_app()
