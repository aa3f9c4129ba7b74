import os

# Must be set before the application modules are imported
os.environ.setdefault("JWT_SECRET", "test-signing-secret-that-is-at-least-32-bytes")

import fnmatch
import time

from typing import Dict, List, Optional

import httpx
import logfire
import pytest
import pytest_asyncio

from pymongo.errors import DuplicateKeyError

from main import configure_services, create_app
from schema.users import UserRecord
from security.codec import TokenCodec
from security.errors import IdentityProviderError
from security.guards import Authenticator
from security.identity_provider import ExternalIdentity
from security.token_service import TokenService
from services.cache import RedisCacheService
from services.rate_limit import RateLimitService
from services.sessions import SessionService
from utils.clock import from_epoch
from utils.settings import AuthSettings

logfire.configure(send_to_logfire=False, console=False)

TEST_SECRET = os.environ["JWT_SECRET"]
START_TIME = 1_700_000_000.0


class Clock:
    def __init__(self, now: float):
        self.now = now

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the subset of ``redis.asyncio.Redis`` we use."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._expires: Dict[str, float] = {}

    def _purge(self, key):
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= time.time():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def ttl(self, key) -> Optional[float]:
        self._purge(key)
        if key not in self._data:
            return None
        expires_at = self._expires.get(key)
        return None if expires_at is None else expires_at - time.time()

    async def ping(self):
        return True

    async def get(self, key):
        self._purge(key)
        return self._data.get(key)

    async def set(self, key, value, ex=None):
        self._data[key] = value
        if ex:
            self._expires[key] = time.time() + ex
        else:
            self._expires.pop(key, None)
        return True

    async def delete(self, *keys):
        deleted = 0
        for key in keys:
            self._purge(key)
            if key in self._data:
                del self._data[key]
                self._expires.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, *keys):
        count = 0
        for key in keys:
            self._purge(key)
            count += key in self._data
        return count

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def incrby(self, key, amount):
        self._purge(key)
        value = int(self._data.get(key, 0)) + amount
        self._data[key] = str(value)
        return value

    async def scan_iter(self, match=None, count=None):
        for key in list(self._data):
            self._purge(key)
            if key in self._data and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key


class FakeUserRepository:
    """Dict backed stand-in for ``UserRepository`` with the same method signatures."""

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self.touched: List[str] = []

    async def get_by_id(self, user_id):
        return self._users.get(user_id)

    async def get_by_email(self, email):
        email = email.strip().lower()
        return next((user for user in self._users.values() if user.email == email), None)

    async def get_by_firebase_uid(self, firebase_uid):
        return next(
            (user for user in self._users.values() if user.firebase_uid == firebase_uid), None
        )

    async def create(self, email, password_hash, name=None, roles=None, firebase_uid=None):
        email = email.strip().lower()
        if await self.get_by_email(email):
            raise DuplicateKeyError(f"duplicate email {email}")

        user = UserRecord(
            id=f"{len(self._users) + 1:024x}",
            email=email,
            name=name or email.split("@")[0],
            roles=roles or ["user"],
            firebase_uid=firebase_uid,
            password_hash=password_hash,
        )
        self._users[user.id] = user
        return user

    async def link_firebase_uid(self, user_id, firebase_uid):
        user = self._users.get(user_id)
        if user is None:
            return None

        linked = user.model_copy(update={"firebase_uid": firebase_uid})
        self._users[user_id] = linked
        return linked

    async def touch_last_active(self, user_id):
        self.touched.append(user_id)


class FakeIdentityProvider:
    """Accepts only the tokens registered with ``add_token``."""

    def __init__(self):
        self._tokens: Dict[str, ExternalIdentity] = {}
        self.calls: List[str] = []

    def add_token(self, token, subject, email=None, email_verified=True):
        self._tokens[token] = ExternalIdentity(
            subject=subject,
            email=email,
            email_verified=email_verified,
            expires_at=from_epoch(time.time() + 3600),
        )

    async def verify_external_token(self, token):
        self.calls.append(token)
        identity = self._tokens.get(token)
        if identity is None:
            raise IdentityProviderError("Invalid identity token")
        return identity


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    clock = Clock(START_TIME)
    monkeypatch.setattr(time, "time", clock.time)
    return clock


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def cache(redis_client):
    return RedisCacheService(redis_client)


@pytest.fixture
def settings():
    return AuthSettings(jwt_secret=TEST_SECRET)


@pytest.fixture
def codec():
    return TokenCodec(TEST_SECRET)


@pytest.fixture
def token_service(cache, codec, settings):
    return TokenService(
        cache,
        codec,
        access_token_ttl=settings.access_token_ttl,
        refresh_token_ttl=settings.refresh_token_ttl,
    )


@pytest.fixture
def rate_limiter(cache):
    return RateLimitService(cache)


@pytest.fixture
def session_service(cache, settings):
    return SessionService(cache, settings.session_ttl)


@pytest.fixture
def users():
    return FakeUserRepository()


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def authenticator(token_service, rate_limiter, identity_provider, users):
    return Authenticator(token_service, rate_limiter, identity_provider, users)


@pytest.fixture
def app(settings, cache, users, identity_provider):
    application = create_app(lifespan_handler=None)
    configure_services(application, settings, cache, users, identity_provider)
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
