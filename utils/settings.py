"""Application settings read once from the environment at startup."""

import os

from typing import Annotated, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from security.errors import ConfigurationError

# Minimum signing secret length in bytes
MIN_SECRET_BYTES = 32

DEFAULT_ACCESS_TOKEN_TTL = 60 * 60  # 1 hour
DEFAULT_REFRESH_TOKEN_TTL = 30 * 24 * 60 * 60  # 30 days
DEFAULT_SESSION_TTL = 24 * 60 * 60  # 24 hours


class AuthSettings(BaseModel):
    """Immutable configuration handed to services at construction time."""

    model_config = ConfigDict(frozen=True)

    jwt_secret: Annotated[str, Field(repr=False)]
    access_token_ttl: Annotated[int, Field(gt=0)] = DEFAULT_ACCESS_TOKEN_TTL
    refresh_token_ttl: Annotated[int, Field(gt=0)] = DEFAULT_REFRESH_TOKEN_TTL
    session_ttl: Annotated[int, Field(gt=0)] = DEFAULT_SESSION_TTL
    rotate_refresh_tokens: bool = False
    redis_url: str = "redis://localhost:6379/0"
    database_connection_string: Optional[str] = None
    database_name: str = "karma_community"
    firebase_project_id: Optional[str] = None
    logfire_instrument: bool = False


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def validate_secret(secret: Optional[str]) -> str:
    """Ensures the token signing secret is present and long enough.

    Args:
        secret (Optional[str]): The configured signing secret.

    Raises:
        ConfigurationError: Raised when the secret is absent or shorter than
            ``MIN_SECRET_BYTES`` bytes.

    Returns:
        str: The validated secret.
    """
    if not secret or len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
        raise ConfigurationError(
            f"JWT_SECRET is missing or too short (minimum {MIN_SECRET_BYTES} bytes required)"
        )
    return secret


def load_settings() -> AuthSettings:
    """Builds ``AuthSettings`` from environment variables (and a ``.env`` file).

    Raises:
        ConfigurationError: Raised when a required value is missing or invalid.

    Returns:
        AuthSettings: The validated settings.
    """
    load_dotenv()

    return AuthSettings(
        jwt_secret=validate_secret(os.getenv("JWT_SECRET")),
        access_token_ttl=_get_int("ACCESS_TOKEN_EXPIRE_SECONDS", DEFAULT_ACCESS_TOKEN_TTL),
        refresh_token_ttl=_get_int("REFRESH_TOKEN_EXPIRE_SECONDS", DEFAULT_REFRESH_TOKEN_TTL),
        session_ttl=_get_int("SESSION_EXPIRE_SECONDS", DEFAULT_SESSION_TTL),
        rotate_refresh_tokens=_get_bool("ROTATE_REFRESH_TOKENS"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        database_connection_string=os.getenv("DATABASE_CONNECTION_STRING"),
        database_name=os.getenv("DATABASE_NAME", "karma_community"),
        firebase_project_id=os.getenv("FIREBASE_PROJECT_ID") or None,
        logfire_instrument=_get_bool("LOGFIRE_INSTRUMENT"),
    )
