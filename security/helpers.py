"""Contains all security related helper functions
"""
from typing import Optional

from fastapi import Request
from fastapi.security import OAuth2PasswordBearer

from passlib.context import CryptContext

from schema.users import UserRecord
from services.users import UserRepository

BEARER_PREFIX = "Bearer "
CUSTOM_TOKEN_HEADER = "X-Auth-Token"


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Only used to document the bearer scheme in OpenAPI, guards extract tokens themselves
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies that `plain_password` and `hashed_password` are equal.

    Args:
        plain_password (str): The plain text password to verify.
        hashed_password (str): The hashed password to compare against.

    Returns:
        bool: True if the passwords match, False otherwise.
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generates a hash for the given password.

    Args:
        password (str): The plain text password to hash.

    Returns:
        str: The hashed password.
    """
    return pwd_context.hash(password)


async def authenticate_user(
    users: UserRepository, email: str, password: str
) -> Optional[UserRecord]:
    """Authenticates a user by their email and password.

    Accounts without a stored password hash (created through the identity
    provider) cannot log in with a password.

    Args:
        users (UserRepository): The user profile store.
        email (str): The email of the user.
        password (str): The password of the user.

    Returns:
        Optional[UserRecord]: The user if authentication is successful, None otherwise.
    """
    user = await users.get_by_email(email)

    if not user or not user.is_active:
        return None
    if not user.password_hash:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def extract_token(request: Request) -> Optional[str]:
    """Extracts a credential from the `Authorization: Bearer` header,
    falling back to the `X-Auth-Token` header used by mobile clients.

    Args:
        request (Request): The incoming request.

    Returns:
        Optional[str]: The raw token, None if no credential was sent.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith(BEARER_PREFIX):
        token = auth_header[len(BEARER_PREFIX):].strip()
        if token:
            return token

    custom_token = request.headers.get(CUSTOM_TOKEN_HEADER)
    if custom_token and custom_token.strip():
        return custom_token.strip()

    return None


def get_client_ip(request: Request) -> str:
    """
    Extract client identifier from the request.

    Only the connection peer is used. Behind a trusted proxy,
    ``ProxyHeadersMiddleware`` has already replaced it with the forwarded
    client address, while `X-Forwarded-For` sent by anyone else is ignored.

    Args:
        request: FastAPI Request object

    Returns:
        Client identifier string (typically IP address)
    """
    return request.client.host if request.client else "unknown"
