"""Contains all models commonly used across different modules."""
from enum import Enum


class Role(str, Enum):
    """Enumeration of user roles."""
    USER = "user"
    VOLUNTEER = "volunteer"
    ADMIN = "admin"
    ORG_ADMIN = "org_admin"
    SUPER_ADMIN = "super_admin"


# Roles that grant access to admin-only endpoints
ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.ORG_ADMIN.value, Role.SUPER_ADMIN.value})


class TokenType(str, Enum):
    """Enum for session token types."""

    ACCESS = "access"
    REFRESH = "refresh"


class AuthSource(str, Enum):
    """Enum for the verification path that produced an identity."""

    SESSION = "session"
    EXTERNAL_PROVIDER = "external_provider"
