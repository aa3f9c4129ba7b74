"""Contains the schema definition for requests and responses related to users
"""

import re

from pydantic import BaseModel, Field, EmailStr, field_validator

from typing import Annotated, List, Optional

from fastapi import HTTPException
from fastapi import status


class UserRecord(BaseModel):
    """User profile as seen by the authentication layer."""

    id: str
    email: str
    name: Optional[str] = None
    roles: List[str] = ["user"]
    is_active: bool = True
    firebase_uid: Optional[str] = None
    password_hash: Annotated[Optional[str], Field(default=None, exclude=True, repr=False)]


class RegisterRequest(BaseModel):
    """Describes the structure of the register request."""

    email: Annotated[EmailStr, Field(max_length=254)]
    password: Annotated[str, Field(min_length=8, max_length=72)]
    name: Annotated[Optional[str], Field(default=None, max_length=100)]

    # * Validate the password to ensure it has at least one uppercase letter,
    # * one lowercase letter and one number
    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if not re.search(r"[A-Z]", v):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Password must contain at least one uppercase letter",
            )
        if not re.search(r"[a-z]", v):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Password must contain at least one lowercase letter",
            )
        if not re.search(r"\d", v):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Password must contain at least one number",
            )
        return v


class PublicUser(BaseModel):
    """Describes the user data returned to clients."""

    id: Annotated[str, Field(description="Unique identifier for the user")]
    email: Annotated[str, Field(max_length=254)]
    name: Optional[str] = None
    roles: Annotated[List[str], Field(default=[])]
    is_active: Annotated[bool, Field(default=True, serialization_alias="isActive")]

    @classmethod
    def from_record(cls, record: UserRecord) -> "PublicUser":
        return cls(
            id=record.id,
            email=record.email,
            name=record.name,
            roles=record.roles,
            is_active=record.is_active,
        )


class CurrentIdentityResponse(BaseModel):
    """Describes the authenticated identity of the caller."""

    user_id: str
    email: Optional[str] = None
    roles: List[str]
    session_id: str
    source: str


class GreetingResponse(BaseModel):
    message: str
    authenticated: bool


class ProviderSignInRequest(BaseModel):
    """Describes the structure of an identity provider sign in request."""

    id_token: Annotated[str, Field(min_length=1, description="Firebase ID token")]
    name: Annotated[Optional[str], Field(default=None, max_length=100)]


class ProviderSignInResponse(BaseModel):
    user: PublicUser
    created: bool
