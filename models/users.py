from datetime import datetime

from pydantic import Field, EmailStr, field_serializer
from typing import Annotated, List, Optional

from beanie import Document, Indexed, PydanticObjectId

from utils.clock import utc_now

from .helpers import Role


class UserProfile(Document):
    """Model for community member profiles.

    Accounts created through the identity provider have no password hash and
    are matched by ``firebase_uid`` instead.
    """
    email: Annotated[EmailStr, Indexed(unique=True), Field(max_length=254)]
    name: Annotated[Optional[str], Field(default=None, max_length=100)]
    password: Annotated[Optional[str], Field(default=None)]  # bcrypt hash
    firebase_uid: Annotated[Optional[str], Indexed(sparse=True), Field(default=None, serialization_alias="firebaseUid")]
    roles: Annotated[List[str], Field(default_factory=lambda: [Role.USER.value])]
    is_active: Annotated[bool, Field(default=True, serialization_alias="isActive")]
    created_at: Annotated[datetime, Field(default_factory=utc_now, serialization_alias="createdAt")]
    last_active: Annotated[datetime, Field(default_factory=utc_now, serialization_alias="lastActive")]

    @field_serializer("id")
    def convert_pydantic_object_id_to_string(self, id: PydanticObjectId):
        return str(id)

    class Settings:
        """Beanie document settings."""
        name = "user_profiles"
