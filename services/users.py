"""User profile store backed by the ``user_profiles`` MongoDB collection."""

from typing import List, Optional

import logfire

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Request

from models.users import UserProfile
from schema.users import UserRecord
from utils.clock import utc_now


def _to_record(profile: UserProfile) -> UserRecord:
    return UserRecord(
        id=str(profile.id),
        email=profile.email,
        name=profile.name,
        roles=list(profile.roles),
        is_active=profile.is_active,
        firebase_uid=profile.firebase_uid,
        password_hash=profile.password,
    )


class UserRepository:
    """Looks up and creates user profiles, returning ``UserRecord`` values."""

    async def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        """
        Fetches a user from the database by their ID.

        Args:
            user_id (str): The ID of the user to fetch.

        Returns:
            Optional[UserRecord]: The user if found, None otherwise.
        """
        try:
            object_id = PydanticObjectId(user_id)
        except (InvalidId, TypeError):
            return None

        profile = await UserProfile.get(object_id)
        return _to_record(profile) if profile else None

    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        profile = await UserProfile.find_one(UserProfile.email == email.strip().lower())
        return _to_record(profile) if profile else None

    async def get_by_firebase_uid(self, firebase_uid: str) -> Optional[UserRecord]:
        """Resolve an identity provider subject to an application user."""
        profile = await UserProfile.find_one(UserProfile.firebase_uid == firebase_uid)
        return _to_record(profile) if profile else None

    async def create(
        self,
        email: str,
        password_hash: Optional[str],
        name: Optional[str] = None,
        roles: Optional[List[str]] = None,
        firebase_uid: Optional[str] = None,
    ) -> UserRecord:
        """Insert a new profile.

        Profiles created through the identity provider pass ``firebase_uid``
        and no password hash.

        Raises:
            pymongo.errors.DuplicateKeyError: Raised when the email is taken.
        """
        normalized = email.strip().lower()
        profile = UserProfile(
            email=normalized,
            name=name or normalized.split("@")[0],
            password=password_hash,
            roles=roles or ["user"],
            firebase_uid=firebase_uid,
        )
        await profile.insert()

        logfire.info(f"Saved new user profile to database: {normalized}")
        return _to_record(profile)

    async def link_firebase_uid(self, user_id: str, firebase_uid: str) -> Optional[UserRecord]:
        """Attach an identity provider subject to an existing profile."""
        try:
            object_id = PydanticObjectId(user_id)
        except (InvalidId, TypeError):
            return None

        profile = await UserProfile.get(object_id)
        if profile is None:
            return None

        profile.firebase_uid = firebase_uid
        await profile.save()

        logfire.info(f"Linked identity provider account to user {user_id}")
        return _to_record(profile)

    async def touch_last_active(self, user_id: str) -> None:
        try:
            object_id = PydanticObjectId(user_id)
        except (InvalidId, TypeError):
            return

        profile = await UserProfile.get(object_id)
        if profile:
            profile.last_active = utc_now()
            await profile.save()


def get_user_repository(request: Request) -> UserRepository:
    """Get the user repository instance wired at startup."""
    return request.app.state.users
