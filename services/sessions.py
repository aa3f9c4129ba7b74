"""Server-side session registry keyed by opaque random session ids.

Used by the legacy session login path. Each session record slides its expiry
on every read, and a per-user index of session ids supports logging out of
every device. Index updates are not atomic with record deletion, so the index
can drift until ``clean_expired_sessions`` reconciles it.
"""

import secrets

from typing import List, Optional

import logfire

from fastapi import Request
from pydantic import ValidationError

from schema.sessions import SessionMetadata, SessionStats, UserSession
from services.cache import RedisCacheService
from utils.clock import utc_now
from utils.settings import DEFAULT_SESSION_TTL

SESSION_ID_BYTES = 32  # 256 bits of entropy


class SessionService:
    """Service for managing server-side user sessions."""

    def __init__(self, cache: RedisCacheService, session_ttl: int = DEFAULT_SESSION_TTL):
        self.cache = cache
        self.session_ttl = session_ttl
        self.session_prefix = "session:"
        self.user_sessions_prefix = "user_sessions:"

    def _session_key(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.user_sessions_prefix}{user_id}"

    async def _load(self, session_id: str) -> Optional[UserSession]:
        data = await self.cache.get(self._session_key(session_id))
        if not isinstance(data, dict):
            return None
        try:
            return UserSession.model_validate(data)
        except ValidationError:
            logfire.warning(f"Discarding unreadable session record {session_id[:8]}...")
            return None

    async def _save(self, session_id: str, session: UserSession) -> None:
        await self.cache.set_with_expiry(
            self._session_key(session_id), session.model_dump(), self.session_ttl
        )

    async def create_session(
        self, user_id: str, email: str, metadata: Optional[SessionMetadata] = None
    ) -> str:
        """Create a new session for a user.

        Args:
            user_id (str): Owner of the session.
            email (str): Email of the owner.
            metadata (Optional[SessionMetadata], optional): Username, IP and
                user agent of the login. Defaults to None.

        Returns:
            str: The new session id.
        """
        metadata = metadata or SessionMetadata()
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        now = utc_now().isoformat()

        session = UserSession(
            user_id=user_id,
            email=email,
            username=metadata.username,
            login_time=now,
            last_activity=now,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
        )

        await self._save(session_id, session)
        # Track user sessions for logging out of all devices
        await self._add_session_to_user(user_id, session_id)

        logfire.info(f"Created session {session_id[:8]}... for user {user_id}")
        return session_id

    async def get_session(self, session_id: str) -> Optional[UserSession]:
        """Fetch a session and extend its expiry.

        Returns:
            Optional[UserSession]: The session, or None if it does not exist.
        """
        if not session_id:
            return None

        session = await self._load(session_id)

        if session is not None:
            session.last_activity = utc_now().isoformat()
            await self._save(session_id, session)

        return session

    async def validate_session(self, session_id: str) -> Optional[UserSession]:
        return await self.get_session(session_id)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and drop it from its owner's index.

        Returns:
            bool: False if the session did not exist.
        """
        if not session_id:
            return False

        session = await self._load(session_id)
        if session is not None:
            await self._remove_session_from_user(session.user_id, session_id)

        deleted = await self.cache.delete(self._session_key(session_id))
        if deleted:
            logfire.info(f"Deleted session {session_id[:8]}...")

        return deleted

    async def delete_all_user_sessions(self, user_id: str) -> int:
        """Delete every indexed session of a user.

        Returns:
            int: Number of session records actually deleted.
        """
        deleted_count = 0

        for session_id in await self.get_user_sessions(user_id):
            if await self.cache.delete(self._session_key(session_id)):
                deleted_count += 1

        await self.cache.delete(self._user_key(user_id))

        logfire.info(f"Deleted {deleted_count} sessions for user {user_id}")
        return deleted_count

    async def get_user_sessions(self, user_id: str) -> List[str]:
        session_ids = await self.cache.get(self._user_key(user_id))
        return list(session_ids) if isinstance(session_ids, list) else []

    async def get_user_sessions_info(self, user_id: str) -> List[UserSession]:
        """Session records of a user, for admin and debugging views."""
        sessions = []

        for session_id in await self.get_user_sessions(user_id):
            session = await self._load(session_id)
            if session is not None:
                sessions.append(session)

        return sessions

    async def clean_expired_sessions(self, user_id: str) -> None:
        """Rewrite a user's index without ids whose record has expired."""
        session_ids = await self.get_user_sessions(user_id)
        valid_sessions = [
            session_id
            for session_id in session_ids
            if await self.cache.exists(self._session_key(session_id))
        ]

        if len(valid_sessions) == len(session_ids):
            return

        if valid_sessions:
            await self.cache.set_with_expiry(
                self._user_key(user_id), valid_sessions, self.session_ttl
            )
        else:
            await self.cache.delete(self._user_key(user_id))

        logfire.info(
            f"Dropped {len(session_ids) - len(valid_sessions)} expired sessions from the index of user {user_id}"
        )

    async def get_session_stats(self) -> SessionStats:
        session_keys = await self.cache.get_keys(f"{self.session_prefix}*")
        return SessionStats(total_active_sessions=len(session_keys), session_keys=session_keys)

    async def _add_session_to_user(self, user_id: str, session_id: str) -> None:
        user_sessions = await self.get_user_sessions(user_id)
        user_sessions.append(session_id)

        await self.cache.set_with_expiry(self._user_key(user_id), user_sessions, self.session_ttl)

    async def _remove_session_from_user(self, user_id: str, session_id: str) -> None:
        filtered_sessions = [
            existing for existing in await self.get_user_sessions(user_id) if existing != session_id
        ]

        if filtered_sessions:
            await self.cache.set_with_expiry(
                self._user_key(user_id), filtered_sessions, self.session_ttl
            )
        else:
            await self.cache.delete(self._user_key(user_id))


def get_session_service(request: Request) -> SessionService:
    """Get the session service instance wired at startup."""
    return request.app.state.session_service
