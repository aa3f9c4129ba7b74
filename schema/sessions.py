"""Defines schema of requests and responses related to server-side sessions"""

from typing import Annotated, List, Optional

from pydantic import BaseModel, EmailStr, Field


class UserSession(BaseModel):
    """Session record stored server-side under the session id."""

    user_id: str
    email: str
    username: Optional[str] = None
    login_time: str  # ISO 8601
    last_activity: str  # ISO 8601
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionMetadata(BaseModel):
    username: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionLoginRequest(BaseModel):
    email: EmailStr
    password: Annotated[str, Field(min_length=1)]
    username: Optional[str] = None


class SessionLoginResponse(BaseModel):
    message: str = "Login successful"
    session_id: str
    user_id: str
    email: str
    remaining: int  # Login attempts left in the current window


class SessionValidationResponse(BaseModel):
    valid: bool
    session: Optional[UserSession] = None


class UserSessionsResponse(BaseModel):
    user_id: str
    active_sessions: int
    sessions: List[UserSession]


class SessionStats(BaseModel):
    total_active_sessions: int
    session_keys: List[str]
