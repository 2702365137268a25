from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tradedesk.storage.models import LoginAttempt, Session, User

VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "server_error",
    }
)


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request bodies stay permissive: field rules are enforced by the auth service
# so every failure comes back as a single field-tagged 400.


class RegisterRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None
    remember_me: bool = False

    @field_validator("remember_me", mode="before")
    @classmethod
    def _default_remember_me(cls, value: Any) -> Any:
        return False if value is None else value


class RoleUpdateRequest(CamelModel):
    role: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    is_active: Optional[bool] = None


class PasswordChangeRequest(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PasswordResetRequest(CamelModel):
    email: Optional[str] = None


class PasswordResetConfirm(CamelModel):
    token: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


class UserProfile(CamelModel):
    """A user without its password hash."""

    id: str
    first_name: str
    last_name: str
    email: str
    role: str
    is_active: bool
    email_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class SessionInfo(CamelModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: str) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_activity_at=session.last_activity_at,
            is_current=session.id == current_id,
        )


class LoginAttemptInfo(CamelModel):
    id: str
    email: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    attempted_at: datetime

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "LoginAttemptInfo":
        return cls(
            id=attempt.id,
            email=attempt.email,
            success=attempt.success,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            attempted_at=attempt.attempted_at,
        )


class ApiResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None


class AuthResponse(ApiResponse):
    user: UserProfile
    token: str


class UserResponse(ApiResponse):
    user: UserProfile


class UsersResponse(ApiResponse):
    users: List[UserProfile]


class SessionsResponse(ApiResponse):
    sessions: List[SessionInfo]


class RevokeResponse(ApiResponse):
    revoked: int


class LoginAttemptsResponse(ApiResponse):
    attempts: List[LoginAttemptInfo]


class ErrorBody(BaseModel):
    """Stable error code plus a human message and the offending field."""

    code: str
    message: str
    field: Optional[str] = None
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(VALID_ERROR_CODES))}"
            )
        return value


class ErrorEnvelope(CamelModel):
    success: bool = False
    message: str
    field: Optional[str] = None
    error: ErrorBody
    request_id: Optional[str] = Field(default=None)
