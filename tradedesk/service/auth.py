from __future__ import annotations

import hashlib
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from tradedesk.config import Settings
from tradedesk.logging import get_logger
from tradedesk.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tradedesk.service.passwords import PasswordHasher
from tradedesk.service.tokens import TokenCodec
from tradedesk.storage.errors import ConstraintViolation
from tradedesk.storage.memory import CredentialStore
from tradedesk.storage.models import ROLES, LoginAttempt, Session, User, new_id

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PASSWORD_RULES_MESSAGE = (
    "Password must be at least 8 characters long and contain at least one "
    "uppercase letter, one lowercase letter, and one number"
)


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_PATTERN.match(email))


def is_strong_password(password: str) -> bool:
    return (
        len(password) >= 8
        and any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
    )


@dataclass
class AuthResult:
    """Outcome of register, login and refresh."""

    user: User
    session: Session
    token: str
    remember_me: bool = False


@dataclass
class AuthContext:
    user: User
    session: Session


class AuthService:
    """Registration, login, sessions, password reset and admin user management.

    Every failure is raised from :mod:`tradedesk.service.errors`; the HTTP layer
    turns them into structured responses.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.settings = settings
        self.logger = logger
        self._state_lock = threading.Lock()
        # sha256(reset token) -> (user_id, expires_at)
        self._reset_tokens: Dict[str, Tuple[str, datetime]] = {}

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_ttl_days)

    @property
    def remember_me_ttl(self) -> timedelta:
        return timedelta(days=self.settings.remember_me_ttl_days)

    # -- session issuing ---------------------------------------------------

    def _mint(self, user: User, ttl: timedelta) -> Session:
        """Build an unsaved session whose token carries its own id."""
        session_id = new_id()
        token = self.codec.encode({"userId": user.id, "sessionId": session_id}, ttl=ttl)
        return Session.new(user.id, token, ttl, session_id=session_id, now=self.store.now())

    def _issue_session(self, user: User, *, remember_me: bool = False) -> Session:
        ttl = self.remember_me_ttl if remember_me else self.session_ttl
        return self.store.create_session(self._mint(user, ttl))

    # -- registration ------------------------------------------------------

    async def register(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        confirm_password: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not (first_name or "").strip():
            raise ValidationError("First name is required", field="firstName")
        if not (last_name or "").strip():
            raise ValidationError("Last name is required", field="lastName")
        if not (email or "").strip():
            raise ValidationError("Email is required", field="email")
        if not is_valid_email(email.strip()):
            raise ValidationError("Please enter a valid email address", field="email")
        if not password:
            raise ValidationError("Password is required", field="password")
        if not is_strong_password(password):
            raise ValidationError(PASSWORD_RULES_MESSAGE, field="password")
        if password != confirm_password:
            raise ValidationError("Passwords do not match", field="confirmPassword")
        if self.store.get_user_by_email(email):
            raise ConflictError(
                "An account with this email already exists", field="email"
            )

        try:
            user = self.store.create_user(
                email,
                first_name,
                last_name,
                self.hasher.hash(password),
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this email already exists",
                field="email",
                detail=exc.detail,
            ) from exc
        session = self._issue_session(user)
        self.store.record_login_attempt(
            user.email, success=True, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("user_registered", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, token=session.token)

    # -- login / logout ----------------------------------------------------

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        remember_me: bool = False,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not (email or "").strip():
            raise ValidationError("Email is required", field="email")
        if not password:
            raise ValidationError("Password is required", field="password")

        user = self.store.get_user_by_email(email)
        # audited before the existence check so unknown emails leave a trail too
        attempt = self.store.record_login_attempt(
            email, success=False, ip_address=ip_address, user_agent=user_agent
        )
        if not user:
            self.logger.info("login_failed", reason="unknown_email", attempt_id=attempt.id)
            raise AuthenticationError("Invalid email or password", field="email")
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AuthenticationError("Account is deactivated", field="email")
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid email or password", field="password")

        self.store.mark_login_attempt_success(attempt.id)
        session = self._issue_session(user, remember_me=remember_me)
        now = self.store.now()
        changes = {"last_login_at": now, "updated_at": now}
        if self.hasher.needs_rehash(user.password_hash):
            changes["password_hash"] = self.hasher.hash(password)
        user = self.store.update_user(user.id, **changes) or user
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            remember_me=remember_me,
        )
        return AuthResult(
            user=user, session=session, token=session.token, remember_me=remember_me
        )

    async def logout(self, token: Optional[str]) -> bool:
        """Delete the session bound to ``token``. Repeat calls are no-ops."""
        if not token:
            return False
        session = self.store.get_session_by_token(token)
        if not session:
            return False
        removed = self.store.delete_session(session.id)
        if removed:
            self.logger.info("logout", user_id=session.user_id, session_id=session.id)
        return removed

    # -- session validation ------------------------------------------------

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """Resolve a token to its live session and active user.

        Lookup is by the literal token string. An expired session row is deleted
        on sight.
        """
        if not token:
            raise AuthenticationError("No token provided")
        session = self.store.get_session_by_token(token)
        if not session:
            raise AuthenticationError("Invalid token")
        if session.is_expired(self.store.now()):
            self.store.delete_session(session.id)
            self.logger.info(
                "session_expired", user_id=session.user_id, session_id=session.id
            )
            raise AuthenticationError("Token expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("User not found or inactive")
        session = self.store.touch_session(session.id) or session
        return AuthContext(user=user, session=session)

    async def get_current_user(self, token: Optional[str]) -> User:
        ctx = await self.authenticate(token)
        return ctx.user

    async def refresh(self, token: Optional[str]) -> AuthResult:
        """Rotate a session: new id, token and expiry written over the same row."""
        if not token:
            raise AuthenticationError("No token provided")
        session = self.store.get_session_by_token(token)
        if not session:
            raise AuthenticationError("Invalid token")
        if session.is_expired(self.store.now()):
            self.store.delete_session(session.id)
            raise AuthenticationError("Token expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("User not found or inactive")
        rotated = self.store.replace_session(session.id, self._mint(user, self.session_ttl))
        if rotated is None:
            # lost a race with logout or another refresh
            raise AuthenticationError("Invalid token")
        self.logger.info(
            "session_refreshed",
            user_id=user.id,
            previous_session_id=session.id,
            session_id=rotated.id,
        )
        return AuthResult(user=user, session=rotated, token=rotated.token)

    # -- self-service ------------------------------------------------------

    async def list_sessions(self, token: Optional[str]) -> Tuple[List[Session], str]:
        ctx = await self.authenticate(token)
        return self.store.list_user_sessions(ctx.user.id), ctx.session.id

    async def revoke_other_sessions(self, token: Optional[str]) -> int:
        ctx = await self.authenticate(token)
        revoked = self.store.delete_user_sessions(ctx.user.id, keep=ctx.session.id)
        self.logger.info("sessions_revoked", user_id=ctx.user.id, count=revoked)
        return revoked

    async def update_profile(
        self,
        token: Optional[str],
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """Rename the caller. Omitted fields are left as they are."""
        ctx = await self.authenticate(token)
        changes = {}
        if first_name is not None:
            if not first_name.strip():
                raise ValidationError("First name is required", field="firstName")
            changes["first_name"] = first_name.strip()
        if last_name is not None:
            if not last_name.strip():
                raise ValidationError("Last name is required", field="lastName")
            changes["last_name"] = last_name.strip()
        if not changes:
            raise ValidationError("Nothing to update", field="firstName")
        user = self.store.update_user(ctx.user.id, **changes)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": ctx.user.id})
        self.logger.info("profile_updated", user_id=user.id, fields=sorted(changes))
        return user

    async def revoke_session(self, token: Optional[str], session_id: str) -> bool:
        """Sign out one of the caller's own sessions, possibly the current one."""
        ctx = await self.authenticate(token)
        target = self.store.get_session(session_id)
        if not target or target.user_id != ctx.user.id:
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        removed = self.store.delete_session(target.id)
        self.logger.info(
            "session_revoked",
            user_id=ctx.user.id,
            session_id=target.id,
            current=target.id == ctx.session.id,
        )
        return removed

    async def change_password(
        self,
        token: Optional[str],
        current_password: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> User:
        ctx = await self.authenticate(token)
        if not current_password:
            raise ValidationError("Current password is required", field="currentPassword")
        if not new_password:
            raise ValidationError("New password is required", field="newPassword")
        if not is_strong_password(new_password):
            raise ValidationError(PASSWORD_RULES_MESSAGE, field="newPassword")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", field="confirmPassword")
        if not self.hasher.verify(current_password, ctx.user.password_hash):
            raise AuthenticationError(
                "Current password is incorrect", field="currentPassword"
            )
        user = self.store.update_user(
            ctx.user.id, password_hash=self.hasher.hash(new_password)
        )
        revoked = self.store.delete_user_sessions(ctx.user.id, keep=ctx.session.id)
        self.logger.info("password_changed", user_id=ctx.user.id, sessions_revoked=revoked)
        return user or ctx.user

    # -- password reset ----------------------------------------------------

    @staticmethod
    def _reset_key(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def _prune_reset_tokens(self, now: datetime) -> None:
        with self._state_lock:
            expired = [
                key
                for key, (_, expires_at) in self._reset_tokens.items()
                if expires_at <= now
            ]
            for key in expired:
                self._reset_tokens.pop(key, None)

    async def request_password_reset(self, email: Optional[str]) -> Optional[str]:
        """Issue a single-use reset token for an active account.

        Returns ``None`` for unknown or deactivated emails; callers must answer
        the same way in both cases.
        """
        if not (email or "").strip():
            raise ValidationError("Email is required", field="email")
        if not is_valid_email(email.strip()):
            raise ValidationError("Please enter a valid email address", field="email")
        now = self.store.now()
        self._prune_reset_tokens(now)
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info("password_reset_skipped", reason="unknown_or_inactive")
            return None
        token = secrets.token_urlsafe(32)
        expires_at = now + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        with self._state_lock:
            self._reset_tokens[self._reset_key(token)] = (user.id, expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(
        self,
        token: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> User:
        """Set a new password from a reset token and sign out every session."""
        if not token:
            raise ValidationError("Reset token is required", field="token")
        if not new_password:
            raise ValidationError("New password is required", field="newPassword")
        if not is_strong_password(new_password):
            raise ValidationError(PASSWORD_RULES_MESSAGE, field="newPassword")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", field="confirmPassword")

        now = self.store.now()
        with self._state_lock:
            entry = self._reset_tokens.pop(self._reset_key(token), None)
        user = None
        if entry and entry[1] > now:
            user = self.store.get_user(entry[0])
        if not user or not user.is_active:
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("Reset link is invalid or has expired", field="token")

        with self._state_lock:
            # any other outstanding link for this user is spent too
            stale = [k for k, (uid, _) in self._reset_tokens.items() if uid == user.id]
            for key in stale:
                self._reset_tokens.pop(key, None)
        user = self.store.update_user(user.id, password_hash=self.hasher.hash(new_password)) or user
        revoked = self.store.delete_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user

    # -- admin -------------------------------------------------------------

    async def require_admin(self, token: Optional[str]) -> AuthContext:
        ctx = await self.authenticate(token)
        if not ctx.user.is_admin:
            self.logger.warning("admin_access_denied", user_id=ctx.user.id)
            raise AuthorizationError("Insufficient permissions")
        return ctx

    async def list_users(self, token: Optional[str]) -> List[User]:
        await self.require_admin(token)
        return self.store.list_users()

    async def update_user_role(
        self, token: Optional[str], user_id: str, role: Optional[str]
    ) -> User:
        ctx = await self.require_admin(token)
        if role not in ROLES:
            raise ValidationError(
                "Role must be one of: " + ", ".join(ROLES), field="role"
            )
        user = self.store.update_user(user_id, role=role)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info(
            "user_role_updated", user_id=user.id, role=role, admin_id=ctx.user.id
        )
        return user

    async def update_user_status(
        self, token: Optional[str], user_id: str, is_active: Optional[bool]
    ) -> User:
        ctx = await self.require_admin(token)
        if not isinstance(is_active, bool):
            raise ValidationError("isActive must be true or false", field="isActive")
        if user_id == ctx.user.id and not is_active:
            raise ValidationError(
                "Administrators cannot deactivate their own account", field="isActive"
            )
        user = self.store.update_user(user_id, is_active=is_active)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if not is_active:
            self.store.delete_user_sessions(user.id)
        self.logger.info(
            "user_status_updated",
            user_id=user.id,
            is_active=is_active,
            admin_id=ctx.user.id,
        )
        return user

    async def list_login_attempts(
        self, token: Optional[str], email: Optional[str] = None, limit: int = 100
    ) -> List[LoginAttempt]:
        await self.require_admin(token)
        return self.store.list_login_attempts(email=email, limit=limit)

    # -- bootstrap ---------------------------------------------------------

    def ensure_default_admin(self) -> Optional[User]:
        """Seed one administrator when the store holds no users at all."""
        if self.store.count_users():
            return None
        user = self.store.create_user(
            self.settings.seed_admin_email,
            "Admin",
            "User",
            self.hasher.hash(self.settings.seed_admin_password),
            role="admin",
        )
        self.logger.info("default_admin_seeded", user_id=user.id)
        return user
