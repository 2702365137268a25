from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tradedesk.logging import get_logger
from tradedesk.storage.backends import PersistenceBackend
from tradedesk.storage.errors import ConstraintViolation
from tradedesk.storage.models import (
    LoginAttempt,
    Session,
    User,
    new_id,
    normalize_email,
    utcnow,
)

USERS = "users"
SESSIONS = "sessions"
LOGIN_ATTEMPTS = "login_attempts"


class CredentialStore:
    """In-memory user, session and login-attempt collections.

    Memory is authoritative. Every write is followed by a flush of the touched
    collection to the persistence backend; a failed flush is logged and the
    write still stands.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.backend = backend
        self._clock = clock
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: Dict[str, LoginAttempt] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self._load_state()

    def now(self) -> datetime:
        return self._clock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, collection=USERS
                )
            now = self.now()
            user = User(
                id=new_id(),
                email=normalized,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._flush(USERS)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at)

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        """Apply field changes to a user and bump ``updated_at``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in changes:
                email = normalize_email(changes["email"])
                clash = any(
                    u.email == email and u.id != user_id for u in self.users.values()
                )
                if clash:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, collection=USERS
                    )
                changes["email"] = email
            changes.setdefault("updated_at", self.now())
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._flush(USERS)
            return updated

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": session.user_id},
                    collection=SESSIONS,
                )
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "token already issued", {"field": "token"}, collection=SESSIONS
                )
            self.sessions[session.id] = session
            self._flush(SESSIONS)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return next((s for s in self.sessions.values() if s.token == token), None)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )

    def replace_session(self, session_id: str, fresh: Session) -> Optional[Session]:
        """Overwrite a session row in place under a new id, token and expiry.

        The logical session keeps its original ``created_at``. Returns ``None``
        when the row no longer exists.
        """
        with self._data_lock:
            current = self.sessions.pop(session_id, None)
            if current is None:
                return None
            rotated = replace(fresh, created_at=current.created_at)
            self.sessions[rotated.id] = rotated
            self._flush(SESSIONS)
            return rotated

    def touch_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.last_activity_at = self.now()
            self._flush(SESSIONS)
            return sess

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._flush(SESSIONS)
            return removed is not None

    def delete_user_sessions(self, user_id: str, *, keep: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != keep
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._flush(SESSIONS)
            return len(stale)

    # -- login attempts ----------------------------------------------------

    def record_login_attempt(
        self,
        email: str,
        *,
        success: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginAttempt:
        with self._data_lock:
            attempt = LoginAttempt(
                id=new_id(),
                email=normalize_email(email),
                success=success,
                ip_address=ip_address,
                user_agent=user_agent,
                attempted_at=self.now(),
            )
            self.login_attempts[attempt.id] = attempt
            self._flush(LOGIN_ATTEMPTS)
            return attempt

    def mark_login_attempt_success(self, attempt_id: str) -> Optional[LoginAttempt]:
        with self._data_lock:
            attempt = self.login_attempts.get(attempt_id)
            if not attempt:
                return None
            attempt.success = True
            self._flush(LOGIN_ATTEMPTS)
            return attempt

    def list_login_attempts(
        self, email: Optional[str] = None, limit: Optional[int] = None
    ) -> List[LoginAttempt]:
        with self._data_lock:
            attempts = list(self.login_attempts.values())
        if email:
            normalized = normalize_email(email)
            attempts = [a for a in attempts if a.email == normalized]
        # insertion order breaks ties between attempts in the same instant
        attempts = list(reversed(attempts))
        attempts.sort(key=lambda a: a.attempted_at, reverse=True)
        return attempts[:limit] if limit else attempts

    # -- generic -----------------------------------------------------------

    def find_first(self, collection: str, **equals: Any):
        """Return the first record in ``collection`` whose fields equal ``equals``."""
        with self._data_lock:
            records = self._collection(collection).values()
            for record in records:
                if all(getattr(record, key, None) == value for key, value in equals.items()):
                    return record
        return None

    def reset(self) -> None:
        with self._data_lock:
            self.users.clear()
            self.sessions.clear()
            self.login_attempts.clear()
            self.backend.reset()

    def _collection(self, name: str) -> Dict[str, Any]:
        collections = {
            USERS: self.users,
            SESSIONS: self.sessions,
            LOGIN_ATTEMPTS: self.login_attempts,
        }
        try:
            return collections[name]
        except KeyError:
            raise ValueError(f"unknown collection: {name}") from None

    # -- persistence -------------------------------------------------------

    def _flush(self, collection: str) -> None:
        serializers = {
            USERS: self._serialize_user,
            SESSIONS: self._serialize_session,
            LOGIN_ATTEMPTS: self._serialize_login_attempt,
        }
        records = [serializers[collection](r) for r in self._collection(collection).values()]
        try:
            self.backend.persist(collection, records)
        except Exception as exc:
            self.logger.error(
                "store_flush_failed",
                collection=collection,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _load_state(self) -> bool:
        loaded = False
        users = self.backend.load(USERS)
        if users is not None:
            self.users = {u["id"]: self._deserialize_user(u) for u in users}
            loaded = True
        sessions = self.backend.load(SESSIONS)
        if sessions is not None:
            self.sessions = {s["id"]: self._deserialize_session(s) for s in sessions}
            loaded = True
        attempts = self.backend.load(LOGIN_ATTEMPTS)
        if attempts is not None:
            self.login_attempts = {
                a["id"]: self._deserialize_login_attempt(a) for a in attempts
            }
            loaded = True
        if loaded:
            self.logger.info(
                "store_rehydrated",
                users=len(self.users),
                sessions=len(self.sessions),
                login_attempts=len(self.login_attempts),
            )
        return loaded

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data["created_at"])
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=created_at,
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at"))
            or created_at,
        )

    def _serialize_login_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "email": attempt.email,
            "success": attempt.success,
            "ip_address": attempt.ip_address,
            "user_agent": attempt.user_agent,
            "attempted_at": self._serialize_datetime(attempt.attempted_at),
        }

    def _deserialize_login_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=data["id"],
            email=data["email"],
            success=bool(data.get("success", False)),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            attempted_at=self._deserialize_datetime(data["attempted_at"]),
        )
