from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any, Callable, Dict, List, Optional

from tradedesk.api.schemas import UserProfile
from tradedesk.client.errors import AuthClientError
from tradedesk.client.state import (
    INITIAL_STATE,
    AuthEvent,
    AuthEventType,
    AuthState,
    transition,
)
from tradedesk.client.storage import ClientStorage, FileStorage, MemoryStorage
from tradedesk.client.transport import AuthTransport
from tradedesk.config import ClientSettings
from tradedesk.logging import get_logger
from tradedesk.service.tokens import peek_claims

logger = get_logger(__name__)

Listener = Callable[[AuthState], None]


class AuthSession:
    """The dashboard's single source of truth for who is signed in.

    Owns the :class:`AuthState`, persists the token and user snapshot, and runs
    the silent refresh loop while a user is authenticated. Any refresh failure
    signs the user out.
    """

    def __init__(
        self,
        transport: AuthTransport,
        storage: ClientStorage,
        *,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.storage = storage
        self.settings = settings or ClientSettings()
        self._clock = clock
        self._state = INITIAL_STATE
        self._listeners: List[Listener] = []
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Optional[ClientSettings] = None, **kwargs: Any) -> "AuthSession":
        settings = settings or ClientSettings.from_env()
        transport = AuthTransport(
            settings.base_url, timeout=settings.request_timeout_seconds, **kwargs
        )
        local = FileStorage(settings.storage_path) if settings.storage_path else MemoryStorage()
        storage = ClientStorage(local, server_cookies=transport.cookies)
        return cls(transport, storage, settings=settings)

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def token(self) -> Optional[str]:
        return self.storage.get_token()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new state after every transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, event: AuthEvent) -> AuthState:
        self._state = transition(self._state, event)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as exc:
                logger.error(
                    "auth_listener_failed",
                    event=event.type.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return self._state

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> AuthState:
        """Rehydrate from the persisted snapshot and confirm it with the server."""
        self.dispatch(AuthEvent.set_loading(True))
        token = self.storage.get_token()
        stored_user = self.storage.get_user()
        if not (token and stored_user):
            return self.dispatch(AuthEvent.set_loading(False))
        try:
            data = await self.transport.current_user(token)
            user = UserProfile.model_validate(data["user"])
        except (AuthClientError, KeyError, ValueError) as exc:
            logger.info("auth_rehydrate_rejected", error=str(exc))
            self.storage.clear()
            return self.dispatch(AuthEvent(AuthEventType.LOGOUT))
        self.storage.set_user(user)
        self.dispatch(AuthEvent.login_success(user, token))
        self.start_refresh_loop()
        return self._state

    async def close(self) -> None:
        await self.stop_refresh_loop()
        await self.transport.aclose()

    # -- actions -----------------------------------------------------------

    def _accept(self, data: Dict[str, Any], fallback: str) -> tuple[UserProfile, str]:
        token = data.get("token")
        raw_user = data.get("user")
        if not (data.get("success") and token and raw_user):
            raise AuthClientError(data.get("message") or fallback)
        try:
            user = UserProfile.model_validate(raw_user)
        except ValueError as exc:
            raise AuthClientError(fallback) from exc
        self.storage.save(token, user)
        return user, token

    async def login(
        self, email: str, password: str, remember_me: bool = False
    ) -> UserProfile:
        self.dispatch(AuthEvent(AuthEventType.LOGIN_START))
        try:
            data = await self.transport.login(
                {"email": email, "password": password, "rememberMe": remember_me}
            )
            user, token = self._accept(data, "Login failed")
        except AuthClientError as exc:
            message = exc.message or "An error occurred during login"
            self.dispatch(AuthEvent.failure(AuthEventType.LOGIN_ERROR, message))
            raise
        self.dispatch(AuthEvent.login_success(user, token))
        self.start_refresh_loop()
        return user

    async def register(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        confirm_password: str,
    ) -> UserProfile:
        self.dispatch(AuthEvent(AuthEventType.REGISTER_START))
        try:
            data = await self.transport.register(
                {
                    "firstName": first_name,
                    "lastName": last_name,
                    "email": email,
                    "password": password,
                    "confirmPassword": confirm_password,
                }
            )
            user, token = self._accept(data, "Registration failed")
        except AuthClientError as exc:
            message = exc.message or "An error occurred during registration"
            self.dispatch(AuthEvent.failure(AuthEventType.REGISTER_ERROR, message))
            raise
        self.dispatch(AuthEvent.register_success(user, token))
        self.start_refresh_loop()
        return user

    async def logout(self) -> None:
        """Sign out locally no matter what the server says."""
        await self.stop_refresh_loop()
        token = self.storage.get_token()
        try:
            if token:
                await self.transport.logout(token)
        except AuthClientError as exc:
            logger.warning("auth_logout_request_failed", error=exc.message)
        finally:
            self.storage.clear()
            self.dispatch(AuthEvent(AuthEventType.LOGOUT))

    async def refresh_token(self) -> bool:
        """Rotate the token. Returns False, after signing out, when rotation fails."""
        if not self._state.is_authenticated:
            return False
        try:
            data = await self.transport.refresh(self.storage.get_token())
            user, token = self._accept(data, "Token refresh failed")
        except AuthClientError as exc:
            logger.info("auth_refresh_failed", error=exc.message, status_code=exc.status_code)
            self.dispatch(AuthEvent(AuthEventType.LOGOUT))
            self.storage.clear()
            return False
        self.dispatch(AuthEvent.login_success(user, token))
        self.dispatch(AuthEvent(AuthEventType.TOKEN_REFRESH))
        return True

    def clear_error(self) -> None:
        self.dispatch(AuthEvent(AuthEventType.CLEAR_ERROR))

    # -- account -----------------------------------------------------------

    def _apply_user(self, data: Dict[str, Any]) -> UserProfile:
        try:
            user = UserProfile.model_validate(data["user"])
        except (KeyError, ValueError) as exc:
            raise AuthClientError("Malformed response") from exc
        if self._state.is_authenticated:
            self.storage.set_user(user)
        self.dispatch(AuthEvent.user_updated(user))
        return user

    async def update_profile(
        self, first_name: Optional[str] = None, last_name: Optional[str] = None
    ) -> UserProfile:
        payload = {
            key: value
            for key, value in (("firstName", first_name), ("lastName", last_name))
            if value is not None
        }
        data = await self.transport.update_profile(self.storage.get_token(), payload)
        return self._apply_user(data)

    async def change_password(
        self, current_password: str, new_password: str, confirm_password: str
    ) -> UserProfile:
        """Change the password; the server signs out every other session."""
        data = await self.transport.change_password(
            self.storage.get_token(),
            {
                "currentPassword": current_password,
                "newPassword": new_password,
                "confirmPassword": confirm_password,
            },
        )
        return self._apply_user(data)

    # -- silent refresh ----------------------------------------------------

    def start_refresh_loop(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop_refresh_loop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _refresh_loop(self) -> None:
        interval = self.settings.refresh_interval_seconds
        while self._state.is_authenticated:
            await asyncio.sleep(interval)
            if not await self.refresh_token():
                break

    # -- expiry ------------------------------------------------------------

    def time_until_expiry(self) -> Optional[float]:
        """Seconds until the current token's ``exp``; ``None`` without a token."""
        claims = peek_claims(self.storage.get_token() or "")
        if not claims or not isinstance(claims.get("exp"), (int, float)):
            return None
        return float(claims["exp"]) - self._clock()

    def expiry_warning(self, threshold: Optional[float] = None) -> bool:
        """True while the session is about to lapse but has not yet."""
        remaining = self.time_until_expiry()
        limit = self.settings.expiry_warning_seconds if threshold is None else threshold
        return remaining is not None and 0 < remaining < limit
