"""Client-side auth state and its transition function.

``transition`` is pure: it maps a state and an event to the next state and
never performs I/O. :class:`tradedesk.client.session.AuthSession` does the I/O
and feeds events in.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from tradedesk.api.schemas import UserProfile


class AuthEventType(str, Enum):
    LOGIN_START = "LOGIN_START"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_ERROR = "LOGIN_ERROR"
    REGISTER_START = "REGISTER_START"
    REGISTER_SUCCESS = "REGISTER_SUCCESS"
    REGISTER_ERROR = "REGISTER_ERROR"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    CLEAR_ERROR = "CLEAR_ERROR"
    SET_LOADING = "SET_LOADING"
    USER_UPDATED = "USER_UPDATED"


_START = {AuthEventType.LOGIN_START, AuthEventType.REGISTER_START}
_SUCCESS = {AuthEventType.LOGIN_SUCCESS, AuthEventType.REGISTER_SUCCESS}
_ERROR = {AuthEventType.LOGIN_ERROR, AuthEventType.REGISTER_ERROR}


@dataclass(frozen=True)
class AuthEvent:
    type: AuthEventType
    user: Optional[UserProfile] = None
    token: Optional[str] = None
    error: Optional[str] = None
    loading: Optional[bool] = None

    @classmethod
    def login_success(cls, user: UserProfile, token: str) -> "AuthEvent":
        return cls(AuthEventType.LOGIN_SUCCESS, user=user, token=token)

    @classmethod
    def register_success(cls, user: UserProfile, token: str) -> "AuthEvent":
        return cls(AuthEventType.REGISTER_SUCCESS, user=user, token=token)

    @classmethod
    def failure(cls, kind: AuthEventType, error: str) -> "AuthEvent":
        return cls(kind, error=error)

    @classmethod
    def user_updated(cls, user: UserProfile) -> "AuthEvent":
        return cls(AuthEventType.USER_UPDATED, user=user)

    @classmethod
    def set_loading(cls, loading: bool) -> "AuthEvent":
        return cls(AuthEventType.SET_LOADING, loading=loading)


@dataclass(frozen=True)
class AuthState:
    user: Optional[UserProfile] = None
    is_authenticated: bool = False
    is_loading: bool = True
    error: Optional[str] = None


INITIAL_STATE = AuthState()


def transition(state: AuthState, event: AuthEvent) -> AuthState:
    if event.type in _START:
        return replace(state, is_loading=True, error=None)
    if event.type in _SUCCESS:
        return replace(
            state, user=event.user, is_authenticated=True, is_loading=False, error=None
        )
    if event.type in _ERROR:
        return replace(
            state, user=None, is_authenticated=False, is_loading=False, error=event.error
        )
    if event.type == AuthEventType.LOGOUT:
        return AuthState(user=None, is_authenticated=False, is_loading=False, error=None)
    if event.type == AuthEventType.TOKEN_REFRESH:
        return replace(state, is_loading=False)
    if event.type == AuthEventType.CLEAR_ERROR:
        return replace(state, error=None)
    if event.type == AuthEventType.SET_LOADING:
        return replace(state, is_loading=bool(event.loading))
    if event.type == AuthEventType.USER_UPDATED:
        # ignored once signed out
        return replace(state, user=event.user) if state.is_authenticated else state
    return state
