from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from tradedesk.api.schemas import (
    ApiResponse,
    AuthResponse,
    LoginAttemptInfo,
    LoginAttemptsResponse,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RevokeResponse,
    RoleUpdateRequest,
    SessionInfo,
    SessionsResponse,
    StatusUpdateRequest,
    UserProfile,
    UserResponse,
    UsersResponse,
)
from tradedesk.logging import get_logger
from tradedesk.service.auth import AuthResult
from tradedesk.service.runtime import Runtime
from tradedesk.service.runtime import get_runtime as get_process_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

AUTH_COOKIE = "auth-token"


def get_runtime(request: Request) -> Runtime:
    """The runtime bound to this app, else the process-wide one."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = get_process_runtime()
        request.app.state.runtime = runtime
    return runtime


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def request_token(request: Request) -> Optional[str]:
    """Token from ``Authorization: Bearer`` first, then the auth cookie."""
    return _extract_bearer(request.headers.get("Authorization")) or request.cookies.get(
        AUTH_COOKIE
    )


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


def _apply_auth_cookie(
    response: Response, runtime: Runtime, token: str, *, remember_me: bool = False
) -> None:
    settings = runtime.settings
    days = settings.remember_me_ttl_days if remember_me else settings.session_ttl_days
    response.set_cookie(
        AUTH_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=int(timedelta(days=days).total_seconds()),
        path="/",
    )


def _clear_auth_cookie(response: Response, runtime: Runtime) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        "",
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        max_age=0,
        path="/",
    )


def _auth_response(result: AuthResult, message: str) -> AuthResponse:
    return AuthResponse(
        message=message, user=UserProfile.from_user(result.user), token=result.token
    )


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account and sign it in.

    Raises:
        400: first failing field, checked in form order
        409: email already registered
    """
    result = await runtime.auth.register(
        body.first_name,
        body.last_name,
        body.email,
        body.password,
        body.confirm_password,
        **_client_meta(request),
    )
    _apply_auth_cookie(response, runtime, result.token)
    return _auth_response(result, "Registration successful")


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Exchange credentials for a session token.

    Raises:
        400: missing email or password
        401: unknown email, deactivated account or wrong password
    """
    result = await runtime.auth.login(
        body.email, body.password, body.remember_me, **_client_meta(request)
    )
    _apply_auth_cookie(response, runtime, result.token, remember_me=result.remember_me)
    return _auth_response(result, "Login successful")


@router.post("/logout", response_model=ApiResponse)
async def logout(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.logout(request_token(request))
    _clear_auth_cookie(response, runtime)
    return ApiResponse(message="Logout successful")


@router.get("/me", response_model=UserResponse)
async def me(request: Request, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.auth.get_current_user(request_token(request))
    return UserResponse(user=UserProfile.from_user(user))


@router.patch("/me", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.update_profile(
        request_token(request), body.first_name, body.last_name
    )
    return UserResponse(user=UserProfile.from_user(user), message="Profile updated")


@router.post("/refresh", response_model=AuthResponse)
async def refresh(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.refresh(request_token(request))
    _apply_auth_cookie(response, runtime, result.token)
    return _auth_response(result, "Token refreshed successfully")


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(request: Request, runtime: Runtime = Depends(get_runtime)):
    sessions, current_id = await runtime.auth.list_sessions(request_token(request))
    return SessionsResponse(
        sessions=[SessionInfo.from_session(s, current_id=current_id) for s in sessions]
    )


@router.post("/sessions/revoke-others", response_model=RevokeResponse)
async def revoke_other_sessions(
    request: Request, runtime: Runtime = Depends(get_runtime)
):
    revoked = await runtime.auth.revoke_other_sessions(request_token(request))
    return RevokeResponse(revoked=revoked, message="Other sessions signed out")


@router.delete("/sessions/{session_id}", response_model=ApiResponse)
async def revoke_session(
    session_id: str, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Sign out one of the caller's sessions.

    Raises:
        401: caller is not signed in
        404: no such session among the caller's own
    """
    await runtime.auth.revoke_session(request_token(request), session_id)
    return ApiResponse(message="Session revoked")


@router.post("/password", response_model=UserResponse)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.change_password(
        request_token(request),
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return UserResponse(user=UserProfile.from_user(user), message="Password updated")


@router.post("/password-reset/request", response_model=ApiResponse)
async def request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    """Mail a reset link. The answer is the same whether or not the email exists."""
    token = await runtime.auth.request_password_reset(body.email)
    if token:
        await asyncio.to_thread(
            runtime.email.send_password_reset,
            body.email.strip(),
            token,
            ttl_minutes=runtime.settings.password_reset_ttl_minutes,
        )
    return ApiResponse(
        message="If an account exists for that email, a reset link has been sent"
    )


@router.post("/password-reset/confirm", response_model=ApiResponse)
async def confirm_password_reset(
    body: PasswordResetConfirm,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.complete_password_reset(
        body.token, body.new_password, body.confirm_password
    )
    _clear_auth_cookie(response, runtime)
    return ApiResponse(message="Password has been reset")


@router.get("/users", response_model=UsersResponse)
async def list_users(request: Request, runtime: Runtime = Depends(get_runtime)):
    users = await runtime.auth.list_users(request_token(request))
    return UsersResponse(
        users=[UserProfile.from_user(u) for u in users],
        message="Users retrieved successfully",
    )


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def update_user_role(
    user_id: str,
    body: RoleUpdateRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Change a user's role (admin only).

    Raises:
        400: role is not ``user`` or ``admin``
        403: caller is not an admin
        404: no such user
    """
    user = await runtime.auth.update_user_role(request_token(request), user_id, body.role)
    return UserResponse(user=UserProfile.from_user(user), message="User role updated")


@router.patch("/users/{user_id}/status", response_model=UserResponse)
async def update_user_status(
    user_id: str,
    body: StatusUpdateRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.update_user_status(
        request_token(request), user_id, body.is_active
    )
    return UserResponse(user=UserProfile.from_user(user), message="User status updated")


@router.get("/login-attempts", response_model=LoginAttemptsResponse)
async def list_login_attempts(
    request: Request,
    email: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    attempts = await runtime.auth.list_login_attempts(
        request_token(request), email=email, limit=limit
    )
    return LoginAttemptsResponse(
        attempts=[LoginAttemptInfo.from_attempt(a) for a in attempts]
    )
