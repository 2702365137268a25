from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tradedesk.client.errors import AuthClientError, TransportError
from tradedesk.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _error_from_response(response: httpx.Response) -> AuthClientError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    return AuthClientError(
        body.get("message") or error.get("message") or "Request failed",
        field=body.get("field") or error.get("field"),
        status_code=response.status_code,
        code=error.get("code"),
    )


class AuthTransport:
    """JSON calls to the auth API over ``httpx.AsyncClient``.

    Every failure surfaces as :class:`AuthClientError`; timeouts and connection
    problems as its :class:`TransportError` subclass.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.request(
                method, path, json=json, headers=headers, params=params
            )
        except httpx.TimeoutException as exc:
            logger.warning("auth_request_timeout", method=method, path=path)
            raise TransportError("Request timeout", status_code=408) from exc
        except httpx.RequestError as exc:
            logger.warning(
                "auth_request_failed", method=method, path=path, error=str(exc)
            )
            raise TransportError("Network error", status_code=0) from exc

        if response.is_error:
            raise _error_from_response(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthClientError(
                "Malformed response", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise AuthClientError("Malformed response", status_code=response.status_code)
        return data

    async def register(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/register", json=payload)

    async def login(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/login", json=payload)

    async def logout(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/logout", token=token)

    async def current_user(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("GET", "/api/auth/me", token=token)

    async def refresh(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/refresh", token=token)

    async def list_sessions(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("GET", "/api/auth/sessions", token=token)

    async def revoke_other_sessions(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/sessions/revoke-others", token=token)

    async def list_users(self, token: Optional[str]) -> Dict[str, Any]:
        return await self.request("GET", "/api/auth/users", token=token)

    async def update_user_role(
        self, token: Optional[str], user_id: str, role: str
    ) -> Dict[str, Any]:
        return await self.request(
            "PATCH", f"/api/auth/users/{user_id}/role", json={"role": role}, token=token
        )

    async def update_user_status(
        self, token: Optional[str], user_id: str, is_active: bool
    ) -> Dict[str, Any]:
        return await self.request(
            "PATCH",
            f"/api/auth/users/{user_id}/status",
            json={"isActive": is_active},
            token=token,
        )

    async def list_login_attempts(
        self,
        token: Optional[str],
        *,
        email: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            key: value
            for key, value in (("email", email), ("limit", limit))
            if value is not None
        }
        return await self.request(
            "GET", "/api/auth/login-attempts", token=token, params=params or None
        )

    async def update_profile(
        self, token: Optional[str], payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self.request("PATCH", "/api/auth/me", json=payload, token=token)

    async def revoke_session(self, token: Optional[str], session_id: str) -> Dict[str, Any]:
        return await self.request("DELETE", f"/api/auth/sessions/{session_id}", token=token)

    async def change_password(
        self, token: Optional[str], payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/password", json=payload, token=token)

    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        return await self.request(
            "POST", "/api/auth/password-reset/request", json={"email": email}
        )

    async def confirm_password_reset(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth/password-reset/confirm", json=payload)
