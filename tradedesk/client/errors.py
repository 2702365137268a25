from __future__ import annotations

from typing import Optional


class AuthClientError(Exception):
    """A failed auth call as seen by the dashboard.

    ``field`` is the form field the server blamed, when it named one.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        status_code: int = 0,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.status_code = status_code
        self.code = code


class TransportError(AuthClientError):
    """Timeout or network failure before any response arrived."""


__all__ = ["AuthClientError", "TransportError"]
