from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from tradedesk.client.state import AuthState


class RouteKind(str, Enum):
    AUTH_REQUIRED = "auth_required"
    GUEST_ONLY = "guest_only"
    ADMIN_ONLY = "admin_only"


class GuardOutcome(str, Enum):
    LOADING = "loading"
    REDIRECT = "redirect"
    SUSPENDED = "suspended"
    RENDER = "render"


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    location: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == GuardOutcome.RENDER


LOADING = GuardDecision(GuardOutcome.LOADING)
SUSPENDED = GuardDecision(GuardOutcome.SUSPENDED)
RENDER = GuardDecision(GuardOutcome.RENDER)


class RouteGuard:
    """Decides whether a page renders, waits, or redirects for a given auth state."""

    def __init__(
        self, *, login_path: str = "/auth/login", landing_path: str = "/dashboard"
    ) -> None:
        self.login_path = login_path
        self.landing_path = landing_path

    def login_redirect(self, return_path: str) -> str:
        return f"{self.login_path}?redirectTo={quote(return_path, safe='')}"

    def evaluate(
        self,
        state: AuthState,
        kind: RouteKind,
        path: str = "/",
        *,
        redirect_to: Optional[str] = None,
    ) -> GuardDecision:
        if state.is_loading:
            return LOADING

        if kind == RouteKind.GUEST_ONLY:
            if state.is_authenticated:
                return GuardDecision(GuardOutcome.REDIRECT, redirect_to or self.landing_path)
            return RENDER

        if not state.is_authenticated:
            return GuardDecision(
                GuardOutcome.REDIRECT, redirect_to or self.login_redirect(path)
            )
        if state.user is not None and not state.user.is_active:
            return SUSPENDED
        if kind == RouteKind.ADMIN_ONLY and (state.user is None or state.user.role != "admin"):
            return GuardDecision(GuardOutcome.REDIRECT, redirect_to or self.landing_path)
        return RENDER
