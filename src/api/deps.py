# src/api/deps.py
"""
Request-scoped dependencies. Components are created once by the app factory
and hung on app.state; identity comes from an IdentityProvider so a real
session backend can replace the header-based default.
"""
from typing import Mapping, Optional, Protocol

from fastapi import Request

from engine.errors import AuthorizationError
from engine.scan_manager import ScanManager, UserContext

DEFAULT_ROLE = "free"


class IdentityProvider(Protocol):
    def get_current_user(self, headers: Mapping[str, str], query: Optional[Mapping[str, str]] = None) -> UserContext:
        ...


class HeaderIdentityProvider:
    """
    Trusts X-User-Id / X-User-Role set by an authenticating proxy. Browsers
    cannot set headers on WebSocket upgrades, so user_id/role query
    parameters are accepted as well.
    """

    def get_current_user(self, headers, query=None) -> UserContext:
        query = query or {}
        user_id = headers.get("x-user-id") or query.get("user_id")
        if not user_id:
            raise AuthorizationError("Missing user identity (X-User-Id header)")
        role = headers.get("x-user-role") or query.get("role") or DEFAULT_ROLE
        return UserContext(id=user_id, role=role.lower(), plan=role.lower())


def get_manager(request: Request) -> ScanManager:
    return request.app.state.manager


def get_current_user(request: Request) -> UserContext:
    return request.app.state.identity.get_current_user(request.headers, request.query_params)
