from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from counterhub.settings import Settings

security = HTTPBearer(auto_error=False)

DEV_TENANT_ID = "dev-local"
TENANT_HEADER = "x-tenant-id"

# Roles allowed to run counters; settings routes narrow this further.
STREAMER_ROLES = ("streamer", "moderator", "admin")


class TokenError(Exception):
    pass


@dataclass(frozen=True)
class AuthContext:
    tenant_id: str
    roles: set[str]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _developer_context(tenant_id: Optional[str] = None) -> AuthContext:
    return AuthContext(
        tenant_id=(tenant_id or "").strip() or DEV_TENANT_ID,
        roles={"admin", "streamer", "moderator", "service"},
    )


def decode_token(token: str, settings: Settings) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise TokenError("invalid auth token") from exc

    subject = payload.get("sub")
    roles = payload.get("roles", [])
    if not isinstance(subject, str) or not subject.strip():
        raise TokenError("token missing subject")
    if not isinstance(roles, list):
        raise TokenError("token roles must be a list")
    role_set = {str(role).strip() for role in roles if str(role).strip()}
    return AuthContext(tenant_id=subject.strip(), roles=role_set)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return _developer_context(request.headers.get(TENANT_HEADER))

    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
        )

    try:
        context = decode_token(credentials.credentials, settings)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    if not context.roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no roles",
        )
    return context


def websocket_tenant_allowed(settings: Settings, tenant_id: str, token: Optional[str]) -> bool:
    if not settings.auth_enabled:
        return True
    if not token:
        return False
    try:
        context = decode_token(token, settings)
    except TokenError:
        return False
    return context.tenant_id == tenant_id or "admin" in context.roles


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
