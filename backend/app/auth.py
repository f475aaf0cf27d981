from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str]


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _claimed_roles(payload: dict[str, Any]) -> frozenset[str]:
    # CRM user tokens carry a single "role"; service tokens carry a "roles" list.
    raw = payload.get("roles")
    if raw is None:
        raw = [payload["role"]] if isinstance(payload.get("role"), str) else []
    if not isinstance(raw, list):
        raise _unauthorized("token roles must be a list")
    return frozenset(str(role).strip().lower() for role in raw if str(role).strip())


def _decode(token: str, settings: Settings) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc

    subject = payload.get("sub") or payload.get("id")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    roles = _claimed_roles(payload)
    if not roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token has no roles")
    return AuthContext(user_id=subject.strip(), roles=roles)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = _settings(request)
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=frozenset({"admin", "agent", "service"}))
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    return _decode(credentials.credentials, settings)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip().lower() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
