from typing import Any, cast

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from app.config import settings


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Authentication is not configured")
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    actor_id = payload.get("sub")
    if not actor_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    roles_value = payload.get("roles")
    scopes_value = payload.get("scopes")
    roles = [str(role) for role in roles_value] if isinstance(roles_value, list) else []
    scopes = [str(scope) for scope in scopes_value] if isinstance(scopes_value, list) else []
    if request is not None:
        request.state.actor_id = str(actor_id)
        request.state.actor_type = "user"
    return {
        "actor_id": str(actor_id),
        "roles": roles,
        "scopes": scopes,
    }


def _expand_permission_keys(permission_key: str) -> list[str]:
    """
    Expand a permission key to include hierarchical matches.

    For granular permissions like 'billing:bill:create', this returns:
    - 'billing:bill:create' (exact match)
    - 'billing:write' (domain:write implies domain:*:create/update/delete)
    - 'billing:read' (if the action is 'read')
    """
    keys = [permission_key]
    parts = permission_key.split(":")

    if len(parts) >= 2:
        domain = parts[0]
        if len(parts) == 3:
            action = parts[2]
            if action == "read":
                keys.append(f"{domain}:read")
            elif action in ("create", "update", "delete", "write"):
                keys.append(f"{domain}:write")
        elif len(parts) == 2:
            action = parts[1]
            if action in ("create", "update", "delete"):
                keys.append(f"{domain}:write")
    keys.append(f"{parts[0]}:*")
    return keys


def require_permission(permission_key: str):
    def _require_permission(auth=Depends(require_user_auth)):
        roles = set(auth.get("roles") or [])
        if "admin" in roles:
            return auth
        scopes = set(auth.get("scopes") or [])
        if scopes & set(_expand_permission_keys(permission_key)):
            return auth
        raise HTTPException(status_code=403, detail="Forbidden")

    return _require_permission
