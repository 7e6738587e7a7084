# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""API key authentication and tenant scoping dependencies.

Configured keys are either a bare key (full access) or ``key=role``.  The
role selects the permissions of the resulting :class:`TenantContext`; the
tenant always comes from the ``X-Tenant-ID`` header.
"""

from __future__ import annotations

from enum import StrEnum

from fastapi import Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from tiace.core.constants import Permission
from tiace.core.exceptions import PermissionDeniedError
from tiace.engine import Engine
from tiace.models.tenant import TenantContext

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class Role(StrEnum):
    ADMIN = "admin"
    ANALYST = "analyst"
    READONLY = "readonly"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.ANALYST: frozenset({Permission.READ, Permission.WRITE, Permission.SYNC, Permission.EXPORT}),
    Role.READONLY: frozenset({Permission.READ, Permission.EXPORT}),
}


def parse_key_roles(configured: list[str]) -> dict[str, Role]:
    """Map each configured key to its role; bare keys are admins."""
    roles: dict[str, Role] = {}
    for entry in configured:
        key, sep, role = entry.partition("=")
        try:
            roles[key.strip()] = Role(role.strip().lower()) if sep else Role.ADMIN
        except ValueError:
            roles[key.strip()] = Role.READONLY
    return roles


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


async def require_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> Role:
    """Validate the X-API-Key header and return the caller's role.

    If no API keys are configured, authentication is disabled and every
    caller is an admin of the tenant it names.
    """
    settings = get_engine(request).settings

    # No keys configured = auth disabled
    if not settings.api_keys:
        return Role.ADMIN

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key header")

    role = parse_key_roles(settings.api_keys).get(api_key)
    if role is None:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return role


async def tenant_context(
    x_tenant_id: str | None = Header(default=None),
    role: Role = Security(require_api_key),
) -> TenantContext:
    """Build the caller's tenant context; unscoped requests are rejected."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise PermissionDeniedError("X-Tenant-ID header is required")
    return TenantContext(
        tenant_id=x_tenant_id.strip(),
        caller=f"api:{role.value}",
        permissions=ROLE_PERMISSIONS[role],
    )
