# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tenant scoping for every storage and query operation."""

from __future__ import annotations

from dataclasses import dataclass, field

from tiace.core.constants import Permission
from tiace.core.exceptions import PermissionDeniedError

ALL_PERMISSIONS = frozenset(Permission)


@dataclass(frozen=True, slots=True)
class TenantContext:
    """An authenticated caller acting inside one tenant."""

    tenant_id: str
    caller: str = "system"
    permissions: frozenset[Permission] = field(default=ALL_PERMISSIONS)

    def __post_init__(self) -> None:
        if not self.tenant_id or not self.tenant_id.strip():
            raise PermissionDeniedError("A tenant id is required for every operation")

    def require(self, permission: Permission) -> None:
        if permission not in self.permissions and Permission.ADMIN not in self.permissions:
            raise PermissionDeniedError(
                f"{self.caller!r} lacks {permission.value!r} permission in tenant {self.tenant_id!r}"
            )

    def check_tenant(self, tenant_id: str | None) -> None:
        """Reject requests that name a tenant other than the caller's."""
        if tenant_id is not None and tenant_id != self.tenant_id:
            raise PermissionDeniedError(
                f"Cross-tenant access from {self.tenant_id!r} to {tenant_id!r} is forbidden"
            )


def system_context(tenant_id: str) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, caller="system")
