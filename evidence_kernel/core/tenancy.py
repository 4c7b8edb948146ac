"""
Tenant isolation guard.
Every repository call goes through require_tenant; tenant_id is never optional.
"""

from typing import Optional

from .errors import TenantContextMissing, TenantIsolationError


def require_tenant(tenant_id: Optional[str]) -> str:
    """Return the stripped tenant id, or fail if the caller forgot to pass one."""
    if tenant_id is None or not str(tenant_id).strip():
        raise TenantContextMissing("Repository called without tenant context")
    return str(tenant_id).strip()


def assert_same_tenant(authenticated_tenant: str, referenced_tenant: Optional[str]) -> None:
    """A request may only name its own tenant."""
    if referenced_tenant is None:
        return
    if str(referenced_tenant).strip() != require_tenant(authenticated_tenant):
        raise TenantIsolationError("Cross-tenant reference rejected")
