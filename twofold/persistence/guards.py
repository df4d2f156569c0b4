from __future__ import annotations

from typing import Any

from twofold.core.config import get_settings


class TenantPredicateError(RuntimeError):
    """A repo call reached the store without a tenant to scope it by."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def require_tenant_id(tenant_id: str | None) -> str:
    # Fail closed: tenant isolation is enforced per call, never by a session-wide filter.
    if not tenant_id and get_settings().authz_require_tenant_predicate:
        raise TenantPredicateError("tenant_id is required to scope this query")
    return tenant_id or ""


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Every tenant-owned row is filtered through this helper so coverage can be audited.
    return model.tenant_id == require_tenant_id(tenant_id)
