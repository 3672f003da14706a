"""
Family scope dependencies for FastAPI routes.

- get_family_context_dep: the caller's primary family, provisioned on first use
- require_family_permission: primary-family role check
- require_scoped_permission: role check against the ``family_id`` path parameter

Every denial produces the same 403 body.
"""

from typing import Any, Dict

from fastapi import Depends, Path

from family_finance.managers import family_context as family_context_module
from family_finance.managers.family_context import FamilyContext, ScopedFamilyAccess, require_permission
from family_finance.routes.auth.dependencies import get_current_identity
from family_finance.utils.error_handling import InsufficientPermissions


async def get_family_context_dep(identity: Dict[str, Any] = Depends(get_current_identity)) -> FamilyContext:
    return await family_context_module.family_access_resolver.get_family_context(identity)


def require_family_permission(permission: str):
    """Dependency factory: the primary family's context, if the caller's role grants ``permission``."""

    async def _require_family_permission(context: FamilyContext = Depends(get_family_context_dep)) -> FamilyContext:
        require_permission(context, permission)
        return context

    return _require_family_permission


def require_scoped_permission(permission: str):
    """Dependency factory: membership in the path's ``family_id`` with ``permission``."""

    async def _require_scoped_permission(
        family_id: str = Path(...),
        identity: Dict[str, Any] = Depends(get_current_identity),
    ) -> ScopedFamilyAccess:
        access = await family_context_module.family_access_resolver.validate_family_permission(
            identity, family_id, permission
        )
        if access is None:
            raise InsufficientPermissions()
        return access

    return _require_scoped_permission
