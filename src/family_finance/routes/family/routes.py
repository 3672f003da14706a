"""
Family routes: families, members and invitations.

Routes that act on an explicit ``{family_id}`` re-derive the caller's membership in that
family through ``require_scoped_permission``.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response, status

from family_finance.managers.family_context import (
    PERMISSION_ADMIN,
    PERMISSION_READ,
    FamilyContext,
    ScopedFamilyAccess,
    family_access_resolver,
)
from family_finance.managers.family_manager import family_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.security_manager import rate_limit, security_manager
from family_finance.routes.auth.dependencies import get_current_identity
from family_finance.routes.family.dependencies import get_family_context_dep, require_scoped_permission
from family_finance.routes.family.models import CreateFamilyRequest, InviteMemberRequest, UpdateMemberRoleRequest
from family_finance.utils.serialization import to_public

logger = get_logger(prefix="[Family Routes]")

router = APIRouter(prefix="/families", tags=["Families"])


@router.get("")
async def list_my_families(context: FamilyContext = Depends(get_family_context_dep)):
    """Every family the caller belongs to. Provisions a default family on first use."""
    return {"families": await family_manager.list_user_families(context.user_id)}


@router.get("/current")
async def get_current_family(context: FamilyContext = Depends(get_family_context_dep)):
    return {"family": to_public(context.family)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_family(
    request: Request,
    payload: CreateFamilyRequest,
    context: FamilyContext = Depends(get_family_context_dep),
):
    await security_manager.check_rate_limit(request, f"family_create_{context.user_id}", 5, 3600)
    family = await family_manager.create_family(context.user_id, payload.name, payload.description)
    return {"family": to_public(family)}


@router.get("/invitations/{token}", dependencies=[Depends(rate_limit("public"))])
async def preview_invitation(token: str):
    return {"invitation": await family_manager.get_invitation_by_token(token)}


@router.post("/invitations/{token}/accept")
async def accept_invitation(token: str, identity: Dict[str, Any] = Depends(get_current_identity)):
    user = await family_access_resolver.get_user(identity)
    result = await family_manager.accept_invitation(token, user["user_id"], user["email"])
    return {"message": "Invitation accepted", **result}


@router.get("/{family_id}/members")
async def list_members(
    family_id: str, access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_READ))
):
    return {"members": await family_manager.list_members(family_id)}


@router.post("/{family_id}/invitations", status_code=status.HTTP_201_CREATED)
async def invite_member(
    family_id: str,
    payload: InviteMemberRequest,
    access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_ADMIN)),
):
    invitation = await family_manager.invite_member(family_id, access.user["user_id"], payload.email, payload.role)
    return {
        "invitation": {
            "invitation_id": invitation["invitation_id"],
            "email": invitation["email"],
            "role": invitation["role"],
            "expires_at": invitation["expires_at"],
        }
    }


@router.get("/{family_id}/invitations")
async def list_invitations(
    family_id: str, access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_ADMIN))
):
    return {"invitations": to_public(await family_manager.list_invitations(family_id))}


@router.delete("/{family_id}/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_invitation(
    family_id: str,
    invitation_id: str,
    access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_ADMIN)),
):
    await family_manager.cancel_invitation(family_id, invitation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{family_id}/members/{member_id}")
async def update_member_role(
    family_id: str,
    member_id: str,
    payload: UpdateMemberRoleRequest,
    access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_ADMIN)),
):
    member = await family_manager.update_member_role(family_id, access.user["user_id"], member_id, payload.role)
    return {"member_id": member["member_id"], "role": member["role"]}


@router.delete("/{family_id}/members/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    family_id: str,
    member_id: str,
    access: ScopedFamilyAccess = Depends(require_scoped_permission(PERMISSION_ADMIN)),
):
    await family_manager.remove_member(family_id, access.user["user_id"], member_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
