"""Category listing for pickers: global categories plus the caller's family categories."""

from fastapi import APIRouter, Depends

from family_finance.managers.category_manager import category_manager
from family_finance.managers.family_context import PERMISSION_READ, FamilyContext
from family_finance.routes.family.dependencies import require_family_permission

router = APIRouter(prefix="/categories", tags=["Categories"])


@router.get("")
async def list_categories(context: FamilyContext = Depends(require_family_permission(PERMISSION_READ))):
    return {"categories": await category_manager.list_categories(context.family.id)}
