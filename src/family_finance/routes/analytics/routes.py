"""Dashboard analytics for the caller's primary family."""

from fastapi import APIRouter, Depends

from family_finance.managers.analytics_manager import analytics_manager
from family_finance.managers.family_context import PERMISSION_READ, FamilyContext
from family_finance.routes.family.dependencies import require_family_permission
from family_finance.utils.serialization import to_public

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("/overview")
async def overview(context: FamilyContext = Depends(require_family_permission(PERMISSION_READ))):
    return to_public(await analytics_manager.overview(context.family.id))
