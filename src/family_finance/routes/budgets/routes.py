"""Budget routes, scoped to the caller's primary family."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from family_finance.managers.budget_manager import budget_manager
from family_finance.managers.family_context import PERMISSION_ADMIN, PERMISSION_READ, PERMISSION_WRITE, FamilyContext
from family_finance.routes.budgets.models import (
    BudgetCreateRequest,
    BudgetUpdateRequest,
    PeriodRequest,
    RolloverRequest,
    RolloverTransferRequest,
    TemplateCreateRequest,
    TemplateUpdateRequest,
)
from family_finance.routes.family.dependencies import require_family_permission
from family_finance.utils.serialization import to_public

router = APIRouter(prefix="/budgets", tags=["Budgets"])

can_read = require_family_permission(PERMISSION_READ)
can_write = require_family_permission(PERMISSION_WRITE)
can_admin = require_family_permission(PERMISSION_ADMIN)


@router.get("")
async def list_budgets(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    context: FamilyContext = Depends(can_read),
):
    return {"budgets": to_public(await budget_manager.list_budgets(context.family.id, year, month))}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_budget(payload: BudgetCreateRequest, context: FamilyContext = Depends(can_write)):
    budget = await budget_manager.create_budget(context.family.id, context.user_id, payload.model_dump())
    return {"budget": to_public(budget)}


@router.get("/templates")
async def list_templates(context: FamilyContext = Depends(can_read)):
    return {"templates": to_public(await budget_manager.list_templates(context.family.id))}


@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(payload: TemplateCreateRequest, context: FamilyContext = Depends(can_write)):
    template = await budget_manager.create_template(context.family.id, context.user_id, payload.model_dump())
    return {"template": to_public(template)}


@router.patch("/templates/{template_id}")
async def update_template(
    template_id: str, payload: TemplateUpdateRequest, context: FamilyContext = Depends(can_write)
):
    template = await budget_manager.update_template(
        context.family.id, template_id, payload.model_dump(exclude_unset=True)
    )
    return {"template": to_public(template)}


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: str, context: FamilyContext = Depends(can_admin)):
    await budget_manager.delete_template(context.family.id, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/templates/{template_id}/generate", status_code=status.HTTP_201_CREATED)
async def generate_from_template(template_id: str, context: FamilyContext = Depends(can_write)):
    budget = await budget_manager.generate_from_template(context.family.id, context.user_id, template_id)
    return {"budget": to_public(budget)}


@router.post("/generate")
async def generate_budgets(payload: PeriodRequest, context: FamilyContext = Depends(can_write)):
    """Generate the month's budgets from every auto-generate template."""
    result = await budget_manager.generate_for_period(context.family.id, context.user_id, payload.year, payload.month)
    return {
        "generated": to_public(result.generated),
        "skipped": result.skipped,
        "message": f"Generated {len(result.generated)} budgets, skipped {len(result.skipped)}",
    }


@router.get("/missing")
async def find_missing_budgets(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    context: FamilyContext = Depends(can_read),
):
    templates = await budget_manager.find_missing_budgets(context.family.id, year, month)
    return {"missing": to_public(templates), "count": len(templates)}


@router.post("/rollover")
async def calculate_rollover(payload: RolloverRequest, context: FamilyContext = Depends(can_admin)):
    rollovers = await budget_manager.calculate_rollover(context.family.id, payload.year, payload.month, payload.apply)
    return {"rollovers": rollovers}


@router.post("/rollover/transfer")
async def transfer_rollover(payload: RolloverTransferRequest, context: FamilyContext = Depends(can_write)):
    return await budget_manager.transfer_rollover(
        context.family.id,
        payload.from_category_id,
        payload.to_category_id,
        payload.amount,
        payload.year,
        payload.month,
    )


@router.get("/{budget_id}")
async def get_budget(budget_id: str, context: FamilyContext = Depends(can_read)):
    return {"budget": to_public(await budget_manager.get_budget(context.family.id, budget_id))}


@router.patch("/{budget_id}")
async def update_budget(budget_id: str, payload: BudgetUpdateRequest, context: FamilyContext = Depends(can_write)):
    budget = await budget_manager.update_budget(context.family.id, budget_id, payload.model_dump(exclude_unset=True))
    return {"budget": to_public(budget)}


@router.delete("/{budget_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_budget(budget_id: str, context: FamilyContext = Depends(can_admin)):
    await budget_manager.delete_budget(context.family.id, budget_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
