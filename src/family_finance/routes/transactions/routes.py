"""Transaction routes, scoped to the caller's primary family."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from family_finance.managers.family_context import PERMISSION_READ, PERMISSION_WRITE, FamilyContext
from family_finance.managers.transaction_manager import transaction_manager
from family_finance.routes.family.dependencies import require_family_permission
from family_finance.routes.transactions.models import ManualTransactionRequest
from family_finance.utils.serialization import to_public

router = APIRouter(prefix="/transactions", tags=["Transactions"])

can_read = require_family_permission(PERMISSION_READ)
can_write = require_family_permission(PERMISSION_WRITE)


@router.get("")
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category_id: Optional[str] = None,
    transaction_type: Optional[str] = Query(None, alias="type", pattern="^(INCOME|EXPENSE)$"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    context: FamilyContext = Depends(can_read),
):
    result = await transaction_manager.list_transactions(
        context.family.id, page, limit, category_id, transaction_type, start_date, end_date, search
    )
    return to_public(result)


@router.post("/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_transaction(payload: ManualTransactionRequest, context: FamilyContext = Depends(can_write)):
    transaction = await transaction_manager.create_manual_transaction(
        context.family.id, context.user_id, payload.model_dump()
    )
    return {"transaction": to_public(transaction)}


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transaction(transaction_id: str, context: FamilyContext = Depends(can_write)):
    await transaction_manager.delete_transaction(
        context.family.id, context.user_id, context.family.role, transaction_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
