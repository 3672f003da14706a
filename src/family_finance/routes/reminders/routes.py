"""Reminder routes, scoped to the caller's primary family."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from family_finance.managers.family_context import PERMISSION_ADMIN, PERMISSION_READ, PERMISSION_WRITE, FamilyContext
from family_finance.managers.reminder_manager import STATUS_FILTERS, reminder_manager
from family_finance.routes.family.dependencies import require_family_permission
from family_finance.routes.reminders.models import ReminderCreateRequest, ReminderUpdateRequest
from family_finance.utils.serialization import to_public

router = APIRouter(prefix="/reminders", tags=["Reminders"])

can_read = require_family_permission(PERMISSION_READ)
can_write = require_family_permission(PERMISSION_WRITE)
can_admin = require_family_permission(PERMISSION_ADMIN)


@router.get("")
async def list_reminders(
    status_filter: str = Query("all", alias="status", pattern="^(" + "|".join(STATUS_FILTERS) + ")$"),
    priority: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    context: FamilyContext = Depends(can_read),
):
    result = await reminder_manager.list_reminders(context.family.id, status_filter, priority, page, limit)
    return to_public(result)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_reminder(payload: ReminderCreateRequest, context: FamilyContext = Depends(can_write)):
    reminder = await reminder_manager.create_reminder(context.family.id, context.user_id, payload.model_dump())
    return {"reminder": to_public(reminder)}


@router.get("/calendar")
async def reminder_calendar(
    start: datetime = Query(...),
    end: datetime = Query(...),
    context: FamilyContext = Depends(can_read),
):
    return to_public(await reminder_manager.calendar(context.family.id, start, end))


@router.get("/{reminder_id}")
async def get_reminder(reminder_id: str, context: FamilyContext = Depends(can_read)):
    return {"reminder": to_public(await reminder_manager.get_reminder(context.family.id, reminder_id))}


@router.patch("/{reminder_id}")
async def update_reminder(
    reminder_id: str, payload: ReminderUpdateRequest, context: FamilyContext = Depends(can_write)
):
    reminder = await reminder_manager.update_reminder(
        context.family.id, reminder_id, payload.model_dump(exclude_unset=True)
    )
    return {"reminder": to_public(reminder)}


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reminder(reminder_id: str, context: FamilyContext = Depends(can_admin)):
    await reminder_manager.delete_reminder(context.family.id, reminder_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
