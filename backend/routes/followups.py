"""
Sales CRM - Routes FollowUps
Toutes les transitions passent par FollowUpScheduler.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, Query
from pydantic import BaseModel

from models import User
from routes.auth import get_current_user

router = APIRouter(tags=["FollowUps"])


# ---- Models ----

class FollowUpCreate(BaseModel):
    lead_id: str
    assigned_to: Optional[str] = None
    followup_type: str = "call"
    interval_days: Optional[int] = None
    notes: str = ""


class FollowUpComplete(BaseModel):
    outcome: Optional[str] = None
    notes: Optional[str] = None


class FollowUpReschedule(BaseModel):
    new_date: datetime


class FollowUpSnooze(BaseModel):
    snooze_until: datetime


class FollowUpStatusUpdate(BaseModel):
    status: str
    outcome: Optional[str] = None
    notes: Optional[str] = None


def _scheduler(request: Request):
    return request.app.state.followups


# ---- Views ----

@router.get("/followups/overdue")
async def overdue(request: Request, user_id: Optional[str] = None, user: User = Depends(get_current_user)):
    items = await _scheduler(request).list_overdue(user, user_id)
    return {"followups": [f.model_dump() for f in items], "count": len(items)}


@router.get("/followups/today")
async def today(request: Request, user_id: Optional[str] = None, user: User = Depends(get_current_user)):
    items = await _scheduler(request).list_today(user, user_id)
    return {"followups": [f.model_dump() for f in items], "count": len(items)}


@router.get("/followups/upcoming")
async def upcoming(
    request: Request,
    user_id: Optional[str] = None,
    days: int = Query(7, ge=1, le=90),
    user: User = Depends(get_current_user)
):
    items = await _scheduler(request).list_upcoming(user, user_id, days)
    return {"followups": [f.model_dump() for f in items], "count": len(items)}


@router.get("/followups/{followup_id}")
async def get_followup(followup_id: str, request: Request, user: User = Depends(get_current_user)):
    return (await _scheduler(request).get(followup_id, user)).model_dump()


@router.get("/leads/{lead_id}/followups")
async def lead_followups(lead_id: str, request: Request, user: User = Depends(get_current_user)):
    items = await _scheduler(request).list_for_lead(lead_id, user)
    return {"followups": [f.model_dump() for f in items], "count": len(items)}


# ---- Mutations ----

@router.post("/followups")
async def create_followup(data: FollowUpCreate, request: Request, user: User = Depends(get_current_user)):
    followup = await _scheduler(request).schedule(
        data.lead_id,
        data.assigned_to or user.id,
        data.followup_type,
        data.interval_days,
        caller=user,
        notes=data.notes
    )
    return followup.model_dump()


@router.put("/followups/{followup_id}/complete")
async def complete_followup(followup_id: str, data: FollowUpComplete, request: Request,
                            user: User = Depends(get_current_user)):
    followup = await _scheduler(request).complete(followup_id, data.outcome, data.notes, caller=user)
    return followup.model_dump()


@router.put("/followups/{followup_id}/reschedule")
async def reschedule_followup(followup_id: str, data: FollowUpReschedule, request: Request,
                              user: User = Depends(get_current_user)):
    followup = await _scheduler(request).reschedule(followup_id, data.new_date, caller=user)
    return followup.model_dump()


@router.put("/followups/{followup_id}/snooze")
async def snooze_followup(followup_id: str, data: FollowUpSnooze, request: Request,
                          user: User = Depends(get_current_user)):
    followup = await _scheduler(request).snooze(followup_id, data.snooze_until, caller=user)
    return followup.model_dump()


@router.put("/followups/{followup_id}/status")
async def update_followup_status(followup_id: str, data: FollowUpStatusUpdate, request: Request,
                                 user: User = Depends(get_current_user)):
    followup = await _scheduler(request).transition(
        followup_id, data.status, data.outcome, data.notes, caller=user
    )
    return followup.model_dump()
