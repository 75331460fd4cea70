"""
Routes pour les Leads
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from models import LeadCreate, User
from routes.auth import get_current_user, require_admin
from services.errors import ConfigurationError

router = APIRouter(tags=["Leads"])


class LeadCreateRequest(LeadCreate):
    schedule_followup: bool = True
    followup_type: str = "call"
    followup_interval: Optional[int] = None


class LeadStatusUpdate(BaseModel):
    status: str
    reason: str = ""


class LeadAssign(BaseModel):
    user_id: str


class LeadMessage(BaseModel):
    content: Optional[str] = ""
    channel_type: str = "whatsapp"
    template_id: Optional[str] = None


class WhatsAppInbound(BaseModel):
    """Payload webhook (noms de champs du provider)"""
    sender: str = Field(alias="From")
    body: str = Field("", alias="Body")
    profile_name: Optional[str] = Field(None, alias="ProfileName")
    message_sid: Optional[str] = Field(None, alias="MessageSid")


def _leads(request: Request):
    return request.app.state.leads


# ==================== LEADS ====================

@router.post("/leads")
async def create_lead(data: LeadCreateRequest, request: Request, user: User = Depends(get_current_user)):
    lead = await _leads(request).create_lead(
        LeadCreate(**data.model_dump(include={"name", "phone", "email", "company", "message", "source"})),
        caller=user,
        schedule_followup=data.schedule_followup,
        followup_type=data.followup_type,
        followup_interval=data.followup_interval
    )
    return lead.model_dump()


@router.get("/leads")
async def list_leads(
    request: Request,
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: User = Depends(get_current_user)
):
    leads = await _leads(request).list_leads(user, status, min(limit, 1000), skip)
    return {"leads": [lead.model_dump() for lead in leads], "count": len(leads)}


@router.get("/leads/{lead_id}")
async def get_lead(lead_id: str, request: Request, user: User = Depends(get_current_user)):
    return (await _leads(request).get_lead(lead_id, user)).model_dump()


@router.put("/leads/{lead_id}/status")
async def change_status(lead_id: str, data: LeadStatusUpdate, request: Request,
                        user: User = Depends(get_current_user)):
    lead = await _leads(request).change_status(lead_id, data.status, user, data.reason)
    return lead.model_dump()


@router.put("/leads/{lead_id}/assign")
async def assign_lead(lead_id: str, data: LeadAssign, request: Request, admin: User = Depends(require_admin)):
    lead = await _leads(request).reassign(lead_id, data.user_id, admin)
    return lead.model_dump()


@router.delete("/leads/{lead_id}")
async def delete_lead(lead_id: str, request: Request, user: User = Depends(get_current_user)):
    deleted = await _leads(request).delete_lead(lead_id, user)
    return {"success": True, "deleted": deleted}


@router.get("/leads/{lead_id}/activities")
async def lead_activities(lead_id: str, request: Request, limit: int = 100,
                          user: User = Depends(get_current_user)):
    await _leads(request).get_lead(lead_id, user)
    items = await request.app.state.activities.list_for_lead(lead_id, min(limit, 1000))
    return {"activities": [a.model_dump() for a in items], "count": len(items)}


@router.post("/leads/{lead_id}/send")
async def send_message(lead_id: str, data: LeadMessage, request: Request,
                       user: User = Depends(get_current_user)):
    sender = getattr(request.app.state, "sender", None)
    if sender is None:
        raise ConfigurationError("Aucun transport d'envoi configuré")

    result = await request.app.state.dispatcher.send(
        lead_id, user, data.content, sender, data.channel_type, data.template_id
    )
    return {
        "success": True,
        "channel": result["channel"].identifier,
        "provider_message_id": result["provider_message_id"],
        "content": result["content"],
    }


# ==================== WEBHOOK ====================

@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(data: WhatsAppInbound, request: Request):
    lead, is_new = await _leads(request).ingest_whatsapp(
        data.sender, data.body, data.profile_name, data.message_sid
    )
    return {
        "success": True,
        "lead_id": lead.id if lead else None,
        "is_new": is_new,
    }
