"""
Sales CRM - Routes Numéros d'envoi (admin)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from config import new_id, now_iso, normalize_phone
from models import User, OutboundChannel, DEFAULT_DAILY_LIMIT
from routes.auth import get_current_user, require_admin

router = APIRouter(prefix="/channels", tags=["Channels"])


class ChannelCreate(BaseModel):
    identifier: str
    name: str = ""
    provider: str = "twilio"
    daily_limit: int = DEFAULT_DAILY_LIMIT
    is_default: bool = False


class ChannelUpdate(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    daily_limit: Optional[int] = None


def _rotator(request: Request):
    return request.app.state.channels


@router.get("")
async def list_channels(request: Request, admin: User = Depends(require_admin)):
    stats = await _rotator(request).usage_statistics()
    return {"channels": stats, "count": len(stats)}


@router.post("")
async def create_channel(data: ChannelCreate, request: Request, admin: User = Depends(require_admin)):
    valid, identifier = normalize_phone(data.identifier)
    if not valid:
        raise HTTPException(status_code=400, detail=identifier)
    if data.daily_limit <= 0:
        raise HTTPException(status_code=400, detail="daily_limit doit être positif")

    db = request.app.state.db
    if await db.outbound_channels.find_one({"identifier": identifier}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Numéro déjà enregistré")

    channel = OutboundChannel(
        id=new_id(),
        identifier=identifier,
        name=data.name,
        provider=data.provider,
        daily_limit=data.daily_limit,
        created_at=now_iso(),
    )
    await db.outbound_channels.insert_one(channel.model_dump())
    if data.is_default:
        channel = await _rotator(request).set_default_channel(channel.id)
    return channel.model_dump()


@router.put("/{channel_id}")
async def update_channel(channel_id: str, data: ChannelUpdate, request: Request,
                         admin: User = Depends(require_admin)):
    changes = data.model_dump(exclude_none=True)
    if "daily_limit" in changes and changes["daily_limit"] <= 0:
        raise HTTPException(status_code=400, detail="daily_limit doit être positif")
    if not changes:
        raise HTTPException(status_code=400, detail="Aucune modification")

    db = request.app.state.db
    result = await db.outbound_channels.update_one({"id": channel_id}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Canal introuvable")
    return (await _rotator(request).ensure_daily_reset(channel_id)).model_dump()


@router.put("/{channel_id}/default")
async def set_default(channel_id: str, request: Request, admin: User = Depends(require_admin)):
    return (await _rotator(request).set_default_channel(channel_id)).model_dump()


@router.post("/reset")
async def reset_counts(request: Request, admin: User = Depends(require_admin)):
    count = await _rotator(request).reset_all_daily_counts()
    return {"success": True, "reset": count}


@router.get("/next")
async def next_channel(request: Request, user: User = Depends(get_current_user)):
    """Aperçu du prochain numéro (sans consommer de quota)"""
    return (await _rotator(request).select_channel()).model_dump()
