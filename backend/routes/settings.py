"""
Sales CRM - Routes Settings (Admin)

Endpoints pour gerer les parametres societe:
- rotation des leads / des numeros, strategie de rotation
- relances automatiques et intervalles par statut
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from typing import Optional, Dict

from models import User
from routes.auth import get_current_user, require_admin
from services.settings import get_company_settings, update_company_settings

router = APIRouter(prefix="/settings", tags=["Settings"])


# ---- Models ----

class CompanySettingUpdate(BaseModel):
    company_name: Optional[str] = None
    lead_rotation_enabled: Optional[bool] = None
    number_rotation_enabled: Optional[bool] = None
    auto_followup_enabled: Optional[bool] = None
    prefer_default_number: Optional[bool] = None
    rotation_strategy: Optional[str] = None
    default_followup_intervals: Optional[Dict[str, int]] = None


# ---- Endpoints ----

@router.get("/company")
async def get_company(request: Request, user: User = Depends(get_current_user)):
    settings = await get_company_settings(request.app.state.db)
    return settings.model_dump()


@router.put("/company")
async def update_company(data: CompanySettingUpdate, request: Request, admin: User = Depends(require_admin)):
    settings = await update_company_settings(
        request.app.state.db,
        data.model_dump(exclude_none=True),
        updated_by=admin.id
    )
    return settings.model_dump()
