"""
Sales CRM - Routes Modèles de message WhatsApp
Lecture: tout utilisateur connecté. Écriture: admin.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from models import User, TemplateCreate, TemplateUpdate
from routes.auth import get_current_user, require_admin

router = APIRouter(prefix="/templates", tags=["Templates"])


def _library(request: Request):
    return request.app.state.templates


@router.get("")
async def list_templates(request: Request, category: Optional[str] = None, active_only: bool = False,
                         user: User = Depends(get_current_user)):
    items = await _library(request).list_templates(category, active_only)
    return {"templates": [t.model_dump() for t in items], "count": len(items)}


@router.get("/{template_id}")
async def get_template(template_id: str, request: Request, user: User = Depends(get_current_user)):
    return (await _library(request).get(template_id)).model_dump()


@router.post("")
async def create_template(data: TemplateCreate, request: Request, admin: User = Depends(require_admin)):
    return (await _library(request).create(data, admin.id)).model_dump()


@router.put("/{template_id}")
async def update_template(template_id: str, data: TemplateUpdate, request: Request,
                          admin: User = Depends(require_admin)):
    return (await _library(request).update(template_id, data)).model_dump()


@router.delete("/{template_id}")
async def delete_template(template_id: str, request: Request, admin: User = Depends(require_admin)):
    await _library(request).delete(template_id)
    return {"success": True}
