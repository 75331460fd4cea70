"""
Sales CRM - Bibliothèque de modèles de message (TemplateLibrary)

CRUD admin + rendu des placeholders à partir du lead et de l'employé.
"""

import logging
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument

from config import new_id, now_iso, strip_id
from models import MessageTemplate, TemplateCreate, TemplateUpdate, User
from services.errors import NotFoundError, InvalidArgumentError, storage_errors

logger = logging.getLogger("templates")

# placeholder -> (champ, valeur par défaut)
PLACEHOLDERS = {
    "{{Customer_Name}}": ("lead.name", "Customer"),
    "{{Employee_Name}}": ("user.name", ""),
    "{{Company_Name}}": ("lead.company", "your company"),
    "{{Service_Name}}": ("lead.interested_in", "our services"),
}


def render_template(content: str, lead: Dict[str, Any], employee: Optional[User] = None) -> str:
    """Remplace les placeholders; champ vide -> valeur par défaut"""
    sources = {"lead": lead or {}, "user": employee.model_dump() if employee else {}}
    rendered = content
    for placeholder, (path, default) in PLACEHOLDERS.items():
        scope, field = path.split(".")
        rendered = rendered.replace(placeholder, sources[scope].get(field) or default)
    return rendered


class TemplateLibrary:

    def __init__(self, db):
        self.db = db

    @storage_errors("template.create")
    async def create(self, data: TemplateCreate, created_by: Optional[str] = None) -> MessageTemplate:
        now = now_iso()
        template = MessageTemplate(
            id=new_id(),
            created_by=created_by,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        await self.db.message_templates.insert_one(template.model_dump())
        logger.info(f"[TEMPLATE] Créé {template.id} ({template.name})")
        return template

    @storage_errors("template.list")
    async def list_templates(self, category: Optional[str] = None, active_only: bool = False) -> List[MessageTemplate]:
        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        if active_only:
            query["is_active"] = True
        docs = await self.db.message_templates.find(query, {"_id": 0}).sort("name", 1).to_list(1000)
        return [MessageTemplate(**d) for d in docs]

    @storage_errors("template.get")
    async def get(self, template_id: str) -> MessageTemplate:
        doc = await self.db.message_templates.find_one({"id": template_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"No template found with id {template_id}")
        return MessageTemplate(**doc)

    @storage_errors("template.update")
    async def update(self, template_id: str, data: TemplateUpdate) -> MessageTemplate:
        changes = data.model_dump(exclude_none=True, mode="json")
        if not changes:
            return await self.get(template_id)
        changes["updated_at"] = now_iso()
        doc = strip_id(await self.db.message_templates.find_one_and_update(
            {"id": template_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        ))
        if not doc:
            raise NotFoundError(f"No template found with id {template_id}")
        return MessageTemplate(**doc)

    @storage_errors("template.delete")
    async def delete(self, template_id: str) -> bool:
        result = await self.db.message_templates.delete_one({"id": template_id})
        if not result.deleted_count:
            raise NotFoundError(f"No template found with id {template_id}")
        logger.info(f"[TEMPLATE] Supprimé {template_id}")
        return True

    async def resolve(self, template_id: str) -> MessageTemplate:
        """Modèle utilisable pour un envoi (existant et actif)"""
        template = await self.get(template_id)
        if not template.is_active:
            raise InvalidArgumentError(f"Template {template.name} is inactive")
        return template

    @storage_errors("template.usage")
    async def mark_used(self, template_id: str):
        await self.db.message_templates.update_one({"id": template_id}, {"$inc": {"usage_count": 1}})
