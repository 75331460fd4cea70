"""
Service de journalisation des activités (ActivityRecorder)

Journal append-only des interactions avec un lead: appels, messages,
notes, changements de statut. Une activité n'est jamais modifiée; elle
disparait uniquement avec la suppression en cascade de son lead.
"""

import logging
from typing import Optional, List

from config import new_id, now_iso
from models import (
    Activity,
    ActivityType,
    VALID_ACTIVITY_TYPES,
    VALID_ACTIVITY_STATUSES,
)
from services.errors import InvalidArgumentError, storage_errors

logger = logging.getLogger("activity_logger")


class ActivityRecorder:
    """
    Actions: call, whatsapp, email, meeting, note
    Status: attempted, connected, not-answered, completed, other
    """

    def __init__(self, db):
        self.db = db

    @storage_errors("activity.record")
    async def record(
        self,
        lead_id: str,
        user_id: str,
        type: str,
        status: str = "completed",
        notes: str = "",
        duration: Optional[int] = None,
        template_used: Optional[str] = None
    ) -> Activity:
        """
        Enregistre une activité dans le journal.

        Pas de retry ici: une StorageError remonte telle quelle.
        """
        if not lead_id or not user_id:
            raise InvalidArgumentError("lead_id et user_id sont obligatoires")
        if type not in VALID_ACTIVITY_TYPES:
            raise InvalidArgumentError(f"type d'activité invalide: {type}")
        if status not in VALID_ACTIVITY_STATUSES:
            raise InvalidArgumentError(f"statut d'activité invalide: {status}")
        if duration is not None:
            if type != ActivityType.CALL.value:
                raise InvalidArgumentError("duration ne s'applique qu'aux appels")
            if duration < 0:
                raise InvalidArgumentError("duration doit être positive")

        entry = {
            "id": new_id(),
            "lead_id": lead_id,
            "user_id": user_id,
            "type": type,
            "status": status,
            "duration": duration,
            "notes": notes or "",
            "template_used": template_used,
            "created_at": now_iso()
        }

        await self.db.activities.insert_one(dict(entry))
        logger.debug(f"[ACTIVITY] {type}/{status} lead={lead_id} user={user_id}")
        return Activity(**entry)

    async def record_status_change(self, lead_id: str, user_id: str, old_status: str,
                                   new_status: str, reason: str = "") -> Activity:
        notes = f"Lead status changed from {old_status} to {new_status}"
        if reason:
            notes = f"{notes} {reason}"
        return await self.record(lead_id, user_id, ActivityType.NOTE.value, "completed", notes)

    @storage_errors("activity.list")
    async def list_for_lead(self, lead_id: str, limit: int = 100, skip: int = 0) -> List[Activity]:
        """Activités d'un lead, plus récentes en premier"""
        docs = await self.db.activities.find({"lead_id": lead_id}, {"_id": 0}) \
            .sort("created_at", -1) \
            .skip(skip) \
            .limit(limit) \
            .to_list(limit)
        return [Activity(**d) for d in docs]

    @storage_errors("activity.list")
    async def list_for_user(self, user_id: str, limit: int = 100, skip: int = 0) -> List[Activity]:
        docs = await self.db.activities.find({"user_id": user_id}, {"_id": 0}) \
            .sort("created_at", -1) \
            .skip(skip) \
            .limit(limit) \
            .to_list(limit)
        return [Activity(**d) for d in docs]
