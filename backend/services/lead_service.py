"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Lead Service                                                    ║
║                                                                              ║
║  Entrées: saisie manuelle, webhook WhatsApp                                  ║
║  Flux: rotation -> insert -> Activity -> notification -> 1er followup        ║
║                                                                              ║
║  Suppression UNIQUEMENT en cascade (lead + followups + activities)           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import logging
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Union

from pymongo import ReturnDocument

from config import new_id, now_iso, normalize_phone, strip_id
from models import (
    Lead,
    LeadCreate,
    LeadSource,
    LeadStatus,
    User,
    TERMINAL_LEAD_STATUSES,
    VALID_FOLLOWUP_TYPES,
    normalize_lead_status,
)
from services.activity_logger import ActivityRecorder
from services.assignment_rotator import AssignmentRotator
from services.errors import (
    CRMError,
    NotFoundError,
    UnauthorizedError,
    InvalidArgumentError,
    ConflictError,
    StorageError,
    PartialFailureError,
    check_deadline,
    storage_errors,
)
from services.followup_scheduler import FollowUpScheduler
from services.notifications import NotificationSink, NullNotificationSink
from services.settings import get_company_settings

logger = logging.getLogger("lead_service")

NAME_PATTERN = re.compile(r"(?:my name is|I am|I'm) ([A-Za-z\s]+)", re.IGNORECASE)

DEFAULT_WHATSAPP_NAME = "WhatsApp Lead"


def extract_name(body: str, profile_name: Optional[str] = None) -> str:
    """Nom du lead: "my name is X" dans le message, sinon le profil WhatsApp"""
    match = NAME_PATTERN.search(body or "")
    if match:
        name = match.group(1).strip()
        if name:
            return name
    if profile_name and profile_name.strip():
        return profile_name.strip()
    return DEFAULT_WHATSAPP_NAME


class LeadService:

    def __init__(
        self,
        db,
        rotator: Optional[AssignmentRotator] = None,
        scheduler: Optional[FollowUpScheduler] = None,
        activities: Optional[ActivityRecorder] = None,
        notifier: Optional[NotificationSink] = None
    ):
        self.db = db
        self.activities = activities or ActivityRecorder(db)
        self.notifier = notifier or NullNotificationSink()
        self.rotator = rotator or AssignmentRotator(db)
        self.scheduler = scheduler or FollowUpScheduler(db, self.activities, self.notifier)

    # ════════════════════════════════════════════════════════════════════
    # HELPERS
    # ════════════════════════════════════════════════════════════════════

    async def _load(self, lead_id: str) -> dict:
        doc = await self.db.leads.find_one({"id": lead_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Lead not found with id of {lead_id}")
        return doc

    @staticmethod
    def _authorize(caller: Optional[User], lead: dict, action: str):
        if caller is None or caller.is_admin:
            return
        if lead.get("assigned_to") != caller.id:
            raise UnauthorizedError(f"User {caller.id} is not authorized to {action} this lead")

    async def _pick_assignee(self, caller: Optional[User], deadline: Optional[datetime]) -> User:
        settings = await get_company_settings(self.db)
        if settings.lead_rotation_enabled or caller is None or caller.id == "system":
            return await self.rotator.assign_next(deadline)
        return caller

    # ════════════════════════════════════════════════════════════════════
    # CREATE
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("lead.create")
    async def create_lead(
        self,
        data: Union[LeadCreate, Dict],
        caller: Optional[User] = None,
        schedule_followup: bool = True,
        followup_type: str = "call",
        followup_interval: Optional[int] = None,
        message_sid: Optional[str] = None,
        deadline: Optional[datetime] = None
    ) -> Lead:
        """
        Crée un lead et l'attribue.

        Rotation activée (ou appel système): AssignmentRotator.
        Rotation désactivée: le créateur garde le lead.

        Raises:
            InvalidArgumentError téléphone / type de followup invalide
            NoEligibleAssigneeError aucun employé pour la rotation
            PartialFailureError lead créé mais 1er followup non planifié
        """
        if isinstance(data, dict):
            data = LeadCreate(**data)

        valid, phone = normalize_phone(data.phone)
        if not valid:
            raise InvalidArgumentError(f"Téléphone invalide: {phone}")
        if schedule_followup and followup_type not in VALID_FOLLOWUP_TYPES:
            raise InvalidArgumentError(f"type de followup invalide: {followup_type}")
        if not (data.name or "").strip():
            raise InvalidArgumentError("name est obligatoire")

        check_deadline(deadline, "create_lead")

        assignee = await self._pick_assignee(caller, deadline)

        now = now_iso()
        doc = {
            "id": new_id(),
            "name": data.name.strip(),
            "phone": phone,
            "email": data.email or "",
            "company": data.company or "",
            "message": data.message or "",
            "message_sid": message_sid,
            "status": LeadStatus.NEW.value,
            "assigned_to": assignee.id,
            "source": data.source.value if isinstance(data.source, LeadSource) else data.source,
            "last_contacted": None,
            "last_contact_method": None,
            "contacted_with": None,
            "followup_seq": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.leads.insert_one(dict(doc))
        lead = Lead(**doc)

        logger.info(f"[LEAD] Créé {lead.id} ({lead.source}) -> {assignee.name or assignee.id}")

        actor = caller.id if caller and caller.id != "system" else assignee.id
        try:
            await self.activities.record(lead.id, actor, "note", "completed", f"Lead created from {lead.source}")
        except StorageError as e:
            raise PartialFailureError("Lead created but activity log failed", step="activity", entity=lead, cause=e)

        await self.notifier.notify(
            assignee.id,
            "New Lead Assigned",
            f"You have been assigned a new lead: {lead.name}",
            "assignment",
            lead.id,
            "Lead"
        )

        if schedule_followup:
            try:
                await self.scheduler.schedule(lead.id, assignee.id, followup_type, followup_interval)
            except PartialFailureError:
                raise
            except CRMError as e:
                raise PartialFailureError(
                    f"Lead created but first follow-up could not be scheduled: {e}",
                    step="schedule", entity=lead, cause=e
                )

        return Lead(**await self._load(lead.id))

    # ════════════════════════════════════════════════════════════════════
    # WHATSAPP INBOUND
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("lead.ingest_whatsapp")
    async def ingest_whatsapp(
        self,
        sender: str,
        body: str,
        profile_name: Optional[str] = None,
        message_sid: Optional[str] = None,
        deadline: Optional[datetime] = None
    ) -> Tuple[Optional[Lead], bool]:
        """
        Traite un message WhatsApp entrant.

        Returns: (lead, is_new). (None, False) pour un message vide.
        Un message_sid déjà traité est ignoré (webhook rejoué).
        """
        if not body or not body.strip():
            logger.info(f"[WHATSAPP] Message vide ignoré de {sender}")
            return None, False

        valid, phone = normalize_phone(sender)
        if not valid:
            raise InvalidArgumentError(f"Expéditeur invalide: {phone}")

        if message_sid:
            seen = await self.db.leads.find_one({"message_sid": message_sid}, {"_id": 0})
            if seen:
                logger.info(f"[WHATSAPP] {message_sid} déjà traité (lead={seen['id']})")
                return Lead(**seen), False

        existing = await self.db.leads.find_one({"phone": phone}, {"_id": 0})
        if existing:
            check_deadline(deadline, "ingest_whatsapp")
            guard = {"id": existing["id"]}
            if message_sid:
                guard["message_sid"] = {"$ne": message_sid}
            previous = existing.get("message") or ""
            updated = strip_id(await self.db.leads.find_one_and_update(
                guard,
                {"$set": {
                    "message": f"{previous}\n\n{body}" if previous else body,
                    "message_sid": message_sid,
                    "updated_at": now_iso(),
                }},
                return_document=ReturnDocument.AFTER,
            ))
            if not updated:
                # rejoué en concurrence
                return Lead(**await self._load(existing["id"])), False

            logger.info(f"[WHATSAPP] Message ajouté au lead {updated['id']}")
            if updated.get("assigned_to"):
                # message_sid déjà enregistré: un rejeu serait ignoré, l'échec
                # est remonté comme partiel
                try:
                    await self.activities.record(
                        updated["id"], updated["assigned_to"], "whatsapp", "completed",
                        f"Inbound WhatsApp message: {body}"
                    )
                except StorageError as e:
                    raise PartialFailureError(
                        "Message appended but activity log failed",
                        step="activity", entity=Lead(**updated), cause=e
                    )
            return Lead(**updated), False

        data = LeadCreate(
            name=extract_name(body, profile_name),
            phone=phone,
            message=body,
            source=LeadSource.WHATSAPP,
        )
        lead = await self.create_lead(
            data, caller=None, followup_type="whatsapp",
            message_sid=message_sid, deadline=deadline
        )
        return lead, True

    # ════════════════════════════════════════════════════════════════════
    # STATUS / ASSIGNMENT
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("lead.change_status")
    async def change_status(
        self,
        lead_id: str,
        new_status: str,
        caller: Optional[User] = None,
        reason: str = "",
        deadline: Optional[datetime] = None
    ) -> Lead:
        """
        Change le statut d'un lead (écriture conditionnelle sur l'ancien statut).

        Non terminal + relances auto -> nouveau followup.
        Terminal (won / lost) -> followups pending annulés.
        """
        target = normalize_lead_status(new_status)
        if not target:
            raise InvalidArgumentError(f"statut de lead invalide: {new_status}")

        lead = await self._load(lead_id)
        self._authorize(caller, lead, "update")

        raw = lead.get("status") or LeadStatus.NEW.value
        current = normalize_lead_status(raw) or raw
        if target in (raw, current):
            return Lead(**lead)

        check_deadline(deadline, "change_status")

        updated = strip_id(await self.db.leads.find_one_and_update(
            {"id": lead_id, "status": raw},
            {"$set": {"status": target, "updated_at": now_iso()}},
            return_document=ReturnDocument.AFTER,
        ))
        if not updated:
            raise ConflictError(f"Lead {lead_id}: statut modifié en concurrence")
        result = Lead(**updated)

        logger.info(f"[LEAD] {lead_id} {current} -> {target}")

        actor = caller.id if caller and caller.id != "system" else (result.assigned_to or "system")
        try:
            await self.activities.record_status_change(lead_id, actor, current, target, reason)
        except StorageError as e:
            raise PartialFailureError("Lead status changed but activity log failed",
                                      step="activity", entity=result, cause=e)

        if target in TERMINAL_LEAD_STATUSES:
            await self._cancel_pending(lead_id, caller)
            return result

        settings = await get_company_settings(self.db)
        if settings.auto_followup_enabled and result.assigned_to:
            try:
                await self.scheduler.schedule(lead_id, result.assigned_to, "call")
            except PartialFailureError:
                raise
            except CRMError as e:
                raise PartialFailureError(
                    f"Lead status changed but follow-up could not be scheduled: {e}",
                    step="schedule", entity=result, cause=e
                )

        return Lead(**await self._load(lead_id))

    async def _cancel_pending(self, lead_id: str, caller: Optional[User]):
        pending = await self.db.followups.find(
            {"lead_id": lead_id, "status": {"$in": ["pending", "in-progress", "missed", "on-hold"]}},
            {"_id": 0, "id": 1}
        ).to_list(100)
        for f in pending:
            try:
                await self.scheduler.transition(f["id"], "cancelled", notes="Lead closed", caller=None)
            except CRMError as e:
                raise PartialFailureError(
                    f"Lead closed but follow-up {f['id']} could not be cancelled: {e}",
                    step="cancel_followups", entity=lead_id, cause=e
                )

    @storage_errors("lead.reassign")
    async def reassign(self, lead_id: str, user_id: str, caller: User,
                       deadline: Optional[datetime] = None) -> Lead:
        """Réattribution manuelle (admin). Les followups ouverts suivent le lead."""
        if caller is None or not caller.is_admin:
            raise UnauthorizedError("Seul un admin peut réattribuer un lead")

        lead = await self._load(lead_id)
        target = await self.db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if not target:
            raise NotFoundError(f"User not found with id of {user_id}")
        if target.get("is_active") is False:
            raise InvalidArgumentError(f"User {user_id} est désactivé")

        previous = lead.get("assigned_to")
        if previous == user_id:
            return Lead(**lead)

        check_deadline(deadline, "reassign")

        updated = strip_id(await self.db.leads.find_one_and_update(
            {"id": lead_id},
            {"$set": {"assigned_to": user_id, "updated_at": now_iso()}},
            return_document=ReturnDocument.AFTER,
        ))
        await self.db.followups.update_many(
            {"lead_id": lead_id, "status": {"$nin": ["completed", "cancelled"]}},
            {"$set": {"assigned_to": user_id, "updated_at": now_iso()}, "$inc": {"version": 1}}
        )
        result = Lead(**updated)

        logger.info(f"[LEAD] {lead_id} réattribué {previous} -> {user_id}")

        try:
            await self.activities.record(
                lead_id, caller.id, "note", "completed",
                f"Lead reassigned from {previous} to {user_id}"
            )
        except StorageError as e:
            raise PartialFailureError("Lead reassigned but activity log failed",
                                      step="activity", entity=result, cause=e)

        await self.notifier.notify(
            user_id,
            "New Lead Assigned",
            f"You have been assigned a new lead: {result.name}",
            "assignment",
            lead_id,
            "Lead"
        )
        return result

    # ════════════════════════════════════════════════════════════════════
    # CONTACT / READ / DELETE
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("lead.record_contact")
    async def record_contact(self, lead_id: str, method: str, channel_identifier: Optional[str]) -> Lead:
        now = now_iso()
        updated = strip_id(await self.db.leads.find_one_and_update(
            {"id": lead_id},
            {"$set": {
                "last_contacted": now,
                "last_contact_method": method,
                "contacted_with": channel_identifier,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        ))
        if not updated:
            raise NotFoundError(f"Lead not found with id of {lead_id}")
        return Lead(**updated)

    @storage_errors("lead.get")
    async def get_lead(self, lead_id: str, caller: Optional[User] = None) -> Lead:
        lead = await self._load(lead_id)
        self._authorize(caller, lead, "view")
        return Lead(**lead)

    @storage_errors("lead.list")
    async def list_leads(self, caller: Optional[User] = None, status: Optional[str] = None,
                         limit: int = 100, skip: int = 0) -> List[Lead]:
        query = {}
        if caller is not None and not caller.is_admin:
            query["assigned_to"] = caller.id
        if status:
            canonical = normalize_lead_status(status)
            if not canonical:
                raise InvalidArgumentError(f"statut de lead invalide: {status}")
            query["status"] = canonical

        docs = await self.db.leads.find(query, {"_id": 0}) \
            .sort("created_at", -1) \
            .skip(skip) \
            .limit(limit) \
            .to_list(limit)
        return [Lead(**d) for d in docs]

    @storage_errors("lead.delete")
    async def delete_lead(self, lead_id: str, caller: Optional[User] = None,
                          deadline: Optional[datetime] = None) -> Dict[str, int]:
        """Suppression en cascade: followups, activities, puis le lead"""
        lead = await self._load(lead_id)
        self._authorize(caller, lead, "delete")
        check_deadline(deadline, "delete_lead")

        followups = await self.db.followups.delete_many({"lead_id": lead_id})
        activities = await self.db.activities.delete_many({"lead_id": lead_id})
        await self.db.leads.delete_one({"id": lead_id})

        logger.info(
            f"[LEAD] {lead_id} supprimé "
            f"({followups.deleted_count} followups, {activities.deleted_count} activities)"
        )
        return {
            "leads": 1,
            "followups": followups.deleted_count,
            "activities": activities.deleted_count,
        }
