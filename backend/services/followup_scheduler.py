"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - FollowUp Scheduler (state machine)                              ║
║                                                                              ║
║  SEUL CE MODULE change le statut d'un followup                               ║
║  SEUL CE MODULE dérive le statut du lead à partir d'un followup              ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - au plus UN followup "pending" par lead (supersede-then-create)            ║
║  - completed / cancelled sont terminaux                                      ║
║  - tout changement de statut du lead ajoute une Activity                     ║
║  - toute écriture sur un followup est conditionnée par `version`             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Callable, Dict, Any, Union

from pymongo import ReturnDocument

from config import new_id, to_iso, utcnow, day_bounds, strip_id
from models import (
    FollowUp,
    FollowUpStatus,
    VALID_FOLLOWUP_TYPES,
    VALID_FOLLOWUP_STATUSES,
    TERMINAL_LEAD_STATUSES,
    DEFAULT_FOLLOWUP_INTERVAL_DAYS,
    Lead,
    LeadStatus,
    User,
    normalize_lead_status,
)
from services.activity_logger import ActivityRecorder
from services.errors import (
    CRMError,
    NotFoundError,
    UnauthorizedError,
    InvalidArgumentError,
    ConfigurationError,
    ConflictError,
    StorageError,
    PartialFailureError,
    check_deadline,
    storage_errors,
)
from services.notifications import NotificationSink, NullNotificationSink
from services.settings import get_company_settings, resolve_followup_interval

logger = logging.getLogger("followup_scheduler")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

VALID_FOLLOWUP_TRANSITIONS = {
    "pending": ["completed", "rescheduled", "missed", "cancelled", "in-progress", "on-hold"],
    "rescheduled": ["pending", "cancelled"],  # reactivated by reschedule / snooze
    "in-progress": ["pending", "completed", "missed", "cancelled", "on-hold"],
    "missed": ["completed", "cancelled"],
    "on-hold": ["completed", "cancelled"],
    "completed": [],  # TERMINAL
    "cancelled": [],  # TERMINAL
}

# Statuts depuis lesquels reschedule / snooze peuvent reactiver
REACTIVATABLE_STATUSES = ["pending", "rescheduled", "in-progress"]

# Hors des vues: terminaux + remplacés (un followup "rescheduled" ne reste
# jamais actif, reschedule / snooze le remettent "pending")
RETIRED_STATUSES = ["completed", "cancelled", "rescheduled"]

# Outcome de completion -> statut du lead
OUTCOME_TO_LEAD_STATUS = {
    "contacted": "contacted",
    "qualified": "qualified",
    "negotiating": "negotiating",
    "proposal-sent": "proposal-sent",
    "won": "won",
    "lost": "lost",
    "on-hold": "on-hold",
}

FOLLOWUP_TO_ACTIVITY_TYPE = {
    "call": "call",
    "whatsapp": "whatsapp",
    "email": "email",
    "meeting": "meeting",
    "other": "note",
}

MAX_CAS_ATTEMPTS = 5
LIST_LIMIT = 1000


# ════════════════════════════════════════════════════════════════════════════
# PURE RULES
# ════════════════════════════════════════════════════════════════════════════

def validate_followup_transition(followup_id: str, from_status: str, to_status: str) -> bool:
    """
    Valide qu'une transition de statut followup est autorisée.
    """
    valid_next = VALID_FOLLOWUP_TRANSITIONS.get(from_status, [])

    if to_status not in valid_next:
        raise InvalidArgumentError(
            f"INVALID TRANSITION: followup {followup_id} cannot go from '{from_status}' to '{to_status}'. "
            f"Valid transitions from '{from_status}': {valid_next}"
        )

    return True


def lead_status_after_completion(current: str, outcome: Optional[str]) -> str:
    """
    Mapping fixe outcome -> statut du lead.
    Sans outcome reconnu: un lead "new" passe "contacted", sinon inchangé.
    """
    mapped = OUTCOME_TO_LEAD_STATUS.get(normalize_lead_status(outcome) or "")
    if mapped:
        return mapped
    if current == LeadStatus.NEW.value:
        return LeadStatus.CONTACTED.value
    return current


def lead_status_after_transition(current: str, to_status: str, outcome: Optional[str]) -> str:
    if to_status == FollowUpStatus.IN_PROGRESS.value and current == LeadStatus.NEW.value:
        return LeadStatus.CONTACTED.value
    if to_status == FollowUpStatus.ON_HOLD.value:
        return LeadStatus.ON_HOLD.value
    if to_status == FollowUpStatus.CANCELLED.value and normalize_lead_status(outcome) == "on-hold":
        return LeadStatus.ON_HOLD.value
    # missed: pas de changement
    return current


def _history(from_status: str, to_status: str, at: str, by: Optional[str], scheduled: Optional[str] = None) -> dict:
    return {"from_status": from_status, "to_status": to_status, "at": at, "by": by, "scheduled": scheduled}


def _ensure_aware(value: datetime, name: str) -> datetime:
    if not isinstance(value, datetime):
        raise InvalidArgumentError(f"{name} doit être une date")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ════════════════════════════════════════════════════════════════════════════
# SCHEDULER
# ════════════════════════════════════════════════════════════════════════════

class FollowUpScheduler:

    def __init__(
        self,
        db,
        activities: Optional[ActivityRecorder] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.activities = activities or ActivityRecorder(db)
        self.notifier = notifier or NullNotificationSink()
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    # ---- loading / authorization ----

    async def _load_followup(self, followup_id: str) -> dict:
        doc = await self.db.followups.find_one({"id": followup_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Follow-up not found with id of {followup_id}")
        return doc

    async def _load_lead(self, lead_id: str) -> dict:
        doc = await self.db.leads.find_one({"id": lead_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Lead not found with id of {lead_id}")
        return doc

    @staticmethod
    def _authorize(caller: Optional[User], followup: dict, action: str):
        # caller None = timer / webhook
        if caller is None or caller.is_admin:
            return
        if followup.get("assigned_to") != caller.id:
            raise UnauthorizedError(f"User {caller.id} is not authorized to {action} this follow-up")

    @staticmethod
    def _actor(caller: Optional[User], followup: dict) -> str:
        if caller is not None and caller.id != "system":
            return caller.id
        return followup.get("assigned_to")

    # ---- optimistic writes ----

    async def _cas(self, doc: dict, set_fields: Dict[str, Any], history: List[dict]) -> Optional[dict]:
        update = {
            "$set": {**set_fields, "updated_at": self._now()},
            "$inc": {"version": 1},
        }
        if history:
            update["$push"] = {"history": {"$each": history}}

        return strip_id(await self.db.followups.find_one_and_update(
            {"id": doc["id"], "version": doc.get("version", 0)},
            update,
            return_document=ReturnDocument.AFTER,
        ))

    async def _mutate(self, followup_id: str, caller: Optional[User], action: str, build) -> tuple:
        """
        Boucle compare-and-set: relit, revalide (`build` peut lever), écrit.
        Retourne (doc_avant, doc_après).
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            before = await self._load_followup(followup_id)
            self._authorize(caller, before, action)
            set_fields, history = await build(before)
            after = await self._cas(before, set_fields, history)
            if after:
                return before, after
            logger.debug(f"[FOLLOWUP] CAS perdu sur {followup_id} ({action}), relecture")
        raise ConflictError(f"{action}: follow-up {followup_id} modifié en concurrence")

    # ---- single-active invariant ----

    async def _claim_seq(self, lead_id: str) -> int:
        lead = strip_id(await self.db.leads.find_one_and_update(
            {"id": lead_id},
            {"$inc": {"followup_seq": 1}},
            return_document=ReturnDocument.AFTER,
        ))
        if not lead:
            raise NotFoundError(f"Lead not found with id of {lead_id}")
        return lead["followup_seq"]

    async def _supersede_older(self, lead_id: str, active_id: str, seq: int, by: Optional[str]) -> int:
        now = self._now()
        result = await self.db.followups.update_many(
            {
                "lead_id": lead_id,
                "status": FollowUpStatus.PENDING.value,
                "id": {"$ne": active_id},
                "$or": [{"seq": {"$lt": seq}}, {"seq": {"$exists": False}}],
            },
            {
                "$set": {"status": FollowUpStatus.RESCHEDULED.value, "superseded_by": active_id, "updated_at": now},
                "$inc": {"version": 1},
                "$push": {"history": _history("pending", "rescheduled", now, by)},
            }
        )
        if result.modified_count:
            logger.info(f"[FOLLOWUP] {result.modified_count} followup(s) remplacé(s) par {active_id} (lead={lead_id})")
        return result.modified_count

    async def _yield_if_newer(self, lead_id: str, followup_id: str, seq: int, by: Optional[str]) -> dict:
        """
        Vérification finale: si une activation plus récente existe pour ce
        lead, ce followup se retire lui-même (pending -> rescheduled).
        """
        lead = await self.db.leads.find_one({"id": lead_id}, {"_id": 0, "followup_seq": 1})
        current_seq = (lead or {}).get("followup_seq", seq)
        if current_seq > seq:
            now = self._now()
            newer = await self.db.followups.find_one(
                {"lead_id": lead_id, "seq": current_seq}, {"_id": 0, "id": 1}
            )
            await self.db.followups.update_one(
                {"id": followup_id, "status": FollowUpStatus.PENDING.value, "seq": seq},
                {
                    "$set": {
                        "status": FollowUpStatus.RESCHEDULED.value,
                        "superseded_by": (newer or {}).get("id"),
                        "updated_at": now,
                    },
                    "$inc": {"version": 1},
                    "$push": {"history": _history("pending", "rescheduled", now, by)},
                }
            )
            logger.info(f"[FOLLOWUP] {followup_id} remplacé par une activation concurrente (seq {seq} < {current_seq})")
        return await self._load_followup(followup_id)

    # ---- lead side effects ----

    async def _apply_lead_status(self, lead: dict, derive: Callable[[str], str], user_id: str,
                                 reason: str, entity: Any) -> Optional[str]:
        """
        Change le statut du lead (CAS sur l'ancien statut) puis journalise.
        Retourne le nouveau statut, ou None si inchangé.

        L'échec de l'Activity après l'écriture du lead -> PartialFailureError:
        le changement de statut reste acquis.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = lead.get("status") or LeadStatus.NEW.value
            current = normalize_lead_status(raw) or raw
            target = derive(current)
            if target in (raw, current):
                return None

            result = await self.db.leads.update_one(
                {"id": lead["id"], "status": raw},
                {"$set": {"status": target, "updated_at": self._now()}}
            )
            if result.modified_count:
                logger.info(f"[FOLLOWUP] Lead {lead['id']} {current} -> {target} {reason}")
                try:
                    await self.activities.record_status_change(lead["id"], user_id, current, target, reason)
                except StorageError as e:
                    raise PartialFailureError(
                        f"Lead status changed to {target} but activity log failed",
                        step="activity", entity=entity, cause=e
                    )
                return target

            lead = await self._load_lead(lead["id"])
        raise ConflictError(f"lead {lead['id']}: statut modifié en concurrence")

    async def _log(self, lead_id: str, user_id: str, followup_type: str, notes: str, entity: Any):
        try:
            await self.activities.record(
                lead_id, user_id, FOLLOWUP_TO_ACTIVITY_TYPE.get(followup_type, "note"), "completed", notes
            )
        except StorageError as e:
            raise PartialFailureError(f"activity log failed: {notes}", step="activity", entity=entity, cause=e)

    # ════════════════════════════════════════════════════════════════════
    # SCHEDULE
    # ════════════════════════════════════════════════════════════════════

    async def _interval_for(self, lead_status: str) -> int:
        settings = await get_company_settings(self.db)
        try:
            return resolve_followup_interval(settings, lead_status)
        except ConfigurationError as e:
            logger.warning(f"[FOLLOWUP] {e}; intervalle par défaut {DEFAULT_FOLLOWUP_INTERVAL_DAYS}j")
            return DEFAULT_FOLLOWUP_INTERVAL_DAYS

    @storage_errors("followup.schedule")
    async def schedule(
        self,
        lead: Union[str, Lead],
        assignee: Union[str, User],
        followup_type: str = "call",
        interval_days: Optional[int] = None,
        caller: Optional[User] = None,
        notes: str = "",
        deadline: Optional[datetime] = None
    ) -> FollowUp:
        """
        Crée le followup actif d'un lead: scheduled = now + interval.

        Supersede-then-create: tout autre followup pending du lead passe
        "rescheduled". L'intervalle par défaut vient du tableau société pour
        le statut courant du lead (fallback 2 jours).
        """
        lead_id = lead.id if isinstance(lead, Lead) else lead
        assignee_id = assignee.id if isinstance(assignee, User) else assignee

        if followup_type not in VALID_FOLLOWUP_TYPES:
            raise InvalidArgumentError(f"type de followup invalide: {followup_type}")
        if interval_days is not None and (not isinstance(interval_days, int) or interval_days <= 0):
            raise InvalidArgumentError(f"interval_days doit être un entier positif: {interval_days}")

        lead_doc = await self._load_lead(lead_id)
        if caller is not None and not caller.is_admin and lead_doc.get("assigned_to") != caller.id:
            raise UnauthorizedError(
                f"User {caller.id} is not authorized to create a follow-up for this lead"
            )
        if caller is not None and not caller.is_admin and caller.id != "system" and assignee_id != caller.id:
            raise UnauthorizedError(
                f"User {caller.id} is not authorized to assign a follow-up to {assignee_id}"
            )

        lead_status = normalize_lead_status(lead_doc.get("status")) or LeadStatus.NEW.value
        if lead_status in TERMINAL_LEAD_STATUSES:
            raise InvalidArgumentError(f"Lead {lead_id} is closed ({lead_status}), no follow-up allowed")

        assignee_doc = await self.db.users.find_one({"id": assignee_id}, {"_id": 0, "id": 1, "name": 1})
        if not assignee_doc:
            raise NotFoundError(f"User not found with id of {assignee_id}")

        if interval_days is None:
            interval_days = await self._interval_for(lead_status)

        check_deadline(deadline, "schedule")

        # 1. Activation (séquence atomique sur le lead)
        seq = await self._claim_seq(lead_id)
        followup_id = new_id()
        by = caller.id if caller else None

        # 2. Supersede
        await self._supersede_older(lead_id, followup_id, seq, by)

        # 3. Create
        now = self.clock()
        doc = {
            "id": followup_id,
            "lead_id": lead_id,
            "assigned_to": assignee_id,
            "scheduled": to_iso(now + timedelta(days=interval_days)),
            "followup_type": followup_type,
            "status": FollowUpStatus.PENDING.value,
            "outcome": None,
            "interval": interval_days,
            "notes": notes or "",
            "snoozed": False,
            "seq": seq,
            "superseded_by": None,
            "reminded_at": None,
            "history": [],
            "version": 0,
            "created_at": to_iso(now),
            "updated_at": to_iso(now),
        }
        await self.db.followups.insert_one(dict(doc))

        # 4. Vérification concurrente
        created = await self._yield_if_newer(lead_id, followup_id, seq, by)
        followup = FollowUp(**created)

        logger.info(
            f"[FOLLOWUP] {followup_id} scheduled lead={lead_id} assignee={assignee_id} "
            f"type={followup_type} in {interval_days}d"
        )

        await self.notifier.notify(
            assignee_id,
            "Follow-Up Reminder",
            f"Reminder to follow up with {lead_doc.get('name', '')} via {followup_type}.",
            "followup",
            followup_id,
            "FollowUp"
        )

        await self._log(
            lead_id, by if by and by != "system" else assignee_id, "other",
            f"Follow-up ({followup_type}) scheduled for {followup.scheduled}",
            followup
        )
        return followup

    # ════════════════════════════════════════════════════════════════════
    # COMPLETE
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("followup.complete")
    async def complete(
        self,
        followup_id: str,
        outcome: Optional[str] = None,
        notes: Optional[str] = None,
        caller: Optional[User] = None,
        deadline: Optional[datetime] = None
    ) -> FollowUp:
        """
        Termine un followup et dérive le statut du lead de l'outcome.

        Raises:
            InvalidArgumentError si le followup est terminal ou si le lead est
            déjà won / lost
            PartialFailureError si une étape dépendante échoue après l'écriture
        """
        lead_holder = {}

        async def build(before):
            validate_followup_transition(followup_id, before.get("status"), "completed")
            lead_doc = await self._load_lead(before["lead_id"])
            lead_status = normalize_lead_status(lead_doc.get("status")) or lead_doc.get("status")
            if lead_status in TERMINAL_LEAD_STATUSES:
                raise InvalidArgumentError(
                    f"Lead {lead_doc['id']} is already {lead_status}, cannot complete its follow-up"
                )
            check_deadline(deadline, "complete")
            lead_holder["lead"] = lead_doc
            now = self._now()
            fields = {
                "status": FollowUpStatus.COMPLETED.value,
                "completed_at": now,
                "outcome": outcome,
                "notes": notes if notes else before.get("notes", ""),
            }
            return fields, [_history(before.get("status"), "completed", now, caller.id if caller else None)]

        before, after = await self._mutate(followup_id, caller, "complete", build)
        completed = FollowUp(**after)
        lead_doc = lead_holder["lead"]
        actor = self._actor(caller, before)

        logger.info(f"[FOLLOWUP] {followup_id} -> completed | outcome={outcome}")

        # Journal en échec: statut du lead et followup suivant passent quand même,
        # l'échec est remonté à la fin
        failed_log = None
        try:
            await self._log(
                completed.lead_id, actor, completed.followup_type,
                f"Completed follow-up ({completed.followup_type})" + (f" with outcome {outcome}" if outcome else ""),
                completed
            )
        except PartialFailureError as e:
            failed_log = e

        try:
            new_status = await self._apply_lead_status(
                lead_doc,
                lambda current: lead_status_after_completion(current, outcome),
                actor,
                "due to follow-up completion",
                completed
            )
        except PartialFailureError as e:
            failed_log = failed_log or e
            lead_doc = await self._load_lead(completed.lead_id)
            new_status = None
        final_status = new_status or (normalize_lead_status(lead_doc.get("status")) or lead_doc.get("status"))

        result = completed
        settings = await get_company_settings(self.db)
        if final_status not in TERMINAL_LEAD_STATUSES and settings.auto_followup_enabled:
            try:
                interval = await self._interval_for(final_status)
                nxt = await self.schedule(completed.lead_id, completed.assigned_to, completed.followup_type, interval)
            except PartialFailureError as e:
                if e.step != "activity":
                    raise
                # followup suivant inséré, seul son journal manque
                failed_log = failed_log or e
                nxt = e.entity
            except CRMError as e:
                raise PartialFailureError(
                    f"Follow-up completed but next follow-up could not be scheduled: {e}",
                    step="schedule", entity=completed, cause=e
                )

            linked = strip_id(await self.db.followups.find_one_and_update(
                {"id": followup_id},
                {"$set": {"next_followup_id": nxt.id}},
                return_document=ReturnDocument.AFTER,
            ))
            if linked:
                result = FollowUp(**linked)

        if failed_log:
            raise PartialFailureError(
                f"Follow-up completed but activity log failed: {failed_log.message}",
                step="activity", entity=result, cause=failed_log.cause
            )
        return result

    # ════════════════════════════════════════════════════════════════════
    # RESCHEDULE / SNOOZE (réactivation)
    # ════════════════════════════════════════════════════════════════════

    async def _reactivate(self, followup_id: str, caller: Optional[User], action: str,
                          deadline: Optional[datetime], extra_fields) -> tuple:
        """
        Ré-active un followup comme SEUL pending du lead: nouvelle séquence,
        écriture CAS, supersede des autres, vérification finale.
        """
        by = caller.id if caller else None
        seq_holder = {}

        async def build(before):
            status = before.get("status")
            if status not in REACTIVATABLE_STATUSES:
                raise InvalidArgumentError(
                    f"Cannot {action} follow-up {followup_id} from status '{status}'"
                )
            check_deadline(deadline, action)
            seq = await self._claim_seq(before["lead_id"])
            seq_holder["seq"] = seq
            fields, history = extra_fields(before, self._now())
            fields.update({
                "status": FollowUpStatus.PENDING.value,
                "seq": seq,
                "superseded_by": None,
                "reminded_at": None,
            })
            return fields, history

        before, after = await self._mutate(followup_id, caller, action, build)
        seq = seq_holder["seq"]
        await self._supersede_older(after["lead_id"], followup_id, seq, by)
        final = await self._yield_if_newer(after["lead_id"], followup_id, seq, by)
        return before, final

    @storage_errors("followup.reschedule")
    async def reschedule(
        self,
        followup_id: str,
        new_date: datetime,
        caller: Optional[User] = None,
        deadline: Optional[datetime] = None
    ) -> FollowUp:
        """Déplace `scheduled`; l'historique garde la trace pending -> rescheduled -> pending"""
        new_date = _ensure_aware(new_date, "new_date")
        by = caller.id if caller else None

        def fields(before, now):
            status = before.get("status")
            history = []
            if status != FollowUpStatus.RESCHEDULED.value:
                history.append(_history(status, "rescheduled", now, by, before.get("scheduled")))
            history.append(_history("rescheduled", "pending", now, by, to_iso(new_date)))
            return {"scheduled": to_iso(new_date), "snoozed": False}, history

        before, final = await self._reactivate(followup_id, caller, "reschedule", deadline, fields)
        followup = FollowUp(**final)
        actor = self._actor(caller, before)

        logger.info(f"[FOLLOWUP] {followup_id} rescheduled {before.get('scheduled')} -> {followup.scheduled}")

        await self._log(
            followup.lead_id, actor, "other",
            f"Follow-up rescheduled from {before.get('scheduled')} to {followup.scheduled}",
            followup
        )

        lead_doc = await self._load_lead(followup.lead_id)
        await self._apply_lead_status(
            lead_doc,
            lambda current: LeadStatus.CONTACTED.value if current == LeadStatus.NEW.value else current,
            actor,
            "due to follow-up reschedule",
            followup
        )
        return followup

    @storage_errors("followup.snooze")
    async def snooze(
        self,
        followup_id: str,
        snooze_until: datetime,
        caller: Optional[User] = None,
        deadline: Optional[datetime] = None
    ) -> FollowUp:
        """Repousse le followup; il reste (ou redevient) pending avec snoozed=True"""
        snooze_until = _ensure_aware(snooze_until, "snooze_until")
        if snooze_until <= self.clock():
            raise InvalidArgumentError("snooze_until must be in the future")
        by = caller.id if caller else None

        def fields(before, now):
            status = before.get("status")
            history = []
            if status != FollowUpStatus.PENDING.value:
                history.append(_history(status, "pending", now, by, to_iso(snooze_until)))
            return {
                "scheduled": to_iso(snooze_until),
                "snoozed": True,
                "snoozed_from": before.get("scheduled"),
            }, history

        before, final = await self._reactivate(followup_id, caller, "snooze", deadline, fields)
        followup = FollowUp(**final)

        logger.info(f"[FOLLOWUP] {followup_id} snoozed until {followup.scheduled}")

        await self._log(
            followup.lead_id, self._actor(caller, before), "other",
            f"Snoozed follow-up until {followup.scheduled}",
            followup
        )
        return followup

    # ════════════════════════════════════════════════════════════════════
    # GENERIC TRANSITION (missed / cancelled / in-progress / on-hold)
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("followup.transition")
    async def transition(
        self,
        followup_id: str,
        to_status: str,
        outcome: Optional[str] = None,
        notes: Optional[str] = None,
        caller: Optional[User] = None,
        deadline: Optional[datetime] = None
    ) -> FollowUp:
        if to_status == FollowUpStatus.COMPLETED.value:
            return await self.complete(followup_id, outcome, notes, caller, deadline)
        if to_status in (FollowUpStatus.PENDING.value, FollowUpStatus.RESCHEDULED.value):
            raise InvalidArgumentError(f"Use reschedule() or snooze() to move a follow-up to '{to_status}'")
        if to_status not in VALID_FOLLOWUP_STATUSES:
            raise InvalidArgumentError(f"statut de followup invalide: {to_status}")

        async def build(before):
            validate_followup_transition(followup_id, before.get("status"), to_status)
            check_deadline(deadline, "transition")
            now = self._now()
            fields = {"status": to_status}
            if outcome is not None:
                fields["outcome"] = outcome
            if notes:
                fields["notes"] = notes
            return fields, [_history(before.get("status"), to_status, now, caller.id if caller else None)]

        before, after = await self._mutate(followup_id, caller, f"mark {to_status}", build)
        followup = FollowUp(**after)
        actor = self._actor(caller, before)

        logger.info(f"[FOLLOWUP] {followup_id} {before.get('status')} -> {to_status}")

        await self._log(
            followup.lead_id, actor, "other",
            f"Follow-up marked {to_status}" + (f" ({outcome})" if outcome else ""),
            followup
        )

        lead_doc = await self._load_lead(followup.lead_id)
        lead_status = normalize_lead_status(lead_doc.get("status")) or lead_doc.get("status")
        if lead_status not in TERMINAL_LEAD_STATUSES:
            await self._apply_lead_status(
                lead_doc,
                lambda current: lead_status_after_transition(current, to_status, outcome),
                actor,
                "due to follow-up status change",
                followup
            )
        return followup

    # ════════════════════════════════════════════════════════════════════
    # READS
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("followup.get")
    async def get(self, followup_id: str, caller: Optional[User] = None) -> FollowUp:
        doc = await self._load_followup(followup_id)
        self._authorize(caller, doc, "view")
        return FollowUp(**doc)

    @storage_errors("followup.list_for_lead")
    async def list_for_lead(self, lead_id: str, caller: Optional[User] = None) -> List[FollowUp]:
        """Tous les followups d'un lead, plus récents en premier"""
        await self._load_lead(lead_id)
        query = {"lead_id": lead_id}
        if caller is not None and not caller.is_admin:
            query["assigned_to"] = caller.id
        docs = await self.db.followups.find(query, {"_id": 0}).sort("scheduled", -1).to_list(LIST_LIMIT)
        return [FollowUp(**d) for d in docs]

    def _view_query(self, caller: Optional[User], user_id: Optional[str], window: Dict[str, str]) -> dict:
        query = {
            "status": {"$nin": RETIRED_STATUSES},
            "superseded_by": None,
            "scheduled": window,
        }
        if caller is not None and not caller.is_admin:
            if user_id and user_id != caller.id:
                raise UnauthorizedError(f"User {caller.id} is not authorized to view follow-ups of {user_id}")
            query["assigned_to"] = caller.id
        elif user_id:
            query["assigned_to"] = user_id
        return query

    async def _list_window(self, caller, user_id, window) -> List[FollowUp]:
        docs = await self.db.followups.find(
            self._view_query(caller, user_id, window),
            {"_id": 0}
        ).sort("scheduled", 1).to_list(LIST_LIMIT)
        return [FollowUp(**d) for d in docs]

    @storage_errors("followup.list_overdue")
    async def list_overdue(self, caller: Optional[User] = None, user_id: Optional[str] = None) -> List[FollowUp]:
        """Avant aujourd'hui 00:00 UTC"""
        start, _ = day_bounds(self.clock())
        return await self._list_window(caller, user_id, {"$lt": to_iso(start)})

    @storage_errors("followup.list_today")
    async def list_today(self, caller: Optional[User] = None, user_id: Optional[str] = None) -> List[FollowUp]:
        start, end = day_bounds(self.clock())
        return await self._list_window(caller, user_id, {"$gte": to_iso(start), "$lt": to_iso(end)})

    @storage_errors("followup.list_upcoming")
    async def list_upcoming(self, caller: Optional[User] = None, user_id: Optional[str] = None,
                            days: int = 7) -> List[FollowUp]:
        """De demain 00:00 à demain + days"""
        if days <= 0:
            raise InvalidArgumentError("days doit être positif")
        _, tomorrow = day_bounds(self.clock())
        return await self._list_window(
            caller, user_id, {"$gte": to_iso(tomorrow), "$lt": to_iso(tomorrow + timedelta(days=days))}
        )

    # ════════════════════════════════════════════════════════════════════
    # REMINDERS (appelé par le TaskScheduler)
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("followup.claim_reminders")
    async def claim_due_reminders(self, window: timedelta) -> List[FollowUp]:
        """
        Followups pending dus avant now + window et pas encore rappelés.
        Chaque rappel est réclamé par un set conditionnel de `reminded_at`:
        deux balayages concurrents ne notifient jamais deux fois.
        """
        now = self.clock()
        candidates = await self.db.followups.find(
            {
                "status": FollowUpStatus.PENDING.value,
                "reminded_at": None,
                "scheduled": {"$lt": to_iso(now + window)},
            },
            {"_id": 0}
        ).sort("scheduled", 1).to_list(LIST_LIMIT)

        claimed = []
        for doc in candidates:
            result = await self.db.followups.update_one(
                {"id": doc["id"], "reminded_at": None, "status": FollowUpStatus.PENDING.value},
                {"$set": {"reminded_at": to_iso(now)}}
            )
            if result.modified_count:
                claimed.append(FollowUp(**doc))
        return claimed

    @storage_errors("followup.digest")
    async def digest_counts(self) -> Dict[str, Dict[str, int]]:
        """{assignee_id: {"today": n, "overdue": m}}"""
        counts: Dict[str, Dict[str, int]] = {}
        for label, followups in (("today", await self.list_today()), ("overdue", await self.list_overdue())):
            for f in followups:
                entry = counts.setdefault(f.assigned_to, {"today": 0, "overdue": 0})
                entry[label] += 1
        return counts
