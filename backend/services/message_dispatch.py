"""
Sales CRM - Envoi de messages / appels (MessageDispatcher)

[template] -> reserve_channel -> sender.send -> Activity -> last_contacted

Un envoi échoué libère la réservation: seul un envoi réussi consomme
du quota journalier.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any

from models import User
from services.activity_logger import ActivityRecorder
from services.channel_rotator import ChannelRotator
from services.errors import (
    NotFoundError,
    UnauthorizedError,
    InvalidArgumentError,
    StorageError,
    PartialFailureError,
    check_deadline,
)
from services.lead_service import LeadService
from services.templates import TemplateLibrary, render_template

logger = logging.getLogger("message_dispatch")

VALID_CHANNEL_TYPES = ["whatsapp", "call"]


class ChannelSender(ABC):
    """Transport opaque (WhatsApp, téléphonie) fourni par l'appelant"""

    @abstractmethod
    async def send(self, from_identifier: str, to_identifier: str, content: str) -> Dict[str, Any]:
        """Returns {"provider_message_id": ...}"""


class MessageDispatcher:

    def __init__(self, db, channels: ChannelRotator, leads: LeadService,
                 activities: Optional[ActivityRecorder] = None,
                 templates: Optional[TemplateLibrary] = None):
        self.db = db
        self.channels = channels
        self.leads = leads
        self.activities = activities or leads.activities
        self.templates = templates or TemplateLibrary(db)

    async def send(
        self,
        lead_id: str,
        caller: User,
        content: Optional[str],
        sender: ChannelSender,
        channel_type: str = "whatsapp",
        template_id: Optional[str] = None,
        deadline: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Envoie un message (ou passe un appel) au lead via le prochain numéro.

        Avec `template_id`: le contenu vient du modèle, placeholders remplis
        depuis le lead et l'appelant; le nom du modèle est journalisé.
        """
        if channel_type not in VALID_CHANNEL_TYPES:
            raise InvalidArgumentError(f"canal invalide: {channel_type}")

        lead = await self.db.leads.find_one({"id": lead_id}, {"_id": 0})
        if not lead:
            raise NotFoundError(f"Lead not found with id of {lead_id}")
        if not caller.is_admin and lead.get("assigned_to") != caller.id:
            raise UnauthorizedError(f"User {caller.id} is not authorized to contact this lead")

        template = None
        if template_id:
            template = await self.templates.resolve(template_id)
            content = render_template(template.content, lead, caller)
        if channel_type == "whatsapp" and not (content or "").strip():
            raise InvalidArgumentError("message vide")

        check_deadline(deadline, "send")

        channel = await self.channels.reserve_channel(deadline)
        sent = False
        try:
            result = await sender.send(channel.identifier, lead["phone"], content)
            sent = True
        finally:
            if not sent:
                # échec ou annulation: le quota réservé est rendu
                logger.error(f"[DISPATCH] Échec {channel_type} via {channel.identifier} -> {lead['phone']}")
                await self.channels.release_channel(channel.id)

        provider_id = (result or {}).get("provider_message_id")
        logger.info(f"[DISPATCH] {channel_type} lead={lead_id} via {channel.identifier} ({provider_id})")

        outcome = {"channel": channel, "provider_message_id": provider_id, "content": content}
        try:
            if template:
                await self.templates.mark_used(template.id)
            outcome["activity"] = await self.activities.record(
                lead_id,
                caller.id,
                channel_type,
                "completed" if channel_type == "whatsapp" else "attempted",
                content or "",
                template_used=template.name if template else None,
            )
            outcome["lead"] = await self.leads.record_contact(lead_id, channel_type, channel.identifier)
        except StorageError as e:
            raise PartialFailureError("Message sent but contact log failed",
                                      step="activity", entity=outcome, cause=e)
        return outcome
