"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Rotation des numéros d'envoi (ChannelRotator)                   ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - daily_count <= daily_limit, toujours                                      ║
║  - daily_count remis à 0 UNE seule fois par jour (UTC)                       ║
║  - select_channel() ne consomme pas de quota                                 ║
║  - record_usage() est un incrément CONDITIONNEL (daily_count < daily_limit)  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import random
from datetime import datetime
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument

from config import now_iso, today_str, strip_id
from models import OutboundChannel, RotationStrategy, CompanySetting
from services.errors import (
    NotFoundError,
    NoChannelAvailableError,
    ChannelLimitReachedError,
    check_deadline,
    storage_errors,
)
from services.settings import get_company_settings

logger = logging.getLogger("channel_rotator")

MAX_RESERVE_ATTEMPTS = 5


def order_by_strategy(channels: List[OutboundChannel], strategy: str,
                      rng: Optional[random.Random] = None) -> List[OutboundChannel]:
    """Ordonne les canaux disponibles selon la strategie (le premier gagne)"""
    if strategy == RotationStrategy.LEAST_USED_TODAY.value:
        return sorted(channels, key=lambda c: (c.daily_count, c.identifier))

    if strategy == RotationStrategy.LEAST_USED_OVERALL.value:
        return sorted(channels, key=lambda c: (c.message_count, c.identifier))

    if strategy == RotationStrategy.RANDOM.value:
        shuffled = list(channels)
        (rng or random).shuffle(shuffled)
        return shuffled

    # round-robin: jamais utilise d'abord, puis last_used croissant
    return sorted(channels, key=lambda c: (c.last_used is not None, c.last_used or "", c.identifier))


class ChannelRotator:

    def __init__(self, db, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng

    # ════════════════════════════════════════════════════════════════════
    # DAILY RESET
    # ════════════════════════════════════════════════════════════════════

    async def _reset_if_needed(self, channel: dict, today: str) -> dict:
        """
        Remise a zero conditionnelle: la mise a jour ne s'applique que si
        la date observee est toujours en base. Deux appels concurrents ne
        peuvent donc pas remettre a zero deux fois le meme jour.
        """
        observed = channel.get("daily_count_reset_date")
        if observed == today:
            return channel

        # Canal jamais remis a zero: champ absent, null ou vide
        observed_filter = observed if observed else {"$in": [None, ""]}
        updated = strip_id(await self.db.outbound_channels.find_one_and_update(
            {"id": channel["id"], "daily_count_reset_date": observed_filter},
            {"$set": {"daily_count": 0, "daily_count_reset_date": today}},
            return_document=ReturnDocument.AFTER,
        ))
        if updated:
            logger.info(f"[CHANNEL] Reset journalier {channel.get('identifier')} ({observed} -> {today})")
            return updated

        # Deja remis a zero par un autre appel: relire
        fresh = await self.db.outbound_channels.find_one({"id": channel["id"]}, {"_id": 0})
        return fresh or channel

    @storage_errors("channel.reset_check")
    async def ensure_daily_reset(self, channel_id: str) -> OutboundChannel:
        doc = await self.db.outbound_channels.find_one({"id": channel_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Canal {channel_id} introuvable")
        return OutboundChannel(**await self._reset_if_needed(doc, today_str()))

    # ════════════════════════════════════════════════════════════════════
    # SELECTION
    # ════════════════════════════════════════════════════════════════════

    async def _available_channels(self, today: str) -> List[OutboundChannel]:
        docs = await self.db.outbound_channels.find(
            {"is_active": True},
            {"_id": 0}
        ).to_list(1000)

        channels = []
        for doc in docs:
            doc = await self._reset_if_needed(doc, today)
            channel = OutboundChannel(**doc)
            if channel.is_active and channel.has_quota:
                channels.append(channel)
        return channels

    def _pick(self, available: List[OutboundChannel], settings: CompanySetting) -> OutboundChannel:
        if not settings.number_rotation_enabled:
            defaults = [c for c in available if c.is_default]
            if defaults:
                return defaults[0]
            return sorted(available, key=lambda c: c.identifier)[0]

        selected = order_by_strategy(available, settings.rotation_strategy, self.rng)[0]

        if settings.prefer_default_number:
            default = next((c for c in available if c.is_default), None)
            if default:
                selected = default

        return selected

    @storage_errors("channel.select")
    async def select_channel(self, deadline: Optional[datetime] = None) -> OutboundChannel:
        """
        Choisit le prochain numero d'envoi SANS consommer de quota.

        Raises:
            NoChannelAvailableError si aucun numero actif sous sa limite
        """
        check_deadline(deadline, "select_channel")

        settings = await get_company_settings(self.db)
        available = await self._available_channels(today_str())

        if not available:
            logger.warning("[CHANNEL] Aucun numéro disponible (inactifs ou limite atteinte)")
            raise NoChannelAvailableError("Aucun numéro d'envoi disponible")

        selected = self._pick(available, settings)
        logger.debug(
            f"[CHANNEL] {selected.identifier} choisi "
            f"(strategy={settings.rotation_strategy}, candidats={len(available)})"
        )
        return selected

    # ════════════════════════════════════════════════════════════════════
    # ACCOUNTING
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("channel.record_usage")
    async def record_usage(self, channel_id: str, deadline: Optional[datetime] = None) -> OutboundChannel:
        """
        Comptabilise un envoi: increment CONDITIONNEL.

        Le filtre reprend le predicat de selection (actif, jour courant,
        daily_count < daily_limit): si un appel concurrent a consomme la
        derniere unite, rien n'est ecrit et ChannelLimitReachedError est
        levee; l'appelant retourne a select_channel().
        """
        check_deadline(deadline, "record_usage")

        today = today_str()
        doc = await self.db.outbound_channels.find_one({"id": channel_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Canal {channel_id} introuvable")
        doc = await self._reset_if_needed(doc, today)

        limit = doc.get("daily_limit", 0)
        updated = strip_id(await self.db.outbound_channels.find_one_and_update(
            {
                "id": channel_id,
                "is_active": True,
                "daily_count_reset_date": today,
                "daily_limit": limit,
                "daily_count": {"$lt": limit},
            },
            {
                "$inc": {"daily_count": 1, "message_count": 1},
                "$set": {"last_used": now_iso()},
            },
            return_document=ReturnDocument.AFTER,
        ))

        if not updated:
            logger.warning(f"[CHANNEL] Limite atteinte pour {doc.get('identifier')} ({limit}/jour)")
            raise ChannelLimitReachedError(
                f"Limite journalière atteinte pour {doc.get('identifier')}",
                channel_id=channel_id
            )

        return OutboundChannel(**updated)

    async def reserve_channel(self, deadline: Optional[datetime] = None) -> OutboundChannel:
        """
        Reservation effective: selection + increment conditionnel, repete
        tant qu'un concurrent nous prend la derniere unite d'un canal.
        A liberer avec release_channel() si l'envoi echoue.
        """
        last_error = None
        for _ in range(MAX_RESERVE_ATTEMPTS):
            channel = await self.select_channel(deadline)
            try:
                return await self.record_usage(channel.id)
            except ChannelLimitReachedError as e:
                last_error = e
                continue
        raise NoChannelAvailableError("Aucun numéro d'envoi disponible après plusieurs tentatives") from last_error

    @storage_errors("channel.release")
    async def release_channel(self, channel_id: str) -> bool:
        """
        Annule une reservation (envoi echoue). Ne touche que le compteur du
        jour courant: une reservation de la veille a deja ete remise a zero.
        """
        result = await self.db.outbound_channels.update_one(
            {
                "id": channel_id,
                "daily_count_reset_date": today_str(),
                "daily_count": {"$gt": 0},
            },
            {"$inc": {"daily_count": -1, "message_count": -1}}
        )
        if result.modified_count:
            logger.info(f"[CHANNEL] Réservation annulée sur {channel_id}")
        return bool(result.modified_count)

    # ════════════════════════════════════════════════════════════════════
    # ADMINISTRATION
    # ════════════════════════════════════════════════════════════════════

    @storage_errors("channel.reset_all")
    async def reset_all_daily_counts(self) -> int:
        result = await self.db.outbound_channels.update_many(
            {},
            {"$set": {"daily_count": 0, "daily_count_reset_date": today_str()}}
        )
        logger.info(f"[CHANNEL] Reset manuel de {result.modified_count} numéros")
        return result.modified_count

    @storage_errors("channel.set_default")
    async def set_default_channel(self, channel_id: str) -> OutboundChannel:
        exists = await self.db.outbound_channels.find_one({"id": channel_id}, {"_id": 0, "id": 1})
        if not exists:
            raise NotFoundError(f"Canal {channel_id} introuvable")

        await self.db.outbound_channels.update_many(
            {"is_default": True, "id": {"$ne": channel_id}},
            {"$set": {"is_default": False}}
        )
        doc = strip_id(await self.db.outbound_channels.find_one_and_update(
            {"id": channel_id},
            {"$set": {"is_default": True}},
            return_document=ReturnDocument.AFTER,
        ))
        return OutboundChannel(**doc)

    @storage_errors("channel.stats")
    async def usage_statistics(self) -> List[Dict[str, Any]]:
        docs = await self.db.outbound_channels.find(
            {},
            {"_id": 0, "id": 1, "identifier": 1, "name": 1, "message_count": 1,
             "daily_count": 1, "daily_limit": 1, "is_active": 1, "last_used": 1}
        ).sort("identifier", 1).to_list(1000)
        return docs
