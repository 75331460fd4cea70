"""
Sales CRM - Notifications

Le moteur ne connait qu'une capacite abstraite `notify(...)`.
Fire-and-forget: un echec est journalise, jamais propage a l'appelant.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, List

from config import new_id, now_iso
from models import Notification

logger = logging.getLogger("notifications")


class NotificationSink(ABC):

    @abstractmethod
    async def deliver(
        self,
        user_id: str,
        title: str,
        message: str,
        category: str = "system",
        related_id: Optional[str] = None,
        related_model: Optional[str] = None
    ):
        """Transport-specific delivery; may raise."""

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        category: str = "system",
        related_id: Optional[str] = None,
        related_model: Optional[str] = None
    ) -> bool:
        """Returns False when delivery failed (already logged)."""
        if not user_id:
            return False
        try:
            await self.deliver(user_id, title, message, category, related_id, related_model)
            return True
        except Exception as e:
            logger.error(f"[NOTIFY] échec '{title}' pour user={user_id}: {e}")
            return False


class NullNotificationSink(NotificationSink):
    """Sink sans transport (tests, scripts)"""

    async def deliver(self, user_id, title, message, category="system",
                      related_id=None, related_model=None):
        logger.debug(f"[NOTIFY] (null) {user_id}: {title}")


class MongoNotificationSink(NotificationSink):
    """Notifications in-app stockees dans la collection notifications"""

    def __init__(self, db):
        self.db = db

    async def deliver(self, user_id, title, message, category="system",
                      related_id=None, related_model=None):
        doc = {
            "id": new_id(),
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category,
            "is_read": False,
            "created_at": now_iso()
        }
        if related_id and related_model:
            doc["related_id"] = related_id
            doc["related_model"] = related_model

        await self.db.notifications.insert_one(doc)

    async def get_unread(self, user_id: str, limit: int = 50) -> List[Notification]:
        docs = await self.db.notifications.find(
            {"user_id": user_id, "is_read": False},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(limit)
        return [Notification(**d) for d in docs]

    async def mark_read(self, user_id: str, notification_ids: List[str]) -> int:
        result = await self.db.notifications.update_many(
            {"id": {"$in": notification_ids}, "user_id": user_id},
            {"$set": {"is_read": True}}
        )
        return result.modified_count
