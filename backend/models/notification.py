"""
Sales CRM - Notifications in-app
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum


class NotificationCategory(str, Enum):
    FOLLOWUP = "followup"
    ASSIGNMENT = "assignment"
    SYSTEM = "system"
    OTHER = "other"


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    user_id: str
    title: str
    message: str
    category: str = NotificationCategory.FOLLOWUP.value
    related_id: Optional[str] = None
    related_model: Optional[str] = None
    is_read: bool = False
    created_at: str = ""
