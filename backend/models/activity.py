"""
Sales CRM - Activity (journal d'interactions, immuable)
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum


class ActivityType(str, Enum):
    CALL = "call"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    MEETING = "meeting"
    NOTE = "note"


class ActivityStatus(str, Enum):
    ATTEMPTED = "attempted"
    CONNECTED = "connected"
    NOT_ANSWERED = "not-answered"
    COMPLETED = "completed"
    OTHER = "other"


VALID_ACTIVITY_TYPES = [t.value for t in ActivityType]
VALID_ACTIVITY_STATUSES = [s.value for s in ActivityStatus]


class Activity(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, frozen=True)

    id: str
    lead_id: str
    user_id: str
    type: str
    status: str = ActivityStatus.COMPLETED.value
    duration: Optional[int] = None
    notes: str = ""
    template_used: Optional[str] = None
    created_at: str = ""
