"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Modèle FollowUp                                                 ║
║                                                                              ║
║  INVARIANT: au plus UN followup "pending" par lead                           ║
║  completed / cancelled sont terminaux                                        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class FollowUpType(str, Enum):
    CALL = "call"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    MEETING = "meeting"
    OTHER = "other"


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    MISSED = "missed"
    CANCELLED = "cancelled"
    IN_PROGRESS = "in-progress"
    ON_HOLD = "on-hold"


VALID_FOLLOWUP_TYPES = [t.value for t in FollowUpType]
VALID_FOLLOWUP_STATUSES = [s.value for s in FollowUpStatus]

TERMINAL_FOLLOWUP_STATUSES = {FollowUpStatus.COMPLETED.value, FollowUpStatus.CANCELLED.value}


class FollowUpHistoryEntry(BaseModel):
    from_status: str
    to_status: str
    at: str
    by: Optional[str] = None
    scheduled: Optional[str] = None


class FollowUp(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    lead_id: str
    assigned_to: str
    scheduled: str
    followup_type: str = FollowUpType.CALL.value
    status: str = FollowUpStatus.PENDING.value
    outcome: Optional[str] = None
    interval: int = 2
    notes: str = ""

    snoozed: bool = False
    snoozed_from: Optional[str] = None
    completed_at: Optional[str] = None

    seq: int = 0
    superseded_by: Optional[str] = None
    next_followup_id: Optional[str] = None
    reminded_at: Optional[str] = None

    history: List[FollowUpHistoryEntry] = Field(default_factory=list)
    version: int = 0

    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FOLLOWUP_STATUSES
