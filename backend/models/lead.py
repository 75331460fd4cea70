"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Modèle Lead                                                     ║
║                                                                              ║
║  RÈGLES FONDAMENTALES:                                                       ║
║  1. UN SEUL vocabulaire de statut (voir LeadStatus)                          ║
║  2. Tout changement de statut ajoute une Activity                            ║
║  3. won / lost sont terminaux                                                ║
║  4. Suppression uniquement en cascade (followups + activities)               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    NEGOTIATING = "negotiating"
    PROPOSAL_SENT = "proposal-sent"
    WON = "won"
    LOST = "lost"
    ON_HOLD = "on-hold"


VALID_LEAD_STATUSES = [s.value for s in LeadStatus]

TERMINAL_LEAD_STATUSES = {LeadStatus.WON.value, LeadStatus.LOST.value}

# Older documents carry one of two historical vocabularies
LEGACY_STATUS_MAP = {
    "closed-won": "won",
    "closed-lost": "lost",
    "proposal": "proposal-sent",
    "negotiation": "negotiating",
    "in-progress": "contacted",
}


class LeadSource(str, Enum):
    MANUAL = "manual"
    WHATSAPP = "whatsapp"
    WEBSITE = "website"
    REFERRAL = "referral"
    COLD_CALL = "cold-call"
    SOCIAL_MEDIA = "social-media"
    OTHER = "other"


def normalize_lead_status(value: Optional[str]) -> Optional[str]:
    """Map a raw (possibly legacy) status onto the canonical set, None if unknown"""
    if not value:
        return None
    value = value.strip().lower()
    value = LEGACY_STATUS_MAP.get(value, value)
    return value if value in VALID_LEAD_STATUSES else None


class LeadCreate(BaseModel):
    """Lead saisi manuellement"""
    name: str
    phone: str
    email: Optional[str] = ""
    company: Optional[str] = ""
    message: Optional[str] = ""
    source: LeadSource = LeadSource.MANUAL


class Lead(BaseModel):
    """Structure d'un lead en base"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    name: str
    phone: str
    email: str = ""
    company: str = ""
    message: str = ""
    message_sid: Optional[str] = None

    status: str = LeadStatus.NEW.value
    assigned_to: Optional[str] = None
    source: str = LeadSource.MANUAL.value

    last_contacted: Optional[str] = None
    last_contact_method: Optional[str] = None
    contacted_with: Optional[str] = None

    followup_seq: int = 0

    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LEAD_STATUSES
