"""
Sales CRM - Numéros d'envoi (OutboundChannel)

INVARIANT: daily_count <= daily_limit
Le compteur journalier est remis à zéro une seule fois par jour calendaire (UTC).
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round-robin"
    LEAST_USED_TODAY = "least-used-today"
    LEAST_USED_OVERALL = "least-used-overall"
    RANDOM = "random"


VALID_ROTATION_STRATEGIES = [s.value for s in RotationStrategy]

DEFAULT_DAILY_LIMIT = 1000


class OutboundChannel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    identifier: str
    name: str = ""
    provider: str = "twilio"
    is_active: bool = True
    is_default: bool = False

    message_count: int = 0
    daily_count: int = 0
    daily_limit: int = DEFAULT_DAILY_LIMIT
    daily_count_reset_date: Optional[str] = None
    last_used: Optional[str] = None

    created_at: str = ""

    @property
    def has_quota(self) -> bool:
        return self.daily_count < self.daily_limit
