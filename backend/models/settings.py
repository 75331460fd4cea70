"""
Sales CRM - Paramètres société (document key="company" de la collection settings)
"""

from typing import Dict
from pydantic import BaseModel, ConfigDict, Field

from .channel import RotationStrategy


DEFAULT_FOLLOWUP_INTERVAL_DAYS = 2

DEFAULT_FOLLOWUP_INTERVALS = {
    "new": 1,
    "contacted": 2,
    "qualified": 3,
    "proposal-sent": 5,
    "negotiating": 2,
    "on-hold": 7,
}


class CompanySetting(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    company_name: str = ""
    lead_rotation_enabled: bool = True
    number_rotation_enabled: bool = True
    auto_followup_enabled: bool = True
    prefer_default_number: bool = False
    rotation_strategy: RotationStrategy = RotationStrategy.ROUND_ROBIN
    default_followup_intervals: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_FOLLOWUP_INTERVALS)
    )
