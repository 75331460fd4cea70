"""
Sales CRM - Modèles de message WhatsApp (MessageTemplate)

Placeholders remplis à l'envoi:
    {{Customer_Name}} {{Employee_Name}} {{Company_Name}} {{Service_Name}}
"""

from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class TemplateCategory(str, Enum):
    GREETING = "greeting"
    FOLLOW_UP = "follow-up"
    REMINDER = "reminder"
    PROMOTION = "promotion"
    INFORMATION = "information"
    OTHER = "other"


VALID_TEMPLATE_CATEGORIES = [c.value for c in TemplateCategory]


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    content: str = Field(min_length=1, max_length=4096)
    description: str = Field(default="", max_length=200)
    category: TemplateCategory = TemplateCategory.FOLLOW_UP
    tags: List[str] = []


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    content: Optional[str] = Field(default=None, min_length=1, max_length=4096)
    description: Optional[str] = Field(default=None, max_length=200)
    category: Optional[TemplateCategory] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None


class MessageTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    name: str
    content: str
    description: str = ""
    category: str = TemplateCategory.FOLLOW_UP.value
    tags: List[str] = []
    is_active: bool = True
    usage_count: int = 0
    created_by: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
