"""
Sales CRM - Modeles Auth & Utilisateurs
Two roles: employees receive leads through rotation, admins see everything.
"""

from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional


VALID_ROLES = ["employee", "admin"]


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    role: str = "employee"
    phone: Optional[str] = ""

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f"Role invalide: {v}. Valides: {VALID_ROLES}")
        return v


class User(BaseModel):
    """Utilisateur tel que vu par le moteur (sans mot de passe)"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    email: str = ""
    role: str = "employee"
    is_active: bool = True
    phone: str = ""
    last_lead_assigned: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# Caller used by timers and webhooks
SYSTEM_USER = User(id="system", name="Système", email="system", role="admin")
