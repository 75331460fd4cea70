"""
Sales CRM - Service Settings

Gestion des parametres systeme dynamiques.
Collection: settings (chaque doc identifie par key)

Settings disponibles:
- company: rotation des leads / numeros, relances automatiques,
  strategie de rotation, intervalles de relance par statut

Un setting absent n'est jamais une erreur: les defaults s'appliquent.
"""

import logging
from typing import Optional, Dict, Any

from pydantic import ValidationError

from config import now_iso
from models import (
    CompanySetting,
    DEFAULT_FOLLOWUP_INTERVAL_DAYS,
    normalize_lead_status,
)
from services.errors import ConfigurationError

logger = logging.getLogger("settings")

COMPANY_KEY = "company"


async def get_setting(db, key: str) -> Optional[Dict]:
    """Recupere un setting par sa cle"""
    doc = await db.settings.find_one({"key": key}, {"_id": 0})
    return doc


async def upsert_setting(db, key: str, data: Dict[str, Any], updated_by: str = "system") -> Dict:
    """Cree ou met a jour un setting"""
    data = dict(data)
    data["key"] = key
    data["updated_at"] = now_iso()
    data["updated_by"] = updated_by

    await db.settings.update_one(
        {"key": key},
        {"$set": data, "$setOnInsert": {"created_at": now_iso()}},
        upsert=True
    )

    result = await db.settings.find_one({"key": key}, {"_id": 0})
    return result


# ---- Company helpers ----

async def get_company_settings(db) -> CompanySetting:
    """
    Retourne les settings societe (avec defaults).

    Le tableau d'intervalles stocke est fusionne avec les defaults, de sorte
    qu'un statut absent du document garde sa valeur par defaut.
    """
    doc = await get_setting(db, COMPANY_KEY)
    if not doc:
        return CompanySetting()

    defaults = CompanySetting()
    stored_intervals = doc.get("default_followup_intervals") or {}
    merged = {**defaults.model_dump(), **doc}
    merged["default_followup_intervals"] = {
        **defaults.default_followup_intervals,
        **stored_intervals,
    }

    try:
        return CompanySetting(**merged)
    except ValidationError as e:
        logger.warning(f"[SETTINGS] company settings invalides, defaults utilises: {e}")
        return defaults


async def update_company_settings(db, changes: Dict[str, Any], updated_by: str = "system") -> CompanySetting:
    """Met a jour les settings societe (validation pydantic avant ecriture)"""
    current = await get_company_settings(db)
    merged = {**current.model_dump(), **changes}
    try:
        validated = CompanySetting(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"company settings invalides: {e}")

    await upsert_setting(db, COMPANY_KEY, validated.model_dump(mode="json"), updated_by)
    return validated


def resolve_followup_interval(settings: Optional[CompanySetting], lead_status: str) -> int:
    """
    Intervalle (jours) de relance pour un statut de lead.

    Raises:
        ConfigurationError si aucun settings n'est fourni ou si la valeur
        configuree est inutilisable (<= 0). L'appelant choisit alors son
        propre fallback.
    """
    if settings is None:
        raise ConfigurationError("company settings absents")

    table = settings.default_followup_intervals
    if not table:
        raise ConfigurationError("default_followup_intervals absent")

    status = normalize_lead_status(lead_status) or lead_status
    days = table.get(status)
    if days is None:
        return DEFAULT_FOLLOWUP_INTERVAL_DAYS
    if days <= 0:
        raise ConfigurationError(f"intervalle invalide pour '{status}': {days}")
    return days
