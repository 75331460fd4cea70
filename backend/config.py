"""
Configuration et utilitaires partagés
"""

import os
import uuid
import hashlib
import secrets
from datetime import datetime, timezone, timedelta
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'sales_crm')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Scheduler
SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'UTC')
REMINDER_WINDOW_MINUTES = int(os.environ.get('REMINDER_WINDOW_MINUTES', '15'))
DAILY_DIGEST_HOUR = int(os.environ.get('DAILY_DIGEST_HOUR', '8'))


# ==================== HELPERS ====================

def new_id() -> str:
    """Identifiant de document (uuid4)"""
    return str(uuid.uuid4())


def strip_id(doc: Optional[dict], *hidden: str) -> Optional[dict]:
    """
    Retire `_id` (et les champs `hidden`) d'un document retourné par
    find_one_and_update. La projection n'est pas passée au driver: le
    document AFTER doit rester ciblé par `_id`.
    """
    if doc is None:
        return None
    for key in ("_id",) + hidden:
        doc.pop(key, None)
    return doc


def hash_password(password: str) -> str:
    """Hash un mot de passe avec SHA256"""
    return hashlib.sha256(password.encode()).hexdigest()


def generate_token() -> str:
    """Génère un token de session sécurisé"""
    return secrets.token_urlsafe(32)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    ISO-8601 UTC with fixed microsecond precision.

    Every stored timestamp goes through here so that string comparison in
    queries ($lt / $gte) matches chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return to_iso(utcnow())


def today_str(now: Optional[datetime] = None) -> str:
    """Jour calendaire UTC (YYYY-MM-DD)"""
    return (now or utcnow()).astimezone(timezone.utc).strftime("%Y-%m-%d")


def day_bounds(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Returns (start of today, start of tomorrow) in UTC."""
    now = (now or utcnow()).astimezone(timezone.utc)
    start = datetime.combine(now.date(), datetime.min.time(), tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def normalize_phone(phone: str) -> tuple[bool, str]:
    """
    Normalise un numéro au format international (+XXXXXXXXXX).

    Pipeline:
      1. Retirer le préfixe "whatsapp:" des webhooks
      2. Garder uniquement les chiffres (le + initial est conservé)
      3. 00XXXXXXXX -> +XXXXXXXX
      4. Validation: 10 à 15 chiffres

    Returns: (is_valid, normalized_or_error)
    """
    if not phone or not phone.strip():
        return False, "Numéro vide"

    raw = phone.strip()
    if raw.lower().startswith("whatsapp:"):
        raw = raw[len("whatsapp:"):]

    digits = ''.join(filter(str.isdigit, raw))
    if not digits:
        return False, "Aucun chiffre détecté"

    if not raw.startswith("+") and digits.startswith("00"):
        digits = digits[2:]

    if len(digits) < 10 or len(digits) > 15:
        return False, f"Format invalide: {len(digits)} chiffres (10 à 15 requis)"

    if len(set(digits)) == 1:
        return False, f"Numéro bloqué: {digits} (chiffres identiques)"

    return True, f"+{digits}"


def is_past(deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if deadline is None:
        return False
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline <= (now or utcnow())
