"""
Fixtures partagées: base en mémoire (mongomock-motor), horloge fixe, seeders.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import new_id, now_iso, to_iso, today_str, hash_password
from models import User
from services.activity_logger import ActivityRecorder
from services.assignment_rotator import AssignmentRotator
from services.channel_rotator import ChannelRotator
from services.errors import StorageError
from services.followup_scheduler import FollowUpScheduler
from services.lead_service import LeadService
from services.notifications import NotificationSink


# Mardi 10 mars 2026, 12:00 UTC
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


class RecordingSink(NotificationSink):
    def __init__(self):
        self.sent = []

    async def deliver(self, user_id, title, message, category="system",
                      related_id=None, related_model=None):
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category,
            "related_id": related_id,
        })


class FailingSink(NotificationSink):
    async def deliver(self, user_id, title, message, category="system",
                      related_id=None, related_model=None):
        raise ConnectionError("push gateway down")


class FailingActivityRecorder(ActivityRecorder):
    async def record(self, *args, **kwargs):
        raise StorageError("activity.record: store unavailable")


class Seeder:
    def __init__(self, db):
        self.db = db

    async def user(self, name, role="employee", user_id=None, last_lead_assigned=None,
                   is_active=True, password="secret") -> User:
        doc = {
            "id": user_id or new_id(),
            "name": name,
            "email": f"{name.lower().replace(' ', '.')}@example.com",
            "password": hash_password(password),
            "role": role,
            "is_active": is_active,
            "phone": "",
            "last_lead_assigned": last_lead_assigned,
        }
        await self.db.users.insert_one(dict(doc))
        return User(**doc)

    async def lead(self, assigned_to, status="new", name="Alice Martin", phone="+15550001111") -> dict:
        doc = {
            "id": new_id(),
            "name": name,
            "phone": phone,
            "email": "",
            "company": "",
            "message": "",
            "message_sid": None,
            "status": status,
            "assigned_to": assigned_to,
            "source": "manual",
            "followup_seq": 0,
            "created_at": now_iso(),
            "updated_at": now_iso(),
        }
        await self.db.leads.insert_one(dict(doc))
        return doc

    async def followup(self, lead_id, assigned_to, scheduled, status="pending", **extra) -> dict:
        doc = {
            "id": new_id(),
            "lead_id": lead_id,
            "assigned_to": assigned_to,
            "scheduled": to_iso(scheduled),
            "followup_type": "call",
            "status": status,
            "interval": 2,
            "notes": "",
            "snoozed": False,
            "seq": 0,
            "superseded_by": None,
            "reminded_at": None,
            "history": [],
            "version": 0,
            "created_at": now_iso(),
            "updated_at": now_iso(),
        }
        doc.update(extra)
        await self.db.followups.insert_one(dict(doc))
        return doc

    async def channel(self, identifier, daily_limit=1000, daily_count=0, reset_date="today",
                      is_default=False, is_active=True, last_used=None, message_count=0) -> dict:
        doc = {
            "id": new_id(),
            "identifier": identifier,
            "name": identifier,
            "provider": "twilio",
            "is_active": is_active,
            "is_default": is_default,
            "message_count": message_count,
            "daily_count": daily_count,
            "daily_limit": daily_limit,
            "daily_count_reset_date": today_str() if reset_date == "today" else reset_date,
            "last_used": last_used,
            "created_at": now_iso(),
        }
        await self.db.outbound_channels.insert_one(dict(doc))
        return doc

    async def template(self, name, content, is_active=True, category="follow-up") -> dict:
        doc = {
            "id": new_id(),
            "name": name,
            "content": content,
            "description": "",
            "category": category,
            "tags": [],
            "is_active": is_active,
            "usage_count": 0,
            "created_by": None,
            "created_at": now_iso(),
            "updated_at": now_iso(),
        }
        await self.db.message_templates.insert_one(dict(doc))
        return doc

    async def company(self, **values):
        await self.db.settings.update_one(
            {"key": "company"},
            {"$set": {"key": "company", **values}},
            upsert=True
        )


def yesterday_str():
    return (datetime.now(timezone.utc) - timedelta(days=1)).strftime("%Y-%m-%d")


# ==================== FIXTURES ====================

@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["sales_crm_test"]


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def activities(db):
    return ActivityRecorder(db)


@pytest.fixture
def scheduler(db, activities, sink):
    return FollowUpScheduler(db, activities, sink, clock=fixed_clock)


@pytest.fixture
def rotator(db):
    return AssignmentRotator(db)


@pytest.fixture
def channels(db):
    return ChannelRotator(db)


@pytest.fixture
def lead_service(db, rotator, scheduler, activities, sink):
    return LeadService(db, rotator, scheduler, activities, sink)
