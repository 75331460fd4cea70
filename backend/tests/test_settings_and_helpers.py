"""
Test Settings / helpers / taxonomie d'erreurs
"""

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from config import normalize_phone, to_iso, today_str, day_bounds, strip_id
from models import CompanySetting, normalize_lead_status
from services.assignment_rotator import AssignmentRotator
from services.errors import (
    ConfigurationError,
    StorageError,
    PartialFailureError,
    NotFoundError,
    ChannelLimitReachedError,
    storage_errors,
)
from services.settings import (
    get_company_settings,
    update_company_settings,
    resolve_followup_interval,
)
from tests.conftest import NOW


class TestPhoneNormalization:

    def test_formats(self):
        assert normalize_phone("whatsapp:+15551234567") == (True, "+15551234567")
        assert normalize_phone("+1 (555) 123-4567") == (True, "+15551234567")
        assert normalize_phone("0033612345678") == (True, "+33612345678")
        print("✅ Phone normalised to +digits")

    def test_rejections(self):
        assert normalize_phone("")[0] is False
        assert normalize_phone("abc")[0] is False
        assert normalize_phone("12345")[0] is False
        assert normalize_phone("+1234567890123456")[0] is False
        assert normalize_phone("0000000000")[0] is False
        print("✅ Invalid phones rejected")


class TestTimeHelpers:

    def test_iso_sorts_chronologically(self):
        a = to_iso(NOW.replace(microsecond=0))
        b = to_iso(NOW.replace(microsecond=5))
        assert a < b
        assert a.endswith("+00:00")
        print("✅ Fixed-precision ISO timestamps")

    def test_day_bounds(self):
        start, end = day_bounds(NOW)
        assert to_iso(start).startswith("2026-03-10T00:00:00")
        assert to_iso(end).startswith("2026-03-11T00:00:00")
        assert today_str(NOW) == "2026-03-10"
        print("✅ UTC day bounds")


class TestLeadStatusVocabulary:

    def test_legacy_mapping(self):
        assert normalize_lead_status("closed-won") == "won"
        assert normalize_lead_status("closed-lost") == "lost"
        assert normalize_lead_status("Proposal") == "proposal-sent"
        assert normalize_lead_status("in-progress") == "contacted"
        assert normalize_lead_status("qualified") == "qualified"
        assert normalize_lead_status("archived") is None
        assert normalize_lead_status(None) is None
        print("✅ Single canonical status vocabulary")


class TestCompanySettings:

    @pytest.mark.asyncio
    async def test_defaults_when_missing(self, db):
        settings = await get_company_settings(db)
        assert settings.lead_rotation_enabled is True
        assert settings.rotation_strategy == "round-robin"
        assert settings.default_followup_intervals["proposal-sent"] == 5
        print("✅ Missing settings -> defaults")

    @pytest.mark.asyncio
    async def test_partial_table_merged(self, db, seed):
        await seed.company(default_followup_intervals={"qualified": 10}, auto_followup_enabled=False)
        settings = await get_company_settings(db)
        assert settings.default_followup_intervals["qualified"] == 10
        assert settings.default_followup_intervals["new"] == 1
        assert settings.auto_followup_enabled is False
        print("✅ Stored intervals merged over defaults")

    @pytest.mark.asyncio
    async def test_corrupt_document_falls_back(self, db, seed):
        await seed.company(rotation_strategy="by-mood")
        settings = await get_company_settings(db)
        assert settings.rotation_strategy == "round-robin"
        print("✅ Invalid stored settings -> defaults")

    @pytest.mark.asyncio
    async def test_update_validates(self, db):
        updated = await update_company_settings(db, {"rotation_strategy": "least-used-overall"}, "admin-1")
        assert updated.rotation_strategy == "least-used-overall"
        assert (await get_company_settings(db)).rotation_strategy == "least-used-overall"

        with pytest.raises(ConfigurationError):
            await update_company_settings(db, {"rotation_strategy": "by-mood"})
        print("✅ Settings update validated before write")

    def test_resolve_interval(self):
        settings = CompanySetting()
        assert resolve_followup_interval(settings, "new") == 1
        assert resolve_followup_interval(settings, "negotiation") == 2
        assert resolve_followup_interval(settings, "won") == 2

        with pytest.raises(ConfigurationError):
            resolve_followup_interval(None, "new")
        with pytest.raises(ConfigurationError):
            resolve_followup_interval(CompanySetting(default_followup_intervals={}), "new")
        with pytest.raises(ConfigurationError):
            resolve_followup_interval(CompanySetting(default_followup_intervals={"new": -1}), "new")
        print("✅ Interval resolution and its configuration errors")


class TestErrorTaxonomy:

    def test_http_status(self):
        assert NotFoundError("x").http_status == 404
        assert ChannelLimitReachedError("x").http_status == 409
        assert StorageError("x").http_status == 503
        err = PartialFailureError("half done", step="activity", entity={"id": "f1"})
        assert err.to_dict() == {"error": "PartialFailureError", "detail": "half done", "step": "activity"}
        print("✅ Error classes carry their HTTP status")

    @pytest.mark.asyncio
    async def test_driver_errors_translated(self):
        @storage_errors("demo.read")
        async def flaky():
            raise ServerSelectionTimeoutError("no primary")

        with pytest.raises(StorageError) as exc_info:
            await flaky()
        assert "demo.read" in str(exc_info.value)
        print("✅ PyMongoError -> StorageError")


class TestStripId:

    def test_strip(self):
        assert strip_id({"_id": "x", "id": "u1", "password": "h"}, "password") == {"id": "u1"}
        assert strip_id({"id": "u1"}) == {"id": "u1"}
        assert strip_id(None) is None
        print("✅ _id and hidden fields dropped from returned documents")

    @pytest.mark.asyncio
    async def test_compare_and_set_returns_updated_document(self, db, seed):
        emp = await seed.user("E1")
        claimed = await AssignmentRotator(db).assign_next()
        assert claimed.id == emp.id
        assert claimed.last_lead_assigned is not None

        stored = await db.users.find_one({"id": emp.id})
        assert stored["last_lead_assigned"] == claimed.last_lead_assigned
        print("✅ Guarded update returns the document it just wrote")
