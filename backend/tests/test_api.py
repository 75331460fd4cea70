"""
Test API (FastAPI TestClient, base en mémoire)
- auth par token de session
- erreurs métier -> codes HTTP
- parcours lead -> followup -> completion
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from server import create_app
from tests.conftest import Seeder


@pytest.fixture
def api():
    database = AsyncMongoMockClient()["sales_crm_api"]
    seeder = Seeder(database)
    admin = asyncio.run(seeder.user("Admin", role="admin", user_id="admin-1"))
    employee = asyncio.run(seeder.user("Eve", user_id="emp-1"))

    app = create_app(database, start_scheduler=False)
    with TestClient(app) as client:
        yield client, admin, employee


def login(client, user):
    response = client.post("/api/auth/login", json={"email": user.email, "password": "secret"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


class TestAuth:

    def test_login_and_me(self, api):
        client, admin, _ = api
        headers = login(client, admin)
        response = client.get("/api/auth/me", headers=headers)
        assert response.status_code == 200
        assert response.json()["role"] == "admin"
        print("✅ Login returns a working session token")

    def test_wrong_password(self, api):
        client, admin, _ = api
        response = client.post("/api/auth/login", json={"email": admin.email, "password": "nope"})
        assert response.status_code == 401
        print("✅ Wrong password -> 401")

    def test_no_token(self, api):
        client, _, _ = api
        assert client.get("/api/followups/overdue").status_code == 401
        print("✅ Missing token -> 401")

    def test_admin_only_routes(self, api):
        client, _, employee = api
        headers = login(client, employee)
        assert client.get("/api/channels", headers=headers).status_code == 403
        print("✅ Employee blocked from admin routes")


class TestErrorMapping:

    def test_unknown_followup_404(self, api):
        client, admin, _ = api
        response = client.get("/api/followups/does-not-exist", headers=login(client, admin))
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"
        print("✅ NotFoundError -> 404")

    def test_invalid_status_400(self, api):
        client, admin, _ = api
        headers = login(client, admin)
        lead = client.post("/api/leads", json={"name": "Bob", "phone": "+15551234567"}, headers=headers).json()
        response = client.put(f"/api/leads/{lead['id']}/status", json={"status": "archived"}, headers=headers)
        assert response.status_code == 400
        print("✅ InvalidArgumentError -> 400")

    def test_no_channel_409(self, api):
        client, admin, _ = api
        response = client.get("/api/channels/next", headers=login(client, admin))
        assert response.status_code == 409
        assert response.json()["error"] == "NoChannelAvailableError"
        print("✅ NoChannelAvailableError -> 409")


class TestLeadFlow:

    def test_create_complete_followup(self, api):
        client, admin, employee = api
        admin_headers = login(client, admin)
        emp_headers = login(client, employee)

        lead = client.post(
            "/api/leads", json={"name": "Bob", "phone": "+15551234567"}, headers=admin_headers
        ).json()
        assert lead["assigned_to"] == employee.id

        followups = client.get(f"/api/leads/{lead['id']}/followups", headers=emp_headers).json()
        assert followups["count"] == 1
        followup_id = followups["followups"][0]["id"]

        response = client.put(
            f"/api/followups/{followup_id}/complete",
            json={"outcome": "qualified"},
            headers=emp_headers
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "completed"

        refreshed = client.get(f"/api/leads/{lead['id']}", headers=emp_headers).json()
        assert refreshed["status"] == "qualified"

        activities = client.get(f"/api/leads/{lead['id']}/activities", headers=emp_headers).json()
        assert any("qualified" in a["notes"] for a in activities["activities"])
        print("✅ Lead created, follow-up completed, lead qualified over HTTP")

    def test_whatsapp_webhook(self, api):
        client, _, employee = api
        payload = {"From": "whatsapp:+15557654321", "Body": "I'm Maria", "MessageSid": "SM1"}

        first = client.post("/api/webhooks/whatsapp", json=payload).json()
        again = client.post("/api/webhooks/whatsapp", json=payload).json()

        assert first["is_new"] is True
        assert again == {"success": True, "lead_id": first["lead_id"], "is_new": False}
        print("✅ Webhook creates once, replays are ignored")


class TestMe:

    def test_notifications_and_activities(self, api):
        client, admin, employee = api
        client.post("/api/leads", json={"name": "Bob", "phone": "+15551234567"}, headers=login(client, admin))
        emp_headers = login(client, employee)

        unread = client.get("/api/auth/me/notifications", headers=emp_headers).json()
        titles = [n["title"] for n in unread["notifications"]]
        assert "New Lead Assigned" in titles

        ids = [n["id"] for n in unread["notifications"]]
        marked = client.put("/api/auth/me/notifications/read", json={"ids": ids}, headers=emp_headers).json()
        assert marked["updated"] == len(ids)
        assert client.get("/api/auth/me/notifications", headers=emp_headers).json()["count"] == 0

        activities = client.get("/api/auth/me/activities", headers=emp_headers).json()
        assert activities["count"] >= 1
        print("✅ Per-user notifications and activity feed")

    def test_rotation_order(self, api):
        client, admin, employee = api
        order = client.get("/api/auth/users/rotation", headers=login(client, admin)).json()
        assert [u["id"] for u in order["users"]] == [employee.id]
        print("✅ Rotation order visible to admins")


class TestTemplates:

    def test_admin_crud_employee_read(self, api):
        client, admin, employee = api
        admin_headers = login(client, admin)
        emp_headers = login(client, employee)
        payload = {"name": "Intro", "content": "Hi {{Customer_Name}}", "category": "greeting"}

        assert client.post("/api/templates", json=payload, headers=emp_headers).status_code == 403
        created = client.post("/api/templates", json=payload, headers=admin_headers).json()
        assert created["category"] == "greeting"

        listed = client.get("/api/templates", headers=emp_headers).json()
        assert [t["id"] for t in listed["templates"]] == [created["id"]]

        updated = client.put(
            f"/api/templates/{created['id']}", json={"is_active": False}, headers=admin_headers
        ).json()
        assert updated["is_active"] is False

        assert client.delete(f"/api/templates/{created['id']}", headers=admin_headers).status_code == 200
        response = client.get(f"/api/templates/{created['id']}", headers=emp_headers)
        assert response.status_code == 404
        print("✅ Templates: admin CRUD, employees read")
