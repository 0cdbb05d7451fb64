import sys
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent))

from support import add_tool, make_session_factory

import ToolLib as app_module
from services.user_role_service import set_role


PASSWORD = "correct-horse-1"


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()

        def _get_test_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_db] = _get_test_db
        self.tool = add_tool(self.db)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.db.close()
        self.engine.dispose()

    def _register(self, email, role=None):
        client = TestClient(app_module.app)
        payload = {"email": email, "password": PASSWORD, "fullName": email.split("@")[0]}
        if role:
            payload["role"] = role
        response = client.post("/api/auth/register", json=payload)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["user"]

    def _login(self, email):
        client = TestClient(app_module.app)
        response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
        self.assertEqual(response.status_code, 200, response.text)
        return client, {"X-Session-Token": response.json()["sessionToken"]}

    def _admin(self):
        user = self._register("admin@example.org")
        set_role(self.db, user["id"], "admin", acting_role="admin")
        return self._login("admin@example.org")

    def test_healthchecks(self):
        client = TestClient(app_module.app)
        self.assertEqual(client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(client.get("/api/healthz").status_code, 200)

    def test_login_logout_revokes_session_token(self):
        self._register("member@example.org")
        client, headers = self._login("member@example.org")

        me_before = client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["user"]["role"], "community_member")

        logout = client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_login_persists_with_cookie_session(self):
        self._register("member@example.org")
        client, _ = self._login("member@example.org")

        me = client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["email"], "member@example.org")

    def test_bad_credentials_and_admin_signup_are_rejected(self):
        self._register("member@example.org")
        client = TestClient(app_module.app)
        login = client.post("/api/auth/login", json={"email": "member@example.org", "password": "wrong-password"})
        self.assertEqual(login.status_code, 401)

        signup = client.post(
            "/api/auth/register",
            json={"email": "sneaky@example.org", "password": PASSWORD, "role": "admin"},
        )
        self.assertEqual(signup.status_code, 403)

    def test_loans_require_login(self):
        client = TestClient(app_module.app)
        self.assertEqual(client.get("/api/loans").status_code, 401)
        self.assertEqual(client.post("/api/loans", json={"toolID": self.tool.id}).status_code, 401)

    def test_full_loan_lifecycle_over_http(self):
        self._register("member@example.org")
        member, member_headers = self._login("member@example.org")
        admin, admin_headers = self._admin()

        created = member.post("/api/loans", json={"toolID": self.tool.id}, headers=member_headers)
        self.assertEqual(created.status_code, 200, created.text)
        loan = created.json()
        self.assertEqual(loan["status"], "pending")
        loan_url = f"/api/loans/{loan['id']}"

        self_approve = member.post(f"{loan_url}/transition", json={"status": "approved"}, headers=member_headers)
        self.assertEqual(self_approve.status_code, 403)

        skip = admin.post(f"{loan_url}/transition", json={"status": "returned"}, headers=admin_headers)
        self.assertEqual(skip.status_code, 400)

        approve = admin.post(
            f"{loan_url}/transition",
            json={"status": "approved", "expectedStatus": "pending"},
            headers=admin_headers,
        )
        self.assertEqual(approve.status_code, 200, approve.text)
        self.assertEqual(approve.json()["displayStatus"], "approved")

        stale = admin.post(
            f"{loan_url}/transition",
            json={"status": "rejected", "expectedStatus": "pending"},
            headers=admin_headers,
        )
        self.assertEqual(stale.status_code, 409)

        pickup = member.post(f"{loan_url}/pickup", headers=member_headers)
        self.assertEqual(pickup.status_code, 200, pickup.text)
        self.assertEqual(pickup.json()["status"], "active")

        returned = admin.post(f"{loan_url}/transition", json={"status": "returned"}, headers=admin_headers)
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertIsNotNone(returned.json()["returnedAt"])

        feedback = member.post(f"{loan_url}/feedback", json={"rating": 5}, headers=member_headers)
        self.assertEqual(feedback.status_code, 200, feedback.text)

        catalog = member.get("/api/catalog", params={"availableOnly": "true"})
        self.assertEqual([tool["id"] for tool in catalog.json()["tools"]], [self.tool.id])

    def test_second_request_for_lent_tool_conflicts(self):
        self._register("member@example.org")
        member, member_headers = self._login("member@example.org")
        admin, admin_headers = self._admin()

        loan = member.post("/api/loans", json={"toolID": self.tool.id}, headers=member_headers).json()
        admin.post(f"/api/loans/{loan['id']}/transition", json={"status": "active"}, headers=admin_headers)

        again = member.post("/api/loans", json={"toolID": self.tool.id}, headers=member_headers)
        self.assertEqual(again.status_code, 409)

    def test_members_only_see_their_own_loans(self):
        self._register("member@example.org")
        self._register("other@example.org")
        member, member_headers = self._login("member@example.org")
        other, other_headers = self._login("other@example.org")

        loan = member.post("/api/loans", json={"toolID": self.tool.id}, headers=member_headers).json()

        self.assertEqual(other.get(f"/api/loans/{loan['id']}", headers=other_headers).status_code, 404)
        self.assertEqual(other.get("/api/loans", headers=other_headers).json(), [])
        self.assertEqual(len(member.get("/api/loans", headers=member_headers).json()), 1)

    def test_admin_endpoints_are_admin_only(self):
        self._register("member@example.org")
        member, member_headers = self._login("member@example.org")
        admin, admin_headers = self._admin()

        self.assertEqual(member.get("/api/dashboard/admin", headers=member_headers).status_code, 403)
        self.assertEqual(member.get("/api/admin/users", headers=member_headers).status_code, 403)

        dashboard = admin.get("/api/dashboard/admin", headers=admin_headers)
        self.assertEqual(dashboard.status_code, 200)
        self.assertEqual(dashboard.json()["toolCount"], 1)

        users = admin.get("/api/admin/users", headers=admin_headers).json()
        self.assertEqual({user["role"] for user in users}, {"admin", "community_member"})

        hidden = admin.put(
            f"/api/admin/items/tools/{self.tool.id}/availability",
            json={"isAvailable": False},
            headers=admin_headers,
        )
        self.assertEqual(hidden.status_code, 200)
        self.assertFalse(hidden.json()["isAvailable"])


if __name__ == "__main__":
    unittest.main()
