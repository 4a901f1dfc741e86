"""Integration tests for GET /api/v1/dashboard -- aggregated CMDB counts.

Covers:
- Response carries the four counts and they move with writes
- 401 without a token
- A failing count surfaces as 500 with the standard error envelope, never partial numbers
"""

from unittest.mock import patch

from api.main import app
from cmdb.errors import InternalError


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestDashboardRoute:
    def test_returns_counts(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.get("/api/v1/dashboard", headers=_h(token))
        assert resp.status_code == 200
        data = resp.json()
        assert set(data) == {"total_cis", "total_ci_types", "total_relationships", "total_users"}
        assert data["total_users"] >= 1, "the admin issuing the request is a user"

    def test_ci_type_count_follows_writes(self, api_client) -> None:
        client, token, _ = api_client
        before = client.get("/api/v1/dashboard", headers=_h(token)).json()["total_ci_types"]
        resp = client.post("/api/v1/ci-types", json={"name": "DashboardRack"}, headers=_h(token))
        assert resp.status_code == 201, resp.text
        after = client.get("/api/v1/dashboard", headers=_h(token)).json()["total_ci_types"]
        assert after == before + 1

    def test_requires_token(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/dashboard")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_failure_is_500_envelope(self, api_client) -> None:
        """When the service cannot produce every count, the route fails as a whole."""
        client, token, _ = api_client
        with patch.object(
            app.state.service,
            "get_dashboard_stats",
            side_effect=InternalError("dashboard statistics unavailable"),
        ):
            resp = client.get("/api/v1/dashboard", headers=_h(token))
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error == {
            "code": "internal_error",
            "message": "dashboard statistics unavailable",
            "detail": None,
        }
