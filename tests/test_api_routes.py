"""
tests/test_api_routes.py -- Integration tests for the Lattice REST API.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> CMDBService -> primary store / graph index / cache / audit -> response model
serialization -> exception handlers. They share one module-scoped app, so each
test creates CIs under names no other test uses.

Coverage:
  - Auth failures: 401 without or with a bad token, 403 for non-admin on admin routes
  - CI types: create 201, 422 for a bad schema, 409 for a breaking schema change / in-use delete
  - CIs: create 201, 422 lists every field problem, 404 unknown type, 409 duplicate,
    list filters, PATCH revalidation, DELETE 204 and 409 while referenced
  - Relationships: create 201, 400 self-reference, 409 duplicate, CI-scoped graph reads
  - Graph analytics: /graph, cycles, most-connected, type usage
  - Audit: entries written per mutation, detail/404, stats, CSV export, cleanup
  - Admin: graph reconcile and drain
  - Error envelope: every failure is {"error": {code, message, detail}}
  - Rate limits: per-route @limiter.limit counts are enforced and answered with 429

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- TestClient with admin JWT
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import User
from auth.tokens import create_access_token

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SERVER_TYPE = {
    "name": "ApiServer",
    "description": "Hosts for API tests",
    "required_attributes": [{"name": "hostname", "type": "string", "validation": {"max_length": 63}}],
    "optional_attributes": [
        {"name": "cpu_cores", "type": "integer", "validation": {"min": 1}},
        {"name": "ip", "type": "string", "validation": {"format": "ipv4"}},
    ],
}


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _unique(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="module")
def server_type(api_client) -> dict:
    """Register the ApiServer CI type once for the module."""
    client, token, _ = api_client
    resp = client.post("/api/v1/ci-types", json=SERVER_TYPE, headers=_h(token))
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture(scope="module")
def user_token(api_client) -> str:
    """JWT for a non-admin user."""
    uid = app.state.user_store.create_user(User(username="plainuser", role="user"))
    return create_access_token(user_id=uid, username="plainuser", role="user")


def _create_ci(client: TestClient, token: str, name: str | None = None, **attributes) -> dict:
    name = name or _unique("host")
    body = {"name": name, "ci_type": "ApiServer", "attributes": {"hostname": name, **attributes}, "tags": ["api"]}
    resp = client.post("/api/v1/ci", json=body, headers=_h(token))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _link(client: TestClient, token: str, source: str, target: str, kind: str = "depends_on") -> dict:
    resp = client.post(
        "/api/v1/relationships",
        json={"source_id": source, "target_id": target, "relationship_type": kind},
        headers=_h(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestApiAuthFailure:
    """Unauthenticated requests to protected API routes must return 401."""

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/ci"),
            ("get", "/api/v1/ci-types"),
            ("get", "/api/v1/relationships"),
            ("get", "/api/v1/graph"),
            ("get", "/api/v1/audit/logs"),
            ("post", "/api/v1/admin/graph/reconcile"),
            ("get", "/docs"),
        ],
    )
    def test_requires_token(self, api_client, method, path) -> None:
        """Protected routes refuse requests without an Authorization header."""
        client, _token, _uid = api_client
        resp = getattr(client, method)(path)
        assert resp.status_code == 401, f"{path}: expected 401, got {resp.status_code}"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_token(self, api_client) -> None:
        """A token that fails signature verification is treated as no token."""
        client, _token, _uid = api_client
        resp = client.get("/api/v1/ci", headers=_h("not-a-jwt"))
        assert resp.status_code == 401

    @pytest.mark.parametrize(
        "method, path",
        [
            ("post", "/api/v1/admin/graph/reconcile"),
            ("post", "/api/v1/admin/graph/drain"),
            ("post", "/api/v1/audit/cleanup"),
            ("delete", "/api/v1/audit/logs/whatever"),
        ],
    )
    def test_admin_routes_forbid_plain_users(self, api_client, user_token, method, path) -> None:
        """Non-admin users get 403 on administrative routes."""
        client, _token, _uid = api_client
        resp = getattr(client, method)(path, headers=_h(user_token))
        assert resp.status_code == 403, f"{path}: expected 403, got {resp.status_code}"
        assert resp.json()["error"]["code"] == "forbidden"

    def test_plain_user_can_read(self, api_client, user_token) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/ci", headers=_h(user_token)).status_code == 200


# ---------------------------------------------------------------------------
# CI types
# ---------------------------------------------------------------------------


class TestCITypeRoutes:
    def test_create_and_get(self, api_client, server_type) -> None:
        client, token, uid = api_client
        assert server_type["created_by"] == str(uid)
        resp = client.get(f"/api/v1/ci-types/{server_type['id']}", headers=_h(token))
        assert resp.status_code == 200
        assert resp.json()["required_attributes"][0]["validation"]["max_length"] == 63

    def test_invalid_definition_is_422(self, api_client) -> None:
        client, token, _ = api_client
        body = {"name": _unique("Bad"), "required_attributes": [{"name": "x", "type": "decimal"}]}
        resp = client.post("/api/v1/ci-types", json=body, headers=_h(token))
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_failed"
        assert error["detail"] == [
            {"field": "required_attributes.x.type", "message": "unsupported attribute type: decimal"}
        ]

    def test_duplicate_is_409(self, api_client, server_type) -> None:
        client, token, _ = api_client
        resp = client.post("/api/v1/ci-types", json=SERVER_TYPE, headers=_h(token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_list_search(self, api_client, server_type) -> None:
        client, token, _ = api_client
        data = client.get("/api/v1/ci-types?search=api tests", headers=_h(token)).json()
        assert [t["name"] for t in data["items"]] == ["ApiServer"]

    def test_breaking_schema_change_is_409(self, api_client, server_type) -> None:
        """Adding a required attribute that existing CIs lack is refused with the offenders listed."""
        client, token, _ = api_client
        ci = _create_ci(client, token)
        required = SERVER_TYPE["required_attributes"] + [{"name": "owner", "type": "string"}]
        resp = client.patch(
            f"/api/v1/ci-types/{server_type['id']}", json={"required_attributes": required}, headers=_h(token)
        )
        assert resp.status_code == 409
        assert ci["id"] in resp.json()["error"]["detail"]["invalid_cis"]

    def test_description_update(self, api_client, server_type) -> None:
        client, token, _ = api_client
        body = {"description": "Hosts for API tests (v2)"}
        resp = client.patch(f"/api/v1/ci-types/{server_type['id']}", json=body, headers=_h(token))
        assert resp.status_code == 200
        assert resp.json()["name"] == "ApiServer"

    def test_delete_lifecycle(self, api_client, server_type) -> None:
        client, token, _ = api_client
        _create_ci(client, token)
        in_use = client.delete(f"/api/v1/ci-types/{server_type['id']}", headers=_h(token))
        assert in_use.status_code == 409, "type with CIs must not be deletable"

        spare = client.post("/api/v1/ci-types", json={"name": _unique("Spare")}, headers=_h(token)).json()
        assert client.delete(f"/api/v1/ci-types/{spare['id']}", headers=_h(token)).status_code == 204
        assert client.get(f"/api/v1/ci-types/{spare['id']}", headers=_h(token)).status_code == 404


# ---------------------------------------------------------------------------
# Configuration items
# ---------------------------------------------------------------------------


class TestCIRoutes:
    def test_create_get_round_trip(self, api_client, server_type) -> None:
        client, token, _ = api_client
        created = _create_ci(client, token, cpu_cores=4)
        for _ in range(2):
            resp = client.get(f"/api/v1/ci/{created['id']}", headers=_h(token))
            assert resp.status_code == 200
            assert resp.json()["attributes"] == created["attributes"]
            assert resp.json()["tags"] == ["api"]

    def test_validation_errors_listed(self, api_client, server_type) -> None:
        """Every field problem appears in error.detail, in a stable order."""
        client, token, _ = api_client
        body = {"name": _unique("bad"), "ci_type": "ApiServer", "attributes": {"cpu_cores": "four", "ip": "x"}}
        resp = client.post("/api/v1/ci", json=body, headers=_h(token))
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"] == [
            {"field": "hostname", "message": "required field is missing"},
            {"field": "cpu_cores", "message": "must be an integer"},
            {"field": "ip", "message": "must be a valid IPv4 address"},
        ]

    def test_unknown_type_is_404(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post("/api/v1/ci", json={"name": "r", "ci_type": "NoSuchType"}, headers=_h(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_duplicate_is_409(self, api_client, server_type) -> None:
        client, token, _ = api_client
        ci = _create_ci(client, token)
        body = {"name": ci["name"], "ci_type": "ApiServer", "attributes": {"hostname": "other"}}
        assert client.post("/api/v1/ci", json=body, headers=_h(token)).status_code == 409

    def test_missing_body_field_is_request_validation_error(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post("/api/v1/ci", json={"ci_type": "ApiServer"}, headers=_h(token))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_list_filters(self, api_client, server_type) -> None:
        client, token, _ = api_client
        marker = _unique("lst")
        _create_ci(client, token, name=f"{marker}-a")
        _create_ci(client, token, name=f"{marker}-b")
        data = client.get(f"/api/v1/ci?search={marker}&sort=name&order=asc&limit=1", headers=_h(token)).json()
        assert [c["name"] for c in data["items"]] == [f"{marker}-a"]
        assert data["pagination"]["total"] == 2
        data = client.get(f"/api/v1/ci?search={marker}&tags=nope,api", headers=_h(token)).json()
        assert data["pagination"]["total"] == 2

    def test_patch_revalidates(self, api_client, server_type) -> None:
        client, token, _ = api_client
        ci = _create_ci(client, token)
        bad = client.patch(f"/api/v1/ci/{ci['id']}", json={"attributes": {"cpu_cores": 2}}, headers=_h(token))
        assert bad.status_code == 422
        good = client.patch(
            f"/api/v1/ci/{ci['id']}",
            json={"attributes": {"hostname": ci["name"], "cpu_cores": 2}, "tags": ["z", "a"]},
            headers=_h(token),
        )
        assert good.status_code == 200
        assert good.json()["tags"] == ["a", "z"]
        assert client.get(f"/api/v1/ci/{ci['id']}", headers=_h(token)).json()["attributes"]["cpu_cores"] == 2

    def test_delete(self, api_client, server_type) -> None:
        client, token, _ = api_client
        ci = _create_ci(client, token)
        assert client.delete(f"/api/v1/ci/{ci['id']}", headers=_h(token)).status_code == 204
        assert client.get(f"/api/v1/ci/{ci['id']}", headers=_h(token)).status_code == 404
        assert client.delete(f"/api/v1/ci/{ci['id']}", headers=_h(token)).status_code == 404


# ---------------------------------------------------------------------------
# Relationships and graph reads
# ---------------------------------------------------------------------------


class TestRelationshipRoutes:
    def test_self_reference_is_400(self, api_client, server_type) -> None:
        client, token, _ = api_client
        ci = _create_ci(client, token)
        resp = client.post(
            "/api/v1/relationships",
            json={"source_id": ci["id"], "target_id": ci["id"], "relationship_type": "depends_on"},
            headers=_h(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_reference"

    def test_duplicate_is_409_and_delete_guard(self, api_client, server_type) -> None:
        client, token, _ = api_client
        a, b = _create_ci(client, token), _create_ci(client, token)
        rel = _link(client, token, a["id"], b["id"])
        dup = client.post(
            "/api/v1/relationships",
            json={"source_id": a["id"], "target_id": b["id"], "relationship_type": "depends_on"},
            headers=_h(token),
        )
        assert dup.status_code == 409
        assert client.delete(f"/api/v1/ci/{b['id']}", headers=_h(token)).status_code == 409
        assert client.delete(f"/api/v1/relationships/{rel['id']}", headers=_h(token)).status_code == 204
        assert client.delete(f"/api/v1/ci/{b['id']}", headers=_h(token)).status_code == 204

    def test_patch_and_list(self, api_client, server_type) -> None:
        client, token, _ = api_client
        a, b = _create_ci(client, token), _create_ci(client, token)
        rel = _link(client, token, a["id"], b["id"], kind="connects_to")
        resp = client.patch(f"/api/v1/relationships/{rel['id']}", json={"attributes": {"port": 443}}, headers=_h(token))
        assert resp.json()["attributes"] == {"port": 443}
        data = client.get(f"/api/v1/relationships?ci_id={b['id']}", headers=_h(token)).json()
        assert [r["id"] for r in data["items"]] == [rel["id"]]

    def test_ci_scoped_graph_reads(self, api_client, server_type) -> None:
        """lb -> app -> db: impact, network and relationships reflect the writes immediately."""
        client, token, _ = api_client
        lb, app_ci, db = (_create_ci(client, token, name=_unique(n)) for n in ("lb", "app", "db"))
        _link(client, token, lb["id"], app_ci["id"])
        _link(client, token, app_ci["id"], db["id"])

        impact = client.get(f"/api/v1/ci/{db['id']}/impact", headers=_h(token)).json()
        assert [(i["id"], i["depth"]) for i in impact["downstream"]] == [(app_ci["id"], 1), (lb["id"], 2)]

        network = client.get(f"/api/v1/ci/{lb['id']}/network?depth=1", headers=_h(token)).json()
        assert {n["id"] for n in network["nodes"]} == {lb["id"], app_ci["id"]}

        edges = client.get(f"/api/v1/ci/{app_ci['id']}/relationships", headers=_h(token)).json()
        assert sorted(e["direction"] for e in edges) == ["incoming", "outgoing"]

        assert client.get("/api/v1/ci/ghost/impact", headers=_h(token)).status_code == 404

    def test_graph_and_analytics(self, api_client, server_type) -> None:
        client, token, _ = api_client
        a, b = _create_ci(client, token), _create_ci(client, token)
        _link(client, token, a["id"], b["id"])
        _link(client, token, b["id"], a["id"])

        graph = client.get("/api/v1/graph?ci_types=ApiServer&limit=500", headers=_h(token)).json()
        assert {a["id"], b["id"]} <= {n["id"] for n in graph["nodes"]}

        cycles = client.get("/api/v1/analytics/cycles", headers=_h(token)).json()
        assert sorted([a["id"], b["id"]]) + [min(a["id"], b["id"])] in cycles["cycles"]
        assert cycles["count"] == len(cycles["cycles"])

        ranked = client.get("/api/v1/analytics/most-connected?limit=3", headers=_h(token)).json()
        assert len(ranked) <= 3

        usage = client.get("/api/v1/analytics/ci-types/usage", headers=_h(token)).json()
        assert usage[0]["ci_type"] == "ApiServer"


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class TestAuditRoutes:
    def test_mutations_are_audited(self, api_client, server_type) -> None:
        client, token, uid = api_client
        ci = _create_ci(client, token)
        client.delete(f"/api/v1/ci/{ci['id']}", headers={**_h(token), "User-Agent": "audit-test/1.0"})

        data = client.get(f"/api/v1/audit/logs?entity_id={ci['id']}&order=asc", headers=_h(token)).json()
        assert [e["action"] for e in data["items"]] == ["create", "delete"]
        deleted = data["items"][1]
        assert deleted["performed_by"] == str(uid)
        assert deleted["user_agent"] == "audit-test/1.0"
        assert deleted["details"]["ci_name"] == ci["name"]

        detail = client.get(f"/api/v1/audit/logs/{deleted['id']}", headers=_h(token))
        assert detail.status_code == 200

    def test_missing_entry_is_404(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.get("/api/v1/audit/logs/nope", headers=_h(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_bad_date_is_422(self, api_client) -> None:
        client, token, _ = api_client
        assert client.get("/api/v1/audit/logs?start_date=03-01-2024", headers=_h(token)).status_code == 422

    def test_stats(self, api_client, server_type) -> None:
        client, token, _ = api_client
        data = client.get("/api/v1/audit/stats?entity_type=ci_type", headers=_h(token)).json()
        assert data["events_by_type"].keys() == {"ci_type"}
        assert data["total_events"] >= 1

    def test_export_csv(self, api_client, server_type) -> None:
        client, token, _ = api_client
        resp = client.get("/api/v1/audit/export?entity_type=ci_type", headers=_h(token))
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["content-disposition"].startswith('attachment; filename="audit_logs_')
        lines = resp.text.strip().split("\n")
        assert lines[0] == "ID,Entity Type,Entity ID,Action,Performed By,Timestamp,IP Address,User Agent"
        assert all('"ci_type"' in line for line in lines[1:])

    def test_cleanup_and_purge(self, api_client, server_type) -> None:
        client, token, _ = api_client
        resp = client.post("/api/v1/audit/cleanup", headers=_h(token))
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 0, "retention_days": 365}
        resp = client.post("/api/v1/audit/cleanup", json={"retention_days": 0}, headers=_h(token))
        assert resp.status_code == 422

        entry_id = client.get("/api/v1/audit/logs?limit=1", headers=_h(token)).json()["items"][0]["id"]
        assert client.delete(f"/api/v1/audit/logs/{entry_id}", headers=_h(token)).status_code == 204
        assert client.delete(f"/api/v1/audit/logs/{entry_id}", headers=_h(token)).status_code == 404


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class TestAdminRoutes:
    def test_reconcile_matches_primary_store(self, api_client, server_type) -> None:
        client, token, _ = api_client
        _create_ci(client, token)
        before = client.get("/api/v1/health").json()
        resp = client.post("/api/v1/admin/graph/reconcile", headers=_h(token))
        assert resp.status_code == 200
        report = resp.json()
        assert report["nodes"] == before["graph_nodes"]
        assert report["edges"] == before["graph_edges"]

    def test_drain_with_nothing_pending(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post("/api/v1/admin/graph/drain", headers=_h(token))
        assert resp.status_code == 200
        assert resp.json() == {"applied": 0, "failed": 0, "divergent": []}


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


@pytest.fixture
def enforced_limits():
    """Turn rate limiting on for one test with empty counters."""
    limiter.reset()
    limiter.enabled = True
    yield limiter
    limiter.enabled = False
    limiter.reset()


class TestRateLimits:
    def test_route_limit_applies(self, api_client, enforced_limits) -> None:
        """POST /admin/graph/reconcile allows 5 calls a minute; the sixth gets 429."""
        client, token, _ = api_client
        statuses = [client.post("/api/v1/admin/graph/reconcile", headers=_h(token)).status_code for _ in range(6)]
        assert statuses == [200] * 5 + [429], f"unexpected statuses: {statuses}"

    def test_limited_response_uses_error_envelope(self, api_client, enforced_limits) -> None:
        client, token, _ = api_client
        for _ in range(5):
            client.post("/api/v1/admin/graph/reconcile", headers=_h(token))
        resp = client.post("/api/v1/admin/graph/reconcile", headers=_h(token))
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in resp.headers
