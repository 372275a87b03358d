"""
API tests using FastAPI's TestClient.

The module-level store and service in formula_engine.main are swapped for
a per-test database and a FakeGateway-backed service.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import VALID_ADDITIONS, VALID_TOTAL_MG, FakeGateway, build_payload, completion, stream_chunks
from formula_engine import main
from formula_engine.services.formula_service import FormulaService
from formula_engine.services.provider_gateway import ProviderFatalError, ProviderTransientError

GENERATE_BODY = {
    "user_id": "user-42",
    "health_profile": {"age": 42, "goals": ["better sleep"]},
    "messages": [{"role": "user", "content": "I want better sleep"}],
}


@pytest.fixture
def api(store, validator, catalog, monkeypatch):
    """TestClient plus a hook to queue provider results."""
    gateway = FakeGateway()
    service = FormulaService(gateway, store, validator=validator, catalog=catalog)
    monkeypatch.setattr(main, "formula_store", store)
    monkeypatch.setattr(main, "formula_service", service)
    client = TestClient(main.app)
    client.gateway = gateway
    return client


def generate(api, **overrides):
    api.gateway.results.append(completion(build_payload()))
    response = api.post("/formulas/generate", json={**GENERATE_BODY, **overrides})
    assert response.status_code == 200
    return response.json()["formula"]


class TestServiceEndpoints:

    def test_root(self, api):
        response = api.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, api):
        data = api.get("/health").json()
        assert data["status"] == "healthy"
        assert data["provider"]["name"] in ("anthropic", "openai")
        assert data["catalog_version"]

    def test_models(self, api):
        data = api.get("/models").json()
        assert set(data["providers"]) == {"anthropic", "openai"}
        assert data["active_model"] in data["providers"][data["active_provider"]]["models"]


class TestCatalogEndpoints:

    def test_catalog_listing(self, api):
        data = api.get("/catalog").json()
        assert data["count"] == len(data["entries"])
        assert data["entries"][0]["name"] == "Adrenal Support"

    def test_normalize_decorated_name(self, api):
        response = api.post("/catalog/normalize", json={"name": "Ashwagandha Extract 5%"})
        assert response.status_code == 200
        assert response.json()["canonical_name"] == "Ashwagandha"

    def test_normalize_unknown_name(self, api):
        data = api.post("/catalog/normalize", json={"name": "Unicorn Root Extract"}).json()
        assert data["canonical_name"] is None
        assert data["attempted"] == "Unicorn"


class TestGenerateEndpoint:

    def test_accepted(self, api):
        api.gateway.results.append(completion(build_payload()))

        response = api.post("/formulas/generate", json=GENERATE_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["formula"]["total_mg"] == VALID_TOTAL_MG
        assert data["formula"]["version"] == 1

    def test_rejected_is_not_an_http_error(self, api):
        bad = build_payload(additions=VALID_ADDITIONS + [
            {"ingredient": "Unicorn Root Extract", "amount": 100, "unit": "mg"},
        ])
        api.gateway.results.extend([completion(bad), completion(bad)])

        response = api.post("/formulas/generate", json=GENERATE_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "rejected"
        assert data["failure"]["violations"][0]["code"] == "UNRESOLVED_INGREDIENT"

    def test_invalid_capsule_count(self, api):
        response = api.post("/formulas/generate", json={**GENERATE_BODY, "capsule_count": 7})
        assert response.status_code == 400
        assert api.gateway.calls == []

    def test_provider_unavailable(self, api):
        api.gateway.results.append(ProviderTransientError("overloaded", provider="anthropic", status_code=529))
        response = api.post("/formulas/generate", json=GENERATE_BODY)
        assert response.status_code == 503

    def test_provider_rejected_request(self, api):
        api.gateway.results.append(ProviderFatalError("invalid key", provider="anthropic", status_code=401))
        response = api.post("/formulas/generate", json=GENERATE_BODY)
        assert response.status_code == 502


class TestStreamEndpoint:

    def test_streams_text_then_formula(self, api):
        api.gateway.streams.append(stream_chunks(build_payload()))

        response = api.post("/formulas/generate/stream", json=GENERATE_BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = response.text
        assert body.index("event: text") < body.index("event: formula")
        assert '"total_mg": 2135' in body

    def test_provider_failure_becomes_error_event(self, api):
        api.gateway.streams.append([ProviderTransientError("connection reset", provider="anthropic")])

        response = api.post("/formulas/generate/stream", json=GENERATE_BODY)

        assert "event: error" in response.text
        assert '"retriable": true' in response.text

    def test_invalid_user_rejected_before_streaming(self, api):
        response = api.post("/formulas/generate/stream", json={**GENERATE_BODY, "user_id": "bad user"})
        assert response.status_code == 400


class TestLifecycleEndpoints:

    def test_current_and_history(self, api):
        first = generate(api)
        second = generate(api)

        assert api.get("/users/user-42/formulas/current").json()["id"] == second["id"]
        versions = [f["version"] for f in api.get("/users/user-42/formulas").json()]
        assert versions == [2, 1]
        active = api.get("/users/user-42/formulas", params={"include_archived": False}).json()
        assert [f["id"] for f in active] == [second["id"]]
        assert [f["id"] for f in api.get("/users/user-42/formulas/archived").json()] == [first["id"]]
        assert api.get("/users/user-42/formulas/versions/1").json()["id"] == first["id"]

    def test_archive_and_restore(self, api):
        first = generate(api)
        generate(api)

        restored = api.post(f"/formulas/{first['id']}/restore")

        assert restored.status_code == 200
        assert restored.json()["archived_at"] is None
        assert api.get("/users/user-42/formulas/current").json()["id"] == first["id"]

        archived = api.post(f"/formulas/{first['id']}/archive")
        assert archived.json()["archived_at"] is not None

    def test_customize(self, api):
        formula = generate(api)

        response = api.post(
            f"/formulas/{formula['id']}/customize",
            json={"added_individuals": [{"ingredient": "GABA", "amount": 150}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["formula"]["version"] == 2
        assert data["formula"]["total_mg"] == VALID_TOTAL_MG + 150

    def test_customize_with_nothing_added(self, api):
        formula = generate(api)
        response = api.post(f"/formulas/{formula['id']}/customize", json={})
        assert response.status_code == 400

    def test_rename(self, api):
        formula = generate(api)

        response = api.post(f"/formulas/{formula['id']}/rename", json={"name": "Night Routine"})

        assert response.json()["name"] == "Night Routine"
        assert api.post(f"/formulas/{formula['id']}/rename", json={"name": "<b>x</b>"}).status_code == 400

    def test_change_log(self, api):
        formula = generate(api)

        changes = api.get(f"/formulas/{formula['id']}/changes").json()

        assert changes[0]["description"].startswith("Formula v1 created")

    def test_not_found(self, api):
        assert api.get("/formulas/missing").status_code == 404
        assert api.get("/formulas/missing/changes").status_code == 404
        assert api.post("/formulas/missing/archive").status_code == 404
        assert api.post("/formulas/missing/restore").status_code == 404
        assert api.get("/users/user-42/formulas/current").status_code == 404
        assert api.get("/users/user-42/formulas/versions/3").status_code == 404


class TestAnalyticsEndpoints:

    def test_popularity_and_insights(self, api):
        generate(api)
        generate(api, user_id="user-7")

        popularity = api.get("/analytics/popularity", params={"limit": 3}).json()
        insights = api.get("/analytics/insights").json()

        assert len(popularity) == 3
        assert all(p["formula_count"] == 2 for p in popularity)
        assert insights["total_formulas"] == 2
        assert insights["active_formulas"] == 2
        assert insights["avg_mg_per_formula"] == VALID_TOTAL_MG


class LoopCheckingStore:
    """Wraps a store and records, per call, whether it ran on the event loop."""

    def __init__(self, store):
        self._store = store
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self._store, name)

        def call(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                on_loop = True
            except RuntimeError:
                on_loop = False
            self.calls.append((name, on_loop))
            return method(*args, **kwargs)

        return call


class TestStoreAccessOffEventLoop:
    """Read endpoints hand SQLite work to worker threads."""

    def test_reads_never_run_on_the_event_loop(self, api, store, monkeypatch):
        formula = generate(api)
        checking = LoopCheckingStore(store)
        monkeypatch.setattr(main, "formula_store", checking)

        paths = [
            "/users/user-42/formulas/current",
            "/users/user-42/formulas",
            "/users/user-42/formulas/archived",
            "/users/user-42/formulas/versions/1",
            f"/formulas/{formula['id']}",
            f"/formulas/{formula['id']}/changes",
            "/analytics/popularity",
            "/analytics/insights",
        ]
        for path in paths:
            assert api.get(path).status_code == 200

        called = {name for name, _ in checking.calls}
        assert {"get_current", "history", "archived", "get_by_version", "get",
                "list_changes", "ingredient_popularity", "insights"} <= called
        assert not any(on_loop for _, on_loop in checking.calls)
