import pytest
from fastapi.testclient import TestClient

from landedcost.api import security
from landedcost.api.app import create_app

HEADERS = {"X-API-Key": "dev-key"}


@pytest.fixture()
def client(services, monkeypatch):
    monkeypatch.delenv("LC_API_KEYS", raising=False)
    security.set_rate_limit(60)
    with TestClient(create_app(services)) as test_client:
        yield test_client
    security.set_rate_limit(60)


def _chat(client, text, session_id=None):
    payload = {"messages": [{"role": "user", "content": text}]}
    if session_id:
        payload["session_id"] = session_id
    return client.post("/api/chat", json=payload, headers=HEADERS)


def test_health_reports_sources(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["tariff_source"] is True
    assert body["index_codes"] == 4
    assert response.headers["X-Turn-ID"]


def test_chat_requires_api_key(client):
    payload = {"messages": [{"role": "user", "content": "hola"}]}

    missing = client.post("/api/chat", json=payload)
    assert missing.status_code == 401
    assert missing.json()["detail"]["message"] == "Missing API key"

    wrong = client.post("/api/chat", json=payload, headers={"X-API-Key": "nope"})
    assert wrong.status_code == 401
    assert wrong.json()["detail"]["message"] == "Invalid API key"


def test_configured_keys_replace_dev_key(client, monkeypatch):
    monkeypatch.setenv("LC_API_KEYS", "k1, k2")

    assert _chat(client, "hola").status_code == 401
    ok = client.post("/api/chat", json={"messages": []}, headers={"X-API-Key": "k2"})
    assert ok.status_code == 200


def test_chat_turns_and_session_lookup(client):
    first = _chat(client, "quiero importar un ascensor")
    assert first.status_code == 200
    body = first.json()
    assert body["stage"] == "awaiting_price"
    assert body["question"]["slot"] == "price"
    assert first.headers["X-Turn-ID"]

    session_id = body["session_id"]
    second = _chat(client, "USD 500 x 10", session_id)
    assert second.json()["stage"] == "quoted"
    assert second.json()["cost_breakdown"]["quantity"] == 10

    stored = client.get(f"/api/sessions/{session_id}", headers=HEADERS)
    assert stored.status_code == 200
    assert stored.json()["version"] == 2
    assert stored.json()["product"]["title"] == "un ascensor"


def test_unknown_session_is_404(client):
    response = client.get("/api/sessions/missing", headers=HEADERS)
    assert response.status_code == 404


def test_validation_errors_are_normalized(client):
    response = client.post(
        "/api/chat",
        json={"messages": [{"role": "robot", "content": "hola"}], "extra": 1},
        headers=HEADERS,
    )
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "VALIDATION_ERROR"
    paths = {field["path"] for field in body["fields"]}
    assert "request.messages.0.role" in paths
    assert "request.extra" in paths


def test_rate_limit_is_per_route(client):
    security.set_rate_limit(2)

    assert _chat(client, "hola").status_code == 200
    assert _chat(client, "hola").status_code == 200
    limited = _chat(client, "hola")
    assert limited.status_code == 429
    assert limited.json()["detail"]["limit_per_minute"] == 2
    assert int(limited.headers["Retry-After"]) >= 1

    assert client.get("/api/fx", headers=HEADERS).status_code == 200


def test_tariff_search_merges_sources(client):
    response = client.get("/api/tariff/search", params={"q": "autoelevador"}, headers=HEADERS)
    assert response.status_code == 200
    codes = [c["code"] for c in response.json()["candidates"]]
    assert codes[0] == "8427.10.19"
    assert len(codes) == len(set(codes))

    short = client.get("/api/tariff/search", params={"q": "a"}, headers=HEADERS)
    assert short.status_code == 422
    assert short.json()["fields"][0]["path"] == "request.query.q"


def test_tariff_detail_lookup(client):
    found = client.get("/api/tariff/codes/84271019", headers=HEADERS)
    assert found.status_code == 200
    assert found.json()["code"] == "8427.10.19"

    assert client.get("/api/tariff/codes/abc", headers=HEADERS).status_code == 422
    assert client.get("/api/tariff/codes/8427.90.00", headers=HEADERS).status_code == 404


def test_exchange_rate(client):
    response = client.get("/api/fx", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"local_per_usd": 1150.0, "source": "env", "fetched_at": 0.0}
