import json
from pathlib import Path
from typing import Iterator

import pytest
from starlette.testclient import TestClient

from app.app import create_app
from app.config import Config
from conftest import GeminiStub, make_client
from domain.services import Backend


HTML_DIR = Path(__file__).parent.parent / "assets" / "html"


RECIPE = {
    "description": "STEM access",
    "prompt": "Describe our after-school coding club.",
    "inputParams": [{"key": "Org", "value": "Code Club"}],
    "outputFields": [
        {"label": "Summary", "max": 150, "limitType": "words"},
        {"label": "Budget", "max": 400, "limitType": "chars"},
    ],
}


@pytest.fixture
def gemini() -> GeminiStub:
    return GeminiStub(
        json.dumps({"Summary": "We **teach** coding.<script>alert(1)</script>", "Budget": "$10k"})
    )


@pytest.fixture
def client(tmp_path: Path, gemini: GeminiStub) -> Iterator[TestClient]:
    conf = Config(backend=Backend.local, local_storage_dir=tmp_path, html_dir=HTML_DIR)
    app = create_app(conf, llm=make_client(gemini=gemini))
    with TestClient(app) as client:
        yield client


def test_create_and_list(client: TestClient) -> None:
    resp = client.post("/api/recipes", json=RECIPE | {"tokenCount": 1})
    assert resp.status_code == 201
    created = resp.json()
    assert created["id"]
    assert created["tokenCount"] == 10
    assert created["modelType"] == "gemini-2.5-flash"

    second = client.post("/api/recipes", json={"description": "Youth arts"}).json()

    listed = client.get("/api/recipes").json()
    assert [r["id"] for r in listed] == [second["id"], created["id"]]
    assert client.get(f"/api/recipes/{created['id']}").json() == created


def test_create_empty_recipe_rejected(client: TestClient) -> None:
    resp = client.post("/api/recipes", json={})
    assert resp.status_code == 422
    assert client.get("/api/recipes").json() == []


def test_bad_json(client: TestClient) -> None:
    resp = client.post("/api/recipes", content=b"[1, 2]")
    assert resp.status_code == 422
    assert "error" in resp.json()


def test_update_and_delete(client: TestClient) -> None:
    created = client.post("/api/recipes", json=RECIPE).json()

    resp = client.patch(f"/api/recipes/{created['id']}", json={"prompt": "abcd"})
    assert resp.status_code == 200
    assert resp.json()["tokenCount"] == 1

    assert client.patch("/api/recipes/missing", json={"prompt": "x"}).status_code == 404

    assert client.delete(f"/api/recipes/{created['id']}").status_code == 204
    assert client.delete(f"/api/recipes/{created['id']}").status_code == 204
    assert client.get(f"/api/recipes/{created['id']}").status_code == 404


def test_generate_flow(client: TestClient, gemini: GeminiStub) -> None:
    created = client.post("/api/recipes", json=RECIPE).json()
    url = f"/api/recipes/{created['id']}"

    resp = client.post(f"{url}/generate")
    assert resp.status_code == 400
    assert "Gemini API key missing" in resp.json()["error"]
    assert gemini.requests == []

    keys = client.put("/api/settings/api-keys", json={"geminiApiKey": "gemini-key"})
    assert keys.json() == {"geminiApiKey": True, "openaiApiKey": False}

    resp = client.post(f"{url}/generate")
    assert resp.status_code == 200
    body = resp.json()
    assert body["result"]["structured"]["Budget"] == "$10k"
    assert body["recipe"]["locked"] is True

    resp = client.patch(url, json={"prompt": "changed"})
    assert resp.status_code == 409
    assert client.get(url).json()["prompt"] == RECIPE["prompt"]

    page = client.get(f"/grant-recipes/{created['id']}")
    assert page.status_code == 200
    assert "<strong>teach</strong>" in page.text
    assert "<script>" not in page.text
    assert "Locked" in page.text

    clone = client.post(f"{url}/clone")
    assert clone.status_code == 201
    assert clone.json()["description"] == "STEM access (copy)"
    assert clone.json()["locked"] is False


def test_provider_failure_is_generic(client: TestClient, gemini: GeminiStub) -> None:
    gemini.status_code = 500
    created = client.post("/api/recipes", json=RECIPE).json()
    client.put("/api/settings/api-keys", json={"geminiApiKey": "gemini-key"})

    resp = client.post(f"/api/recipes/{created['id']}/generate")

    assert resp.status_code == 502
    assert "API key not valid" not in resp.text
    assert client.get(f"/api/recipes/{created['id']}").json()["locked"] is False


def test_pages(client: TestClient) -> None:
    client.post("/api/recipes", json=RECIPE)
    home = client.get("/")
    assert home.status_code == 200
    assert "STEM access" in home.text
    assert client.get("/grant-recipes/missing").status_code == 404


def test_remote_backend_needs_user(tmp_path: Path) -> None:
    conf = Config(
        backend=Backend.remote,
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'granter.db'}",
        html_dir=HTML_DIR,
    )
    app = create_app(conf, llm=make_client())
    with TestClient(app) as client:
        resp = client.post("/api/recipes", json=RECIPE)
        assert resp.status_code == 401
        assert resp.json()["error"].startswith("Sign in")
        assert client.get("/api/recipes").json() == []

        headers = {"X-User-Id": "alice"}
        created = client.post("/api/recipes", json=RECIPE, headers=headers)
        assert created.status_code == 201
        assert len(client.get("/api/recipes", headers=headers).json()) == 1
        assert client.get("/api/recipes", headers={"X-User-Id": "bob"}).json() == []


def test_create_keeps_snake_case_model_type(client: TestClient) -> None:
    resp = client.post(
        "/api/recipes", json={"description": "d", "prompt": "p", "model_type": "gpt-5.1"}
    )
    assert resp.status_code == 201
    assert resp.json()["modelType"] == "gpt-5.1"
