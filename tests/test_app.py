from __future__ import annotations

from conftest import ScriptedGateway, generation_failure
from fastapi.testclient import TestClient

from cadence_worker.app.main import create_app
from cadence_worker.app.settings import Settings
from cadence_worker.services.exceptions import GenerationError


def _client(settings: Settings, gateway: ScriptedGateway) -> TestClient:
    return TestClient(create_app(settings, gateway=gateway))  # type: ignore[arg-type]


def test_create_app(settings: Settings) -> None:
    app = create_app(settings, gateway=ScriptedGateway())  # type: ignore[arg-type]
    assert app.title == "Cadence Worker"


def test_health_endpoint(settings: Settings) -> None:
    gateway = ScriptedGateway()
    with _client(settings, gateway) as client:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["provider"] == "scripted"
        assert body["locality"] == "cloud"
        assert body["local"] is None
        assert body["trace_enabled"] is False
    assert gateway.closed


def test_categories_endpoint(settings: Settings) -> None:
    with _client(settings, ScriptedGateway()) as client:
        body = client.get("/categories").json()
    assert {entry["id"] for entry in body} == {
        "lofi-study",
        "cafe-coffeeshop",
        "ambient-focus",
        "latenight-chill",
        "cozy-rainy",
        "lofi-chill",
    }


def test_generate_category_with_seed_is_stable(settings: Settings) -> None:
    payload = {"request": {"category": "lofi-study"}, "seed": 42, "trace": True}
    with _client(settings, ScriptedGateway()) as client:
        first = client.post("/generate", json=payload)
        second = client.post("/generate", json=payload)
    assert first.status_code == 200
    body = first.json()
    assert body["text"] == second.json()["text"]
    assert body["title"] == second.json()["title"]
    assert "lyrics" not in body
    assert body["trace"]["rng"]["seed"] == 42
    assert body["trace"]["stats"]["persisted_bytes"] > 0


def test_generate_rejects_invalid_input(settings: Settings) -> None:
    gateway = ScriptedGateway()
    payload = {"request": {"style_tags": ["a", "b", "c", "d", "e"]}}
    with _client(settings, gateway) as client:
        response = client.post("/generate", json=payload)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_input"
    assert body["field"] == "style_tags"
    assert gateway.calls == []


def test_generation_failure_maps_to_bad_gateway(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": [generation_failure("generate.style")]})
    payload = {"request": {"description": "city lights"}, "trace": True}
    with _client(settings, gateway) as client:
        response = client.post("/generate", json=payload)
    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "generation"
    assert body["stage"] == "generate.style"
    assert body["trace"]["stats"]["had_errors"] is True


def test_timeout_maps_to_gateway_timeout(settings: Settings) -> None:
    failure = GenerationError("generate.style", attempts=3, timed_out=True)
    gateway = ScriptedGateway({"generate.style": [failure]})
    with _client(settings, gateway) as client:
        response = client.post("/generate", json={"request": {"description": "city lights"}})
    assert response.status_code == 504
    assert "trace" not in response.json()


def test_parse_failure_maps_to_bad_gateway(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": ["not json at all"]})
    with _client(settings, gateway) as client:
        response = client.post("/generate", json={"request": {"description": "city lights"}})
    assert response.status_code == 502
    assert response.json()["error"] == "parse"


def test_refine_direct_without_feedback(settings: Settings) -> None:
    payload = {
        "prior": {"text": "old", "title": "Kept Title", "lyrics": "kept lyrics"},
        "feedback": "",
        "request": {"style_tags": ["jazz"], "with_lyrics": True},
    }
    gateway = ScriptedGateway()
    with _client(settings, gateway) as client:
        response = client.post("/refine", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Kept Title"
    assert body["lyrics"] == "kept lyrics"
    assert gateway.calls == []


def test_remix_genre_keeps_other_fields(settings: Settings) -> None:
    payload = {
        "prior": {
            "text": 'genre: "jazz"\nbpm: "between 90 and 120"\ninstruments: "upright bass"',
            "title": "Blue Hour",
        },
        "field": "genre",
        "seed": 1,
        "trace": True,
    }
    gateway = ScriptedGateway()
    with _client(settings, gateway) as client:
        response = client.post("/remix", json=payload)
        again = client.post("/remix", json=payload)
    assert response.status_code == 200
    body = response.json()
    lines = body["text"].splitlines()
    assert lines[0].startswith('genre: "')
    assert lines[0] != 'genre: "jazz"'
    assert lines[2] == 'instruments: "upright bass"'
    assert body["title"] == "Blue Hour"
    assert "lyrics" not in body
    assert body["trace"]["action"] == "remix"
    assert again.json()["text"] == body["text"]
    assert gateway.calls == []


def test_remix_rejects_unknown_field(settings: Settings) -> None:
    payload = {"prior": {"text": "Genre: jazz"}, "field": "tempo"}
    with _client(settings, ScriptedGateway()) as client:
        response = client.post("/remix", json=payload)
    assert response.status_code == 422


def test_remix_empty_prompt_is_invalid_input(settings: Settings) -> None:
    payload = {"prior": {"text": "   "}, "field": "mood"}
    with _client(settings, ScriptedGateway()) as client:
        response = client.post("/remix", json=payload)
    assert response.status_code == 400
    assert response.json()["field"] == "prior.text"
