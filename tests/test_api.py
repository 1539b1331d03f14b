from __future__ import annotations

from fastapi.testclient import TestClient

from mneme.api import routes
from mneme.api.routes import create_app
from mneme.config import APIConfig, ChatConfig, Config, VectorConfig

USER = {"X-User-ID": "u1"}


def _config(tmp_path, token: str = "", default_user: str = "") -> Config:
    return Config(
        data_dir=tmp_path,
        vector=VectorConfig(enabled=False),
        chat=ChatConfig(provider=""),
        api=APIConfig(bearer_token=token, default_user=default_user),
    )


def test_health_and_user_header(tmp_path):
    app = create_app(config=_config(tmp_path))
    with TestClient(app) as client:
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

        missing = client.get("/api/v1/stats")
        assert missing.status_code == 400
        assert missing.json()["error"] == "ValidationError"

        stats = client.get("/api/v1/stats", headers=USER)
        assert stats.status_code == 200
        assert stats.json()["total_memories"] == 0


def test_default_user_fills_missing_header(tmp_path):
    app = create_app(config=_config(tmp_path, default_user="me"))
    with TestClient(app) as client:
        assert client.get("/api/v1/stats").status_code == 200


def test_bearer_token_required(tmp_path):
    app = create_app(config=_config(tmp_path, token="s3cret"))
    with TestClient(app) as client:
        assert client.get("/api/v1/health").status_code == 200
        assert client.get("/api/v1/stats", headers=USER).status_code == 401
        wrong = {**USER, "Authorization": "Bearer nope"}
        assert client.get("/api/v1/stats", headers=wrong).status_code == 401
        ok = {**USER, "Authorization": "Bearer s3cret"}
        assert client.get("/api/v1/stats", headers=ok).status_code == 200


def test_remember_recall_forget_flow(tmp_path):
    app = create_app(config=_config(tmp_path))
    with TestClient(app) as client:
        stored = client.post(
            "/api/v1/remember", headers=USER,
            json={"text": "I love hiking in Yosemite. The mountains are beautiful."},
        )
        assert stored.status_code == 200
        assert stored.json()["stored"] >= 1

        recalled = client.post("/api/v1/recall", headers=USER, json={"query": "hiking"})
        assert recalled.status_code == 200
        memories = recalled.json()["memories"]
        assert any("hiking" in m["content"] for m in memories)
        memory_id = memories[0]["id"]

        pending = client.post("/api/v1/forget", headers=USER, json={"type": "memory", "id": memory_id})
        assert pending.json()["confirm_required"] is True

        done = client.post(
            "/api/v1/forget", headers=USER,
            json={"type": "memory", "id": memory_id, "confirm": True},
        )
        assert done.json()["deleted"] is True

        unsupported = client.post(
            "/api/v1/forget", headers=USER,
            json={"type": "entity", "id": "ent_1", "confirm": True},
        )
        assert unsupported.status_code == 400


def test_entities_and_validation_errors(tmp_path):
    app = create_app(config=_config(tmp_path))
    with TestClient(app) as client:
        created = client.post("/api/v1/entities", headers=USER, json={"name": "Lisbon", "type": "place"})
        assert created.status_code == 200
        assert created.json()["created"] is True

        listed = client.get("/api/v1/entities", headers=USER, params={"entity_type": "place"})
        assert [e["name"] for e in listed.json()["entities"]] == ["Lisbon"]

        bad = client.get("/api/v1/entities", headers=USER, params={"entity_type": "planet"})
        assert bad.status_code == 400

        unknown = client.get("/api/v1/entities/Zed", headers=USER)
        assert unknown.json() == {"found": False, "message": "I don't know anything about 'Zed'"}

        bad_range = client.post("/api/v1/recall", headers=USER, json={"query": "x", "time_range": "fortnight"})
        assert bad_range.status_code == 400


def test_path_errors_map_to_404(tmp_path):
    app = create_app(config=_config(tmp_path))
    with TestClient(app) as client:
        client.post("/api/v1/remember", headers=USER, json={"text": "Alice works at TechCorp."})
        found = client.post("/api/v1/path", headers=USER, json={"source": "Alice", "target": "TechCorp"})
        assert found.status_code == 200
        assert found.json()["hops"] == 1

        client.post("/api/v1/entities", headers=USER, json={"name": "Lisbon", "type": "place"})
        no_path = client.post("/api/v1/path", headers=USER, json={"source": "Alice", "target": "Lisbon"})
        assert no_path.status_code == 404
        assert no_path.json()["error"] == "NoPathError"

        missing = client.post("/api/v1/path", headers=USER, json={"source": "Alice", "target": "Atlantis"})
        assert missing.status_code == 404

        too_deep = client.post(
            "/api/v1/path", headers=USER,
            json={"source": "Alice", "target": "TechCorp", "max_depth": 50},
        )
        assert too_deep.status_code == 422


def test_background_remember_is_drained_on_shutdown(tmp_path):
    app = create_app(config=_config(tmp_path))
    with TestClient(app) as client:
        queued = client.post(
            "/api/v1/remember", headers=USER,
            json={"text": "Alice works at TechCorp.", "background": True},
        )
        assert queued.json() == {"queued": True}
    assert routes.get_engine().store.get_entity_by_name("u1", "TechCorp") is not None
