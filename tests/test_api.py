"""Tests for the data-move HTTP API."""

import pytest
from fastapi.testclient import TestClient

from datamove.api.main import app
from datamove.api.storage import data_move_storage


@pytest.fixture
def client():
    data_move_storage.clear()
    yield TestClient(app)
    data_move_storage.clear()


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestDataMoves:
    """Tests for starting and inspecting data moves."""

    def test_missing_script_fails_run(self, client, tmp_path):
        response = client.post("/api/data-moves", json={"config_path": str(tmp_path / "missing.json")})

        assert response.status_code == 202
        run_id = response.json()["id"]

        # TestClient runs background tasks before returning
        run = client.get(f"/api/data-moves/{run_id}").json()
        assert run["status"] == "failed"
        assert run["errors"][0]["stage"] == "loading"
        assert "not found" in run["errors"][0]["error"]
        assert run["steps"][0]["name"] == "Load script"
        assert run["steps"][0]["status"] == "failed"

    def test_endpoint_settings_are_applied(self, client, tmp_path, write_script):
        path = write_script(objects=[{"query": "SELECT Id FROM Account", "operation": "Insert"}])

        response = client.post("/api/data-moves", json={
            "config_path": str(path),
            "source": {"csv_dir": str(tmp_path / "source")},
            "target": {"csv_dir": str(tmp_path / "target")},
            "report_level": "All",
        })

        run = client.get(f"/api/data-moves/{response.json()['id']}").json()
        assert run["status"] == "failed"
        assert "entity schemas" in run["errors"][0]["error"]
        assert "datamove_report_" in run["report_path"]

    def test_invalid_report_level_is_rejected(self, client):
        response = client.post("/api/data-moves", json={"report_level": "Everything"})
        assert response.status_code == 422

    def test_list_data_moves(self, client, tmp_path):
        client.post("/api/data-moves", json={"config_path": str(tmp_path / "a.json")})
        client.post("/api/data-moves", json={"config_path": str(tmp_path / "b.json")})

        response = client.get("/api/data-moves")

        assert response.status_code == 200
        assert response.json()["total"] == 2
        assert len(response.json()["data_moves"]) == 2

    def test_unknown_data_move(self, client):
        response = client.get("/api/data-moves/does-not-exist")
        assert response.status_code == 404
        assert response.json()["detail"] == "Data move not found"
