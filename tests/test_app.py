import pytest
from fastapi.testclient import TestClient

from cuelayer import __version__
from cuelayer.config import CueConfig
from cuelayer.main import app


@pytest.fixture
def client():
    app.state.config = CueConfig(bridge_transport="udp", bridge_port=0, cue_text_mode="NAME_ONLY")
    with TestClient(app) as test_client:
        yield test_client


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "Cue Layer", "version": __version__}


def test_health_reports_session_status(client):
    response = client.get("/health")

    body = response.json()
    assert body["ok"] is True
    assert body["status"]["cueTextMode"] == "NAME_ONLY"
    assert body["status"]["isPlaying"] is False
    assert body["status"]["markerCount"] == 0


def test_websocket_sends_initial_state_and_status_updates(client):
    with client.websocket_connect("/ws") as ws:
        initial = ws.receive_json()
        assert initial["type"] == "initial"
        assert initial["markers"] == []

        ws.send_json({"type": "set_bpm", "bpm": 500})
        status = ws.receive_json()
        assert status["type"] == "status"
        assert status["status"]["bpm"] == 300.0
