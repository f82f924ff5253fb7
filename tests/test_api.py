import json

import pytest
from fastapi.testclient import TestClient

from mnemo.api import create_app
from tests.conftest import FakeGenerator


@pytest.fixture
def client(engine):
    return TestClient(create_app(mnemo=engine))


def _index(client):
    body = {
        "units": [
            {"source_path": "a.md", "text": "Alpha about vectors", "header_path": ["a"]},
            {"source_path": "b.md", "text": "Beta about sqlite", "sequence_order": 0},
        ]
    }
    return client.post("/index", json=body)


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "mnemo"}


def test_index_and_search(client):
    response = _index(client)
    assert response.status_code == 200
    assert response.json() == {"num_added": 2, "num_skipped": 0, "num_deleted": 0}

    response = client.post("/search", json={"query": "vectors", "k": 5})
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert {r["source_path"] for r in data["results"]} == {"a.md", "b.md"}


def test_run_streams_ndjson(client):
    _index(client)
    response = client.post("/run", json={"query": "vectors"})
    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[0] == {"status": "retrieving"}
    assert events[-1] == {"status": "generating", "content": "abcd"}


def test_blank_query_maps_to_422(client):
    response = client.post("/run", json={"query": " "})
    assert response.status_code == 422
    assert response.json()["error_type"] == "UserInputError"


def test_threshold_out_of_range_rejected(client):
    assert client.put("/settings/similarity-threshold", json={"similarity_threshold": 1.5}).status_code == 422
    response = client.put("/settings/similarity-threshold", json={"similarity_threshold": 0.4})
    assert response.status_code == 200


def test_snapshot_download_and_upload(client):
    _index(client)
    payload = client.get("/snapshot").content
    client.post("/sources/delete", json={"sources": ["a.md", "b.md"]})
    assert client.get("/stats").json()["vectors"] == 0

    response = client.put("/snapshot", content=payload)
    assert response.status_code == 200
    assert client.get("/stats").json()["vectors"] == 2


def test_bad_snapshot_maps_to_400(client):
    response = client.put("/snapshot", content=b"garbage")
    assert response.status_code == 400
    assert response.json()["error_type"] == "ConfigurationError"


def test_reconcile(client):
    _index(client)
    assert client.post("/reconcile").json() == {"orphan_vectors": 0, "orphan_records": 0}


class FailingGenerator(FakeGenerator):
    def _stream(self, prompt):
        yield "par"
        raise RuntimeError("connection reset")


def test_run_failure_after_start_ends_with_error_line(client, engine):
    _index(client)
    engine.pipeline.generator = FailingGenerator()
    response = client.post("/run", json={"query": "vectors"})
    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[-2] == {"status": "generating", "content": "par"}
    assert events[-1]["status"] == "error"
    assert events[-1]["error"]["error_type"] == "ProviderError"


def test_run_in_conversation_mode(client):
    response = client.post("/run", json={"query": "hi", "chat_history": "earlier", "mode": "conversation"})
    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[-1] == {"status": "generating", "content": "abcd"}


def test_unknown_run_mode_maps_to_400(client):
    response = client.post("/run", json={"query": "hi", "mode": "agent"})
    assert response.status_code == 400
    assert response.json()["error_type"] == "ConfigurationError"
