from collections.abc import Iterator
from pathlib import Path

from fastapi.testclient import TestClient
import pytest

from kbase.main import app


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[TestClient]:
    monkeypatch.setenv("KB_DATA_DIR", str(tmp_path / "api-data"))
    monkeypatch.setenv("KB_EMBEDDING_DIM", "64")
    with TestClient(app) as test_client:
        yield test_client


def _ingest(client: TestClient, source_id: str, documents: list[dict[str, str]]) -> str:
    response = client.post("/ingest", json={"source_id": source_id, "documents": documents})
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    app.state.engine.wait_for_job(job_id, timeout=30)
    return job_id


def test_health_reports_counts(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "documents": 0, "chunks": 0, "jobs": 0}


def test_ingest_then_search_and_browse(client: TestClient) -> None:
    job_id = _ingest(
        client,
        "manuals",
        [
            {"content": "Pump maintenance checklist: seals, oil, pressure.", "file_path": "pump.md"},
            {"content": "Quarterly revenue forecast.", "file_path": "finance.txt"},
        ],
    )

    job = client.get(f"/jobs/{job_id}").json()
    assert job["status"] == "done"
    assert (job["total"], job["completed"], job["failed"]) == (2, 2, 0)

    documents = client.get(f"/jobs/{job_id}/docs").json()
    assert [document["status"] for document in documents] == ["done", "done"]
    assert [job["job_id"] for job in client.get("/jobs").json()] == [job_id]

    search = client.post("/search", json={"query": "pump seals", "limit": 1})
    assert search.status_code == 200
    [hit] = search.json()["results"]
    assert hit["file_path"] == "pump.md"
    assert hit["source_id"] == "manuals"

    [source] = client.get("/sources").json()
    assert (source["source_id"], source["doc_count"]) == ("manuals", 2)
    listed = client.get("/sources/manuals/docs").json()
    assert {document["file_path"] for document in listed} == {"pump.md", "finance.txt"}
    assert all("content" not in document for document in listed)

    document = client.get(f"/docs/{hit['doc_id']}").json()
    assert document["content"].startswith("Pump maintenance checklist")
    chunks = client.get(f"/docs/{hit['doc_id']}/chunks").json()
    assert chunks
    assert [chunk["ordinal"] for chunk in chunks] == list(range(len(chunks)))
    assert all(chunk["doc_id"] == hit["doc_id"] for chunk in chunks)


def test_delete_routes(client: TestClient) -> None:
    _ingest(client, "a", [{"content": "alpha notes", "doc_id": "a1"}, {"content": "more alpha", "doc_id": "a2"}])
    _ingest(client, "b", [{"content": "beta notes", "doc_id": "b1"}])

    assert client.delete("/docs/a1").json() == {"deleted": "a1"}
    assert client.delete("/docs/a1").status_code == 404

    response = client.delete("/sources/a")
    assert response.json() == {"source_id": "a", "deleted_documents": ["a2"]}
    assert client.delete("/sources/a").status_code == 404

    assert client.delete("/reset").json() == {"status": "reset"}
    assert client.get("/health").json()["documents"] == 0
    assert client.get("/sources").json() == []


def test_error_responses(client: TestClient) -> None:
    assert client.post("/ingest", json={"source_id": "x", "documents": []}).status_code == 400
    assert (
        client.post(
            "/ingest", json={"source_id": "x", "documents": [{"content": "y", "color": "red"}]}
        ).status_code
        == 422
    )
    assert client.post("/search", json={"query": "   "}).status_code == 400
    assert client.post("/search", json={"query": "pump", "limit": 0}).status_code == 422
    assert client.get("/jobs/unknown").status_code == 404
    assert client.get("/jobs/unknown/docs").status_code == 404
    assert client.get("/docs/unknown").status_code == 404
    assert client.get("/docs/unknown/chunks").status_code == 404
    assert client.get("/sources/unknown/docs").status_code == 404
