import pytest
from fastapi.testclient import TestClient

from novelpack import main
from novelpack.jobs import JobRunner

from fakes import FakeFetcher


@pytest.fixture
def fetcher():
    return FakeFetcher(unit_count=3)


@pytest.fixture
def client(database, tmp_path, monkeypatch, fetcher):
    runner = JobRunner(fetcher_factory=lambda platform, cookie: fetcher,
                       output_dir=str(tmp_path / "out"))
    monkeypatch.setattr(main, "runner", runner)
    monkeypatch.setattr(main, "RemoteFetcher", lambda platform: fetcher)
    with TestClient(main.app) as test_client:
        yield test_client


def submit(client, **overrides):
    payload = {"user_id": "alice", "work_id": "123", "format": "txt"}
    payload.update(overrides)
    return client.post("/jobs", json=payload)


class TestJobsApi:

    def test_submit_runs_job_and_serves_artifact(self, client):
        response = submit(client)
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        status = client.get(f"/jobs/{job_id}").json()
        assert status["status"] == "completed"
        assert status["progress"] == 3
        assert status["live"]["type"] == "completed"

        artifact = client.get(f"/jobs/{job_id}/artifact")
        assert artifact.status_code == 200
        assert artifact.text.startswith("雨夜")
        assert artifact.headers["X-Artifact-Size"] == str(len(artifact.content))

    @pytest.mark.parametrize("payload", [
        {"work_id": "123"},
        {"user_id": "alice", "work_id": "123", "format": "pdf"},
        {"user_id": "alice", "work_id": "12x"},
        {"user_id": "alice", "work_id": "123", "platform": "wattpad"},
    ])
    def test_bad_submissions(self, client, payload):
        assert client.post("/jobs", json=payload).status_code == 400

    def test_body_must_be_json(self, client):
        response = client.post("/jobs", content=b"not json", headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_body_must_be_utf8(self, client):
        response = client.post("/jobs", content=b"\x80abc", headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_unknown_job(self, client):
        assert client.get("/jobs/missing").status_code == 404
        assert client.get("/jobs/missing/artifact").status_code == 404
        assert client.get("/jobs/missing/events").status_code == 404
        assert client.post("/jobs/missing/retry").status_code == 404

    def test_retry_of_failed_job(self, client, fetcher):
        fetcher.degraded = True
        job_id = submit(client).json()["job_id"]
        assert client.get(f"/jobs/{job_id}").json()["status"] == "failed"
        assert client.get(f"/jobs/{job_id}/artifact").status_code == 404

        fetcher.degraded = False
        response = client.post(f"/jobs/{job_id}/retry")
        assert response.status_code == 202
        assert client.get(f"/jobs/{job_id}").json()["status"] == "completed"

    def test_retry_of_pending_job_conflicts(self, client):
        job_id = main.runner.submit_job("alice", "123", "txt")
        assert client.post(f"/jobs/{job_id}/retry").status_code == 409

    def test_event_stream_of_finished_job(self, client):
        job_id = submit(client).json()["job_id"]
        response = client.get(f"/jobs/{job_id}/events")
        assert response.headers["content-type"].startswith("text/event-stream")
        assert '"type": "connected"' in response.text
        assert '"status": "completed"' in response.text

    def test_user_jobs_listing_and_cleanup(self, client):
        submit(client)
        submit(client, format="html")
        jobs = client.get("/users/alice/jobs").json()["jobs"]
        assert len(jobs) == 2
        assert client.delete("/users/alice/jobs").json() == {"deleted": 2}
        assert client.get("/users/alice/jobs").json() == {"jobs": []}


class TestWorkAndCacheApi:

    def test_work_detail(self, client):
        submit(client)
        body = client.get("/works/po18/123").json()
        assert body["title"] == "雨夜"
        assert body["cached_units"] == 3

    def test_unknown_platform(self, client):
        assert client.get("/works/wattpad/123").status_code == 404

    def test_cache_stats_and_clear(self, client):
        submit(client)
        assert client.get("/cache/123").json() == {"work_id": "123", "cached_units": 3}
        assert client.delete("/cache/123").json() == {"work_id": "123", "deleted": 3}
        assert client.get("/cache/123").json()["cached_units"] == 0
