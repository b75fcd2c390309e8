"""Tests for the trigger and status API."""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from fastapi.testclient import TestClient

from conftest import DIM, FakeLLM, make_post
from painpoint import scheduler
from painpoint.api.web import create_app
from painpoint.classifier import ClassificationClient
from painpoint.stages import Pipeline

IDEAS_REPLY = {
    "ideas": [
        {"name": "Invoice Autopilot", "score": 70, "one_liner": "Automates invoice chasing",
         "representative_post_ids": ["p1"]},
    ]
}


def build_app(config, db, start_worker=False):
    pipeline = Pipeline(
        config,
        db,
        classifier=ClassificationClient(None, embedding_dim=DIM),
        llm=FakeLLM([IDEAS_REPLY]),
    )
    return create_app(config=config, db=db, pipeline=pipeline, start_worker=start_worker)


@pytest.fixture
def client(test_config, temp_db):
    return TestClient(build_app(test_config, temp_db))


class TestTrigger:

    def test_accepted_and_pending(self, client):
        response = client.post("/stages/enrich", json={"batch_size": 5})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert data["job_id"].startswith("enrich_")
        assert data["parameters"] == {"batch_size": 5}
        assert data["status_url"].endswith(f"/jobs/{data['job_id']}")

        status = client.get(f"/jobs/{data['job_id']}")
        assert status.status_code == 200
        assert status.json()["status"] == "pending"
        assert status.json()["parameters"] == {"batch_size": 5}

    def test_fourth_call_rate_limited(self, client):
        codes = [client.post("/stages/similarity").status_code for _ in range(4)]

        assert codes == [202, 202, 202, 429]
        response = client.post("/stages/similarity")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"] == "Rate limit exceeded"

    def test_rate_limit_per_forwarded_ip(self, client):
        for _ in range(3):
            client.post("/stages/enrich", headers={"X-Forwarded-For": "10.0.0.1, 10.0.0.2"})
        blocked = client.post("/stages/enrich", headers={"X-Forwarded-For": "10.0.0.1"})
        other = client.post("/stages/enrich", headers={"X-Forwarded-For": "10.0.0.9"})

        assert blocked.status_code == 429
        assert other.status_code == 202

    def test_unknown_stage(self, client):
        assert client.post("/stages/bogus").status_code == 404

    def test_generate_needs_cluster_job(self, client):
        assert client.post("/stages/generate", json={}).status_code == 422

    def test_api_key_required(self, test_config, temp_db):
        test_config.credentials.trigger_api_key = "s3cret"
        client = TestClient(build_app(test_config, temp_db))

        assert client.post("/stages/enrich").status_code == 401
        assert client.post("/stages/enrich", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.post("/stages/enrich", headers={"X-API-Key": "s3cret"}).status_code == 202


class TestStatus:

    def test_unknown_job(self, client):
        assert client.get("/jobs/enrich_0_missing").status_code == 404

    def test_recent_jobs(self, client):
        client.post("/stages/enrich")
        client.post("/stages/cluster")

        data = client.get("/jobs").json()
        assert data["count"] == 2
        assert {j["stage"] for j in data["jobs"]} == {"enrich", "cluster"}

        only = client.get("/jobs", params={"stage": "cluster"}).json()
        assert [j["stage"] for j in only["jobs"]] == ["cluster"]
        assert client.get("/jobs", params={"stage": "bogus"}).status_code == 404

    def test_worker_runs_queued_job(self, test_config, temp_db):
        temp_db.insert_posts([make_post("p1"), make_post("p2")])
        app = build_app(test_config, temp_db, start_worker=True)
        client = TestClient(app)

        job_id = client.post("/stages/enrich").json()["job_id"]
        app.state.worker.wait_idle()
        app.state.worker.stop()

        job = client.get(f"/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["result"]["posts_success"] == 2
        assert job["completed_at"] >= job["started_at"]
        assert job["progress"]["kind"] == "enrich"

    def test_shutdown_stops_background_threads(self, test_config, temp_db):
        test_config.scheduler.enabled = True
        test_config.scheduler.cluster = "0 6 * * *"
        app = build_app(test_config, temp_db, start_worker=True)

        with TestClient(app) as client:
            assert client.get("/health").json()["worker_alive"] is True
            assert scheduler._scheduler is not None

        assert not app.state.worker.is_alive()
        assert scheduler._scheduler is None

    def test_health_and_stats(self, client):
        assert client.get("/health").json()["status"] == "ok"
        stats = client.get("/api/stats").json()
        assert stats["posts"] == 0
        assert stats["queued_jobs"] == 0


class TestInternalGenerate:

    def test_missing_cluster_data(self, client):
        response = client.post("/internal/generate", json={"job_id": "cluster_0_none"})
        assert response.status_code == 404

    def test_runs_generation(self, client, temp_db):
        temp_db.save_cluster_results("cluster_1_abc", [{
            "id": "cluster_1",
            "size": 3,
            "theme_summary": "Cluster of 3 similar posts",
            "post_ids": ["p1", "p2", "p3"],
            "representative_posts": [{"id": "p1", "title": "Invoices", "body": "", "url": ""}],
        }])

        response = client.post("/internal/generate", json={"job_id": "cluster_1_abc"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["result"]["ideas_stored"] == 1
        assert temp_db.get_ideas(data["job_id"])[0].name == "Invoice Autopilot"
