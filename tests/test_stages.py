"""Tests for the stage loops run through the Pipeline."""

import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import pytest

from conftest import DIM, FakeLLM, make_post
from painpoint.classifier import ClassificationClient
from painpoint.database import EnrichStatus
from painpoint.errors import PersistenceError, ValidationError
from painpoint.similarity import SimilarityEngine
from painpoint.stages import Pipeline
from painpoint.trigger import StageTrigger

IDEAS_REPLY = {
    "ideas": [
        {"name": "Invoice Autopilot", "score": 60, "one_liner": "Chases unpaid invoices",
         "representative_post_ids": ["c1", "not-in-cluster"]},
        {"name": "Weak idea", "score": 5},
    ]
}


class SteppedClock:
    """Returns the given readings in order, then repeats the last one."""

    def __init__(self, *readings: float):
        self.readings = list(readings)

    def __call__(self) -> float:
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


def heuristic_pipeline(config, db, **kwargs) -> Pipeline:
    return Pipeline(config, db, classifier=ClassificationClient(None, embedding_dim=DIM), **kwargs)


def cluster_ready_posts(db):
    """Three enriched complaint posts about the same thing, one unrelated."""
    db.insert_posts([
        make_post("c1", embedding=[1.0, 0.0, 0.0, 0.0], enrich_status=EnrichStatus.COMPLETED,
                  is_complaint=True, sentiment=-0.6),
        make_post("c2", embedding=[0.95, 0.2, 0.0, 0.0], enrich_status=EnrichStatus.COMPLETED,
                  is_complaint=True, sentiment=-0.4),
        make_post("c3", embedding=[0.9, 0.0, 0.2, 0.0], enrich_status=EnrichStatus.COMPLETED,
                  is_complaint=True, sentiment=-0.8),
        make_post("u1", embedding=[0.0, 0.0, 0.0, 1.0], enrich_status=EnrichStatus.COMPLETED,
                  is_complaint=True, sentiment=-0.6),
    ])


class TestEnrichStage:

    def test_enriches_everything(self, test_config, temp_db):
        temp_db.insert_posts([make_post(f"p{i}") for i in range(7)])
        pipeline = heuristic_pipeline(test_config, temp_db)

        job = pipeline.run("enrich", {"batch_size": 3, "concurrency": 2})

        assert job.status == "completed"
        assert job.result["posts_processed"] == 7
        assert job.result["batches"] == 3
        assert job.result["classified_heuristic"] == 7
        assert job.result["remaining"] == 0
        assert job.result["completed_all"] is True
        for i in range(7):
            post = temp_db.get_post(f"p{i}")
            assert -1.0 <= post.sentiment <= 1.0
            assert 0 <= len(post.keywords) <= 8

    def test_second_run_is_noop(self, test_config, temp_db):
        temp_db.insert_posts([make_post(f"p{i}") for i in range(3)])
        pipeline = heuristic_pipeline(test_config, temp_db)
        pipeline.run("enrich")
        before = {p: temp_db.get_post(p).enriched_at for p in ("p0", "p1", "p2")}

        job = pipeline.run("enrich")

        assert job.result["posts_processed"] == 0
        assert {p: temp_db.get_post(p).enriched_at for p in before} == before

    def test_live_classification_stores_embeddings(self, test_config, temp_db):
        temp_db.insert_posts([make_post("p1"), make_post("p2")])
        pipeline = Pipeline(test_config, temp_db, classifier=ClassificationClient(FakeLLM(), embedding_dim=DIM))

        job = pipeline.run("enrich")

        assert job.result["classified_live"] == 2
        assert temp_db.get_post("p1").embedding == [1.0, 0.0, 0.0, 0.0]
        assert temp_db.get_post("p1").enrich_source == "live"

    def test_max_posts(self, test_config, temp_db):
        temp_db.insert_posts([make_post(f"p{i}") for i in range(5)])
        job = heuristic_pipeline(test_config, temp_db).run("enrich", {"max_posts": 2})

        assert job.result["posts_processed"] == 2
        assert job.result["remaining"] == 3

    def test_time_budget_stops_early(self, test_config, temp_db):
        temp_db.insert_posts([make_post(f"p{i}") for i in range(5)])
        pipeline = heuristic_pipeline(test_config, temp_db, clock=SteppedClock(0, 0, 10_000))

        job = pipeline.run("enrich", {"batch_size": 2})

        assert job.status == "completed"
        assert job.result["posts_processed"] == 2
        assert job.result["completed_all"] is False

    def test_inter_batch_delay(self, test_config, temp_db):
        test_config.enrich.inter_batch_delay = 1.5
        temp_db.insert_posts([make_post(f"p{i}") for i in range(4)])
        sleeps = []
        heuristic_pipeline(test_config, temp_db, sleep=sleeps.append).run("enrich", {"batch_size": 2})
        assert sleeps == [1.5]

    def test_chain_enqueues_similarity(self, test_config, temp_db):
        queued = []

        def enqueue(stage, parameters):
            queued.append((stage, parameters))
            return "similarity_1_x"

        job = heuristic_pipeline(test_config, temp_db, enqueue=enqueue).run("enrich", {"chain": True})

        assert queued[0][0] == "similarity"
        assert queued[0][1]["triggered_by"] == job.id
        assert job.result["next_job_id"] == "similarity_1_x"

    def test_invalid_parameter_fails_job(self, test_config, temp_db):
        job = heuristic_pipeline(test_config, temp_db).run("enrich", {"batch_size": "lots"})
        assert job.status == "failed"
        assert "batch_size" in job.error

    def test_chain_from_config(self, test_config, temp_db):
        test_config.enrich.chain = True
        queued = []

        def enqueue(stage, parameters):
            queued.append(stage)
            return "similarity_1_x"

        pipeline = heuristic_pipeline(test_config, temp_db, enqueue=enqueue)
        job = pipeline.run("enrich")
        assert queued == ["similarity"]
        assert job.result["next_job_id"] == "similarity_1_x"

        pipeline.run("enrich", {"chain": False})
        assert queued == ["similarity"]

    def test_fetch_failure_names_step_and_keeps_progress(self, test_config, temp_db, monkeypatch):
        temp_db.insert_posts([make_post(f"p{i}") for i in range(5)])
        fetch = temp_db.get_posts_needing_enrichment
        calls = []

        def locked_on_second_fetch(limit):
            calls.append(limit)
            if len(calls) == 2:
                raise PersistenceError("query", "database is locked")
            return fetch(limit)

        monkeypatch.setattr(temp_db, "get_posts_needing_enrichment", locked_on_second_fetch)

        job = heuristic_pipeline(test_config, temp_db).run("enrich", {"batch_size": 2})

        assert job.status == "failed"
        assert job.error.startswith("enrich: fetching unprocessed posts failed")
        assert "database is locked" in job.error
        assert job.progress["posts_processed"] == 2
        assert job.progress["posts_success"] == 2
        assert temp_db.count_posts(EnrichStatus.COMPLETED) == 2
        assert temp_db.count_posts(EnrichStatus.UNPROCESSED) == 3


class TestSimilarityStage:

    def test_links_neighbours(self, test_config, temp_db):
        cluster_ready_posts(temp_db)
        temp_db.insert_post(make_post("bare", enrich_status=EnrichStatus.COMPLETED))

        job = heuristic_pipeline(test_config, temp_db).run("similarity")

        assert job.status == "completed"
        assert job.result["posts_processed"] == 5
        assert job.result["posts_without_embedding"] == 1
        assert job.result["remaining"] == 0
        linked = {s["post_id"] for s in temp_db.get_similarity_scores("c1")}
        assert linked == {"c2", "c3"}

    def test_failed_page_does_not_end_run(self, test_config, temp_db, monkeypatch):
        monkeypatch.setattr("painpoint.stages.SIMILARITY_PAGE_SIZE", 2)
        temp_db.insert_posts([
            make_post(post_id, embedding=[1.0, 0.0, 0.0, 0.0], created_at=created_at,
                      enrich_status=EnrichStatus.COMPLETED)
            for post_id, created_at in (("bad1", 400), ("bad2", 300), ("ok1", 200), ("ok2", 100))
        ])
        update = SimilarityEngine.update_similarity

        def failing_for_bad_posts(engine, post_id):
            if post_id.startswith("bad"):
                raise PersistenceError("query", "disk I/O error")
            return update(engine, post_id)

        monkeypatch.setattr(SimilarityEngine, "update_similarity", failing_for_bad_posts)

        job = heuristic_pipeline(test_config, temp_db).run("similarity")

        assert job.status == "completed"
        assert job.result["posts_processed"] == 4
        assert job.result["posts_failed"] == 2
        assert job.result["remaining"] == 2
        assert temp_db.get_post("ok1").similarity_calculated_at is not None
        assert temp_db.get_post("bad1").similarity_calculated_at is None


class TestClusterStage:

    def test_stores_clusters_without_generating(self, test_config, temp_db):
        cluster_ready_posts(temp_db)

        job = heuristic_pipeline(test_config, temp_db).run("cluster", {"generate": False})

        assert job.status == "completed"
        assert job.result["clusters_found"] == 1
        assert job.progress["phase"] == "done"
        stored = temp_db.get_cluster_results(job.id)
        assert sorted(stored[0]["post_ids"]) == ["c1", "c2", "c3"]

    def test_loading_failure_names_step(self, test_config, temp_db, monkeypatch):
        def locked(*args):
            raise PersistenceError("query", "database is locked")

        monkeypatch.setattr(temp_db, "get_cluster_candidates", locked)

        job = heuristic_pipeline(test_config, temp_db).run("cluster")

        assert job.status == "failed"
        assert job.error.startswith("cluster: loading recent posts failed")
        assert job.progress["phase"] == "loading"

    def test_no_clusters(self, test_config, temp_db):
        job = heuristic_pipeline(test_config, temp_db).run("cluster")
        assert job.status == "completed"
        assert job.result["clusters_found"] == 0
        assert temp_db.get_cluster_results(job.id) is None

    def test_generates_in_process(self, test_config, temp_db):
        cluster_ready_posts(temp_db)
        pipeline = heuristic_pipeline(test_config, temp_db, llm=FakeLLM([IDEAS_REPLY]))

        job = pipeline.run("cluster")

        assert job.status == "completed"
        generate = job.result["generate"]
        assert generate["status"] == "completed"
        ideas = temp_db.get_ideas(generate["job_id"])
        assert [i.name for i in ideas] == ["Invoice Autopilot"]
        assert ideas[0].representative_post_ids == ["c1"]

    def test_trigger_failure_fails_job_but_keeps_clusters(self, test_config, temp_db):
        cluster_ready_posts(temp_db)
        test_config.generate.url = "http://ideas.internal/internal/generate"
        transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
        pipeline = heuristic_pipeline(test_config, temp_db, trigger=StageTrigger(transport=transport))

        job = pipeline.run("cluster")

        assert job.status == "failed"
        assert "idea_generation" in job.error
        assert "clusters_completed=1" in job.error
        assert temp_db.get_cluster_results(job.id) is not None

    def test_trigger_payload(self, test_config, temp_db):
        cluster_ready_posts(temp_db)
        test_config.generate.url = "http://ideas.internal/internal/generate"
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.read())
            return httpx.Response(200, json={"status": "completed"})

        pipeline = heuristic_pipeline(
            test_config, temp_db, trigger=StageTrigger(transport=httpx.MockTransport(handler))
        )
        job = pipeline.run("cluster", {"min_score": 50})

        assert job.status == "completed"
        assert seen["body"]["job_id"] == job.id
        assert seen["body"]["min_score"] == 50


class TestGenerateStage:

    def test_needs_cluster_job_id(self, test_config, temp_db):
        job = heuristic_pipeline(test_config, temp_db, llm=FakeLLM([IDEAS_REPLY])).run("generate")
        assert job.status == "failed"
        assert "cluster_job_id" in job.error

    def test_unknown_stage(self, test_config, temp_db):
        with pytest.raises(ValidationError):
            heuristic_pipeline(test_config, temp_db).create("bogus")
