"""Stage loops: enrich, similarity, cluster, generate.

Each stage runs as the body of one job. Loops carry a wall-clock budget and
stop claiming work once it is spent, returning a partial result with
``completed_all`` set to False.
"""

import logging
import math
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable

from painpoint.analysis.clustering import cluster_posts
from painpoint.analysis.opportunity import filter_opportunities
from painpoint.batch import BatchProcessor
from painpoint.classifier import ClassificationClient, get_classification_client
from painpoint.config import Config
from painpoint.database import Database, EnrichStatus, Job
from painpoint.errors import PipelineError, StageStepError, StageTriggerError, ValidationError
from painpoint.generation import IdeaGenerator
from painpoint.jobs import (
    ClusterProgress,
    EnrichProgress,
    JobController,
    JobStatus,
    ProgressCallback,
    SimilarityProgress,
)
from painpoint.llm_client import LLMClient, get_llm_client
from painpoint.similarity import SimilarityEngine
from painpoint.trigger import StageTrigger

logger = logging.getLogger(__name__)

STAGES = ("enrich", "similarity", "cluster", "generate")

# stage -> stage enqueued after it when the job asks to chain
NEXT_STAGE = {"enrich": "similarity", "similarity": "cluster"}

SIMILARITY_PAGE_SIZE = 50

Enqueue = Callable[[str, dict], str]


def _param(parameters: dict, name: str, default: Any, cast: type = int) -> Any:
    value = parameters.get(name)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for '{name}': {value!r}") from None


@contextmanager
def stage_step(stage: str, step: str):
    """Re-raise store and provider failures of one step as StageStepError."""
    try:
        yield
    except (StageStepError, StageTriggerError, ValidationError):
        raise
    except PipelineError as e:
        raise StageStepError(stage, step, e) from e


class Pipeline:
    """Runs stage jobs against one store."""

    def __init__(
        self,
        config: Config,
        db: Database,
        classifier: ClassificationClient | None = None,
        llm: LLMClient | None = None,
        trigger: StageTrigger | None = None,
        enqueue: Enqueue | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Loaded configuration; validated here.
            db: Record store.
            classifier: Classification client, built from config when None.
            llm: Client for idea generation, built from config when None.
            trigger: Client for HTTP hand-off to idea generation.
            enqueue: Schedules a follow-up stage job (background worker).
            sleep: Used for the inter-batch delay.
            clock: Monotonic clock used for time budgets.
        """
        config.validate()
        self.config = config
        self.db = db
        self._classifier = classifier
        self._llm = llm
        self.trigger = trigger or StageTrigger(api_key=config.credentials.trigger_api_key)
        self.enqueue = enqueue
        self.sleep = sleep
        self.clock = clock

        self._work = {
            "enrich": self.run_enrich,
            "similarity": self.run_similarity,
            "cluster": self.run_cluster,
            "generate": self.run_generate,
        }

    @property
    def classifier(self) -> ClassificationClient:
        if self._classifier is None:
            self._classifier = get_classification_client(self.config)
        return self._classifier

    @property
    def llm(self) -> LLMClient:
        """Generation client. Raises ConfigurationError without an AI key."""
        if self._llm is None:
            self._llm = get_llm_client(
                model=self.config.generate.model,
                temperature=self.config.generate.temperature,
                max_tokens=self.config.generate.max_tokens,
            )
        return self._llm

    # -------------------------------------------------------------------------
    # Job entry points
    # -------------------------------------------------------------------------

    def controller(self, stage: str) -> JobController:
        return JobController(self.db, stage)

    def create(self, stage: str, parameters: dict | None = None) -> str:
        if stage not in STAGES:
            raise ValidationError(f"Unknown stage: {stage}")
        return self.controller(stage).create_job(parameters)

    def run_job(self, stage: str, job_id: str) -> Job:
        """Run a pending job to its terminal state."""
        controller = self.controller(stage)
        job = controller.get_job(job_id)
        work = self._work[stage]
        return controller.run_stage(job_id, lambda report: work(job_id, job.parameters, report))

    def run(self, stage: str, parameters: dict | None = None) -> Job:
        """Create a job and run it in the calling thread."""
        return self.run_job(stage, self.create(stage, parameters))

    def _chain(self, stage: str, job_id: str, parameters: dict, result: dict) -> None:
        next_stage = NEXT_STAGE.get(stage)
        if not next_stage or self.enqueue is None:
            return
        if not parameters.get("chain", getattr(self.config, stage).chain):
            return
        next_job_id = self.enqueue(next_stage, {"chain": True, "triggered_by": job_id})
        result["next_job_id"] = next_job_id
        logger.info(f"[Pipeline] {job_id} queued {next_stage} job {next_job_id}")

    def _over_budget(self, started: float, budget_seconds: float) -> bool:
        return self.clock() - started > budget_seconds

    # -------------------------------------------------------------------------
    # Enrich
    # -------------------------------------------------------------------------

    def run_enrich(self, job_id: str, parameters: dict, report: ProgressCallback) -> dict:
        """Enrich unprocessed posts batch by batch."""
        cfg = self.config.enrich
        batch_size = _param(parameters, "batch_size", cfg.batch_size)
        concurrency = _param(parameters, "concurrency", cfg.concurrency)
        budget = _param(parameters, "time_budget_minutes", cfg.time_budget_minutes, float) * 60
        max_posts = _param(parameters, "max_posts", 0)
        if batch_size < 1 or concurrency < 1:
            raise ValidationError("batch_size and concurrency must be at least 1")

        with stage_step("enrich", "counting unprocessed posts"):
            total = self.db.count_posts(EnrichStatus.UNPROCESSED)
        if max_posts:
            total = min(total, max_posts)
        progress = EnrichProgress(posts_total=total, total_batches=math.ceil(total / batch_size))
        report(replace(progress))

        processor = BatchProcessor(self.db, self.classifier)
        attempted: set[str] = set()
        live = heuristic = 0
        started = self.clock()
        completed_all = True

        logger.info(f"[Enrich] {job_id}: {total} posts to enrich, batch {batch_size}, concurrency {concurrency}")

        while True:
            if self._over_budget(started, budget):
                logger.info(f"[Enrich] {job_id} time budget reached after {progress.posts_processed} posts")
                completed_all = False
                break

            limit = batch_size
            if max_posts:
                limit = min(limit, max_posts - progress.posts_processed)
                if limit <= 0:
                    break

            with stage_step("enrich", "fetching unprocessed posts"):
                posts = [
                    p for p in self.db.get_posts_needing_enrichment(limit)
                    if p.id not in attempted
                ]
            if not posts:
                break
            attempted.update(p.id for p in posts)

            # pause between batches, never after the last one
            if progress.current_batch and cfg.inter_batch_delay > 0:
                self.sleep(cfg.inter_batch_delay)

            progress.current_batch += 1
            progress.total_batches = max(progress.total_batches, progress.current_batch)
            progress.posts_total = max(progress.posts_total, progress.posts_processed + len(posts))

            with stage_step("enrich", f"batch {progress.current_batch}"):
                batch = processor.process_batch(job_id, posts, concurrency, report, progress)
            live += batch.live
            heuristic += batch.heuristic

        with stage_step("enrich", "counting remaining posts"):
            remaining = self.db.count_posts(EnrichStatus.UNPROCESSED)
        result = {
            "posts_processed": progress.posts_processed,
            "posts_success": progress.posts_success,
            "posts_failed": progress.posts_failed,
            "batches": progress.current_batch,
            "classified_live": live,
            "classified_heuristic": heuristic,
            "remaining": remaining,
            "completed_all": completed_all,
        }
        logger.info(
            f"[Enrich] {job_id} done: {progress.posts_success} ok, "
            f"{progress.posts_failed} failed, {remaining} remaining"
        )
        self._chain("enrich", job_id, parameters, result)
        return result

    # -------------------------------------------------------------------------
    # Similarity
    # -------------------------------------------------------------------------

    def run_similarity(self, job_id: str, parameters: dict, report: ProgressCallback) -> dict:
        """Compute similarity lists for enriched posts that lack one."""
        cfg = self.config.similarity
        limit = _param(parameters, "batch_limit", cfg.batch_limit)
        budget = _param(parameters, "time_budget_minutes", cfg.time_budget_minutes, float) * 60

        engine = SimilarityEngine(
            self.db,
            min_similarity=_param(parameters, "min_similarity", cfg.min_similarity, float),
            max_neighbors=_param(parameters, "max_neighbors", cfg.max_neighbors),
            embedding_dim=self.config.ai.embedding_dim,
        )

        with stage_step("similarity", "counting posts"):
            pending = self.db.count_posts_needing_similarity()
        progress = SimilarityProgress(posts_total=min(pending, limit))
        report(replace(progress))

        # failed posts keep needing similarity; skip them in later pages
        failed_ids: set[str] = set()
        started = self.clock()
        completed_all = True

        while progress.posts_processed < limit:
            with stage_step("similarity", "fetching posts"):
                page = self.db.get_posts_needing_similarity(
                    min(SIMILARITY_PAGE_SIZE, limit - progress.posts_processed),
                    exclude_ids=failed_ids,
                )
            if not page:
                break
            progress.current_batch += 1

            for post in page:
                if self._over_budget(started, budget):
                    completed_all = False
                    break
                try:
                    records = engine.update_similarity(post.id)
                except PipelineError as e:
                    logger.warning(f"[Similarity] {job_id} post {post.id} failed: {e}")
                    failed_ids.add(post.id)
                    records = None
                progress.posts_processed += 1
                if records is not None:
                    if records:
                        progress.neighbors_written += len(records)
                    elif not post.embedding:
                        progress.posts_without_embedding += 1
                report(replace(progress))

            if not completed_all:
                logger.info(f"[Similarity] {job_id} time budget reached after {progress.posts_processed} posts")
                break

        with stage_step("similarity", "counting remaining posts"):
            remaining = self.db.count_posts_needing_similarity()
        result = {
            "posts_processed": progress.posts_processed,
            "posts_failed": len(failed_ids),
            "posts_without_embedding": progress.posts_without_embedding,
            "neighbors_written": progress.neighbors_written,
            "remaining": remaining,
            "completed_all": completed_all,
        }
        logger.info(f"[Similarity] {job_id} done: {progress.posts_processed} posts, {progress.neighbors_written} links")
        self._chain("similarity", job_id, parameters, result)
        return result

    # -------------------------------------------------------------------------
    # Cluster
    # -------------------------------------------------------------------------

    def run_cluster(self, job_id: str, parameters: dict, report: ProgressCallback) -> dict:
        """Screen recent posts, cluster them, store the clusters and hand off."""
        cfg = self.config.cluster
        threshold = _param(parameters, "threshold", cfg.threshold, float)
        min_size = _param(parameters, "min_size", cfg.min_size)
        max_clusters = _param(parameters, "max_clusters", cfg.max_clusters)
        days = _param(parameters, "days", cfg.days, float)
        post_limit = _param(parameters, "post_limit", cfg.post_limit)

        with stage_step("cluster", "removing expired cluster results"):
            self.db.cleanup_cluster_results(cfg.results_ttl_hours)

        progress = ClusterProgress(phase="loading")
        report(replace(progress))
        with stage_step("cluster", "loading recent posts"):
            posts = self.db.get_cluster_candidates(time.time() - days * 86400, post_limit)
        progress.posts_loaded = len(posts)

        progress.phase = "screening"
        report(replace(progress))
        if parameters.get("skip_screening"):
            candidates = posts
        else:
            candidates = filter_opportunities(posts, self.config.opportunity)
        progress.posts_screened_in = len(candidates)
        logger.info(f"[Cluster] {job_id}: {len(candidates)} of {len(posts)} posts screened in")

        progress.phase = "clustering"
        report(replace(progress))
        clusters = cluster_posts(
            candidates,
            threshold=threshold,
            min_size=min_size,
            max_clusters=max_clusters,
            embedding_dim=self.config.ai.embedding_dim,
            representative_limit=cfg.representative_limit,
        )
        progress.clusters_found = len(clusters)

        result: dict[str, Any] = {
            "posts_loaded": len(posts),
            "posts_screened_in": len(candidates),
            "clusters_found": len(clusters),
            "clusters": [
                {"id": c.id, "size": c.size, "theme_summary": c.theme_summary}
                for c in clusters
            ],
        }
        if not clusters:
            progress.phase = "done"
            report(replace(progress))
            return result

        progress.phase = "storing"
        report(replace(progress))
        with stage_step("cluster", "storing cluster results"):
            self.db.save_cluster_results(job_id, [c.to_summary() for c in clusters])

        if parameters.get("generate", True):
            progress.phase = "generating"
            report(replace(progress))
            result["generate"] = self._hand_off_to_generate(job_id, len(clusters), parameters)

        progress.phase = "done"
        report(replace(progress))
        return result

    def _hand_off_to_generate(self, cluster_job_id: str, clusters_count: int, parameters: dict) -> dict:
        """Start idea generation for stored clusters and wait for it.

        Raises:
            StageTriggerError: Generation could not be started or failed.
        """
        details = {"clusters_completed": clusters_count}
        gen_cfg = self.config.generate
        gen_params = {
            key: parameters[key]
            for key in ("max_clusters_to_process", "min_score")
            if key in parameters
        }

        if gen_cfg.url:
            return self.trigger.trigger_next(
                gen_cfg.url,
                {"job_id": cluster_job_id, "clusters_count": clusters_count, **gen_params},
                timeout=gen_cfg.trigger_timeout,
                step="idea_generation",
                details=details,
            )

        job = self.run("generate", {"cluster_job_id": cluster_job_id, **gen_params})
        if job.status != JobStatus.COMPLETED:
            raise StageTriggerError("idea_generation", job.error or "generate job failed", details)
        return {"job_id": job.id, "status": job.status, "result": job.result}

    # -------------------------------------------------------------------------
    # Generate
    # -------------------------------------------------------------------------

    def run_generate(self, job_id: str, parameters: dict, report: ProgressCallback) -> dict:
        """Generate ideas from the clusters of ``parameters['cluster_job_id']``."""
        cluster_job_id = parameters.get("cluster_job_id")
        if not cluster_job_id:
            raise ValidationError("generate job needs a cluster_job_id parameter")

        cfg = self.config.generate
        generator = IdeaGenerator(
            self.db,
            self.llm,
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            max_clusters=_param(parameters, "max_clusters_to_process", cfg.max_clusters),
            min_score=_param(parameters, "min_score", cfg.min_score),
            time_budget_seconds=_param(parameters, "time_budget_minutes", cfg.time_budget_minutes, float) * 60,
        )
        return generator.generate(job_id, cluster_job_id, report)
