"""Job lifecycle for pipeline stages.

A job moves pending -> running -> completed | failed and never back. The
controller is the only writer of status and terminal fields; the work it runs
only reports progress through the callback it is handed.
"""

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, fields, is_dataclass
from typing import Any, Callable, ClassVar

from painpoint.database import JOB_PREFIXES, JOB_TABLES, Database, Job, stage_for_job_id
from painpoint.errors import InvalidTransition, JobNotFound, PersistenceError, PipelineError

logger = logging.getLogger(__name__)


class JobStatus:
    """Job states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


# ============================================================================
# Progress snapshots (one shape per stage)
# ============================================================================

@dataclass
class EnrichProgress:
    kind: ClassVar[str] = "enrich"
    posts_processed: int = 0
    posts_total: int = 0
    posts_success: int = 0
    posts_failed: int = 0
    current_batch: int = 0
    total_batches: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}

    def summary(self) -> str:
        return (
            f"{self.posts_processed}/{self.posts_total} posts "
            f"({self.posts_success} ok, {self.posts_failed} failed), "
            f"batch {self.current_batch}/{self.total_batches}"
        )


@dataclass
class SimilarityProgress:
    kind: ClassVar[str] = "similarity"
    posts_processed: int = 0
    posts_total: int = 0
    posts_without_embedding: int = 0
    neighbors_written: int = 0
    current_batch: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}

    def summary(self) -> str:
        return f"{self.posts_processed}/{self.posts_total} posts, {self.neighbors_written} links"


@dataclass
class ClusterProgress:
    kind: ClassVar[str] = "cluster"
    phase: str = "loading"  # loading / screening / clustering / storing / generating
    posts_loaded: int = 0
    posts_screened_in: int = 0
    clusters_found: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}

    def summary(self) -> str:
        return (
            f"{self.phase}: {self.posts_loaded} loaded, "
            f"{self.posts_screened_in} screened in, {self.clusters_found} clusters"
        )


@dataclass
class GenerateProgress:
    kind: ClassVar[str] = "generate"
    clusters_processed: int = 0
    clusters_total: int = 0
    ideas_generated: int = 0
    ideas_stored: int = 0

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}

    def summary(self) -> str:
        return f"{self.clusters_processed}/{self.clusters_total} clusters, {self.ideas_stored} ideas stored"


Progress = EnrichProgress | SimilarityProgress | ClusterProgress | GenerateProgress

PROGRESS_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (EnrichProgress, SimilarityProgress, ClusterProgress, GenerateProgress)
}


def progress_from_dict(data: dict | None) -> Progress | None:
    """Rebuild a progress variant from its stored form."""
    if not data or data.get("kind") not in PROGRESS_TYPES:
        return None
    cls = PROGRESS_TYPES[data["kind"]]
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


ProgressCallback = Callable[[Progress], None]


def _to_payload(value: Any) -> dict:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return value
    return {"value": value}


def describe_error(error: Exception) -> str:
    """One-line, human-readable description of a stage failure."""
    if isinstance(error, PipelineError):
        return str(error)
    return f"{type(error).__name__}: {error}"


def new_job_id(stage: str) -> str:
    """``<prefix>_<epoch ms>_<9 random chars>``."""
    return f"{JOB_PREFIXES[stage]}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# ============================================================================
# Controller
# ============================================================================

class JobController:
    """Owns the lifecycle of jobs for one stage."""

    def __init__(self, db: Database, stage: str):
        if stage not in JOB_TABLES:
            raise ValueError(f"Unknown stage: {stage}")
        self.db = db
        self.stage = stage

    def create_job(self, parameters: dict | None = None) -> str:
        """Persist a pending job and return its id.

        Raises:
            PersistenceError: If the job could not be stored.
        """
        job = Job(
            id=new_job_id(self.stage),
            stage=self.stage,
            status=JobStatus.PENDING,
            created_at=time.time(),
            parameters=dict(parameters or {}),
        )
        self.db.insert_job(job)
        logger.info(f"[Jobs] Created {self.stage} job {job.id}")
        return job.id

    def get_job(self, job_id: str) -> Job:
        """Raises JobNotFound if the id is unknown."""
        job = self.db.get_job(self.stage, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_recent(self, limit: int = 20) -> list[Job]:
        return self.db.list_jobs(self.stage, limit)

    def run_stage(self, job_id: str, work_fn: Callable[[ProgressCallback], Any]) -> Job:
        """Run ``work_fn`` as the body of a pending job.

        The job is marked running before ``work_fn`` is called and reaches
        exactly one terminal state afterwards. Exceptions from ``work_fn``
        are recorded on the job, not raised.

        Args:
            job_id: A pending job of this controller's stage.
            work_fn: Called with a progress callback; its return value becomes
                the job result.

        Returns:
            The job as stored after the terminal transition.

        Raises:
            JobNotFound: Unknown job id.
            InvalidTransition: Job is not pending.
        """
        started_at = time.time()
        if not self.db.transition_job(
            self.stage, job_id, JobStatus.PENDING, JobStatus.RUNNING, started_at=started_at
        ):
            current = self.get_job(job_id)
            raise InvalidTransition(job_id, JobStatus.RUNNING, current.status)

        logger.info(f"[Jobs] {job_id} running")

        lock = threading.Lock()
        finished = False

        def report_progress(progress: Progress) -> None:
            with lock:
                if finished:
                    return
                try:
                    self.db.update_job_progress(self.stage, job_id, _to_payload(progress))
                except PersistenceError as e:
                    logger.warning(f"[Jobs] {job_id} progress update failed: {e}")

        try:
            result = work_fn(report_progress)
        except Exception as e:
            logger.exception(f"[Jobs] {job_id} failed")
            with lock:
                finished = True
            self._finish(job_id, started_at, JobStatus.FAILED, error=describe_error(e))
        else:
            with lock:
                finished = True
            self._finish(job_id, started_at, JobStatus.COMPLETED, result=_to_payload(result))

        return self.get_job(job_id)

    def _finish(self, job_id: str, started_at: float, status: str, **fields: Any) -> None:
        completed_at = max(time.time(), started_at)
        if not self.db.transition_job(
            self.stage, job_id, JobStatus.RUNNING, status, completed_at=completed_at, **fields
        ):
            current = self.get_job(job_id)
            raise InvalidTransition(job_id, status, current.status)
        logger.info(f"[Jobs] {job_id} {status}")


def find_job(db: Database, job_id: str) -> Job:
    """Look a job up by id alone, resolving its stage from the id prefix.

    Raises:
        JobNotFound: No such job.
    """
    job = db.get_job(stage_for_job_id(job_id), job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def list_recent_jobs(db: Database, limit: int = 20, stage: str | None = None) -> list[Job]:
    """Most recent jobs of one stage, or of all stages merged."""
    stages = [stage] if stage else list(JOB_TABLES)
    jobs: list[Job] = []
    for name in stages:
        jobs.extend(db.list_jobs(name, limit))
    jobs.sort(key=lambda j: j.created_at, reverse=True)
    return jobs[:limit]
