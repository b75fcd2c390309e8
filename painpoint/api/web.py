"""HTTP interface for the pain-point pipeline.

Provides:
- POST /stages/{stage}     queue a stage job (rate limited, optional shared secret)
- GET  /jobs/{job_id}      job status, progress and outcome
- GET  /jobs               recent jobs
- POST /internal/generate  synchronous idea generation for a cluster job
- GET  /api/stats, /health
"""

import hmac
import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from painpoint.config import Config, get_config
from painpoint.database import JOB_TABLES, Database, get_database
from painpoint.errors import JobNotFound, PipelineError
from painpoint.jobs import find_job, list_recent_jobs
from painpoint.ratelimit import SlidingWindowRateLimiter
from painpoint.scheduler import StageWorker, start_scheduler, stop_scheduler
from painpoint.stages import STAGES, Pipeline

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"


def client_ip(request: Request) -> str:
    """Best guess at the caller's address behind proxies."""
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def create_app(
    config: Config | None = None,
    db: Database | None = None,
    pipeline: Pipeline | None = None,
    limiter: SlidingWindowRateLimiter | None = None,
    start_worker: bool = True,
) -> FastAPI:
    """Build the FastAPI app and its background worker.

    Args:
        config: Configuration, global config when None.
        db: Record store, built from config when None.
        pipeline: Stage runner, built from config and db when None.
        limiter: Rate limiter for the trigger endpoint.
        start_worker: Start the background worker thread (and the cron
            scheduler if enabled). Tests pass False to inspect queued jobs.
    """
    config = config or get_config()
    db = db or get_database(config.database.path)
    db.initialize()
    pipeline = pipeline or Pipeline(config, db)
    limiter = limiter or SlidingWindowRateLimiter(
        limit=config.trigger.rate_limit, window=config.trigger.window_seconds
    )

    worker = StageWorker(pipeline)
    pipeline.enqueue = worker.submit
    if start_worker:
        worker.start()
        if config.scheduler.enabled:
            start_scheduler(worker, config.scheduler)

    app = FastAPI(
        title="Pain-Point Pipeline",
        description="Turn forum complaints into clustered product opportunities",
        version="0.1.0",
    )
    app.state.config = config
    app.state.db = db
    app.state.pipeline = pipeline
    app.state.worker = worker
    app.state.limiter = limiter

    @app.on_event("shutdown")
    def shutdown_background_threads():
        stop_scheduler()
        worker.stop()
        if worker.is_alive():
            worker.join(timeout=5)
        logger.info("[API] Background threads stopped")

    secret = config.credentials.trigger_api_key

    def check_api_key(request: Request) -> None:
        if not secret:
            return
        supplied = request.headers.get(API_KEY_HEADER) or request.query_params.get("api_key") or ""
        if not hmac.compare_digest(supplied.encode(), secret.encode()):
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

    # ========================================================================
    # Trigger
    # ========================================================================

    @app.post("/stages/{stage}", status_code=202)
    def trigger_stage(
        stage: str,
        request: Request,
        parameters: dict[str, Any] | None = Body(default=None),
    ):
        """Queue a stage job and return its id immediately."""
        ip = client_ip(request)
        decision = limiter.hit(ip)
        if not decision.allowed:
            logger.warning(f"[API] Rate limit exceeded for {ip}")
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "message": f"Maximum {limiter.limit} requests per {limiter.window:.0f} seconds",
                    "retry_after": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

        check_api_key(request)

        if stage not in STAGES:
            raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")

        parameters = parameters or {}
        if stage == "generate" and not parameters.get("cluster_job_id"):
            raise HTTPException(status_code=422, detail="generate needs cluster_job_id")

        try:
            job_id = worker.submit(stage, parameters)
        except PipelineError as e:
            logger.error(f"[API] Could not create {stage} job: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "job_id": job_id,
            "status": "pending",
            "status_url": str(request.url_for("job_status", job_id=job_id)),
            "parameters": parameters,
        }

    # ========================================================================
    # Status
    # ========================================================================

    @app.get("/jobs/{job_id}", name="job_status")
    def job_status(job_id: str):
        """Status, timing, progress and outcome of one job."""
        try:
            job = find_job(db, job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_dict()

    @app.get("/jobs")
    def recent_jobs(limit: int = 20, stage: str | None = None):
        """Most recent jobs, optionally for one stage."""
        if stage is not None and stage not in JOB_TABLES:
            raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
        limit = max(1, min(limit, 100))
        jobs = list_recent_jobs(db, limit=limit, stage=stage)
        return {"jobs": [j.to_dict() for j in jobs], "count": len(jobs)}

    # ========================================================================
    # Inter-stage
    # ========================================================================

    @app.post("/internal/generate")
    def internal_generate(request: Request, payload: dict[str, Any] = Body(...)):
        """Run idea generation for a cluster job and answer when it is done."""
        check_api_key(request)

        cluster_job_id = payload.get("job_id")
        if not cluster_job_id:
            raise HTTPException(status_code=422, detail="job_id is required")
        if db.get_cluster_results(cluster_job_id) is None:
            raise HTTPException(status_code=404, detail=f"No cluster data for job {cluster_job_id}")

        parameters = {"cluster_job_id": cluster_job_id}
        for key in ("max_clusters_to_process", "min_score"):
            if key in payload:
                parameters[key] = payload[key]

        job = pipeline.run("generate", parameters)
        body = job.to_dict()
        if job.status != "completed":
            return JSONResponse(status_code=500, content=body)
        return body

    # ========================================================================
    # Misc
    # ========================================================================

    @app.get("/api/stats")
    def api_stats():
        """Store statistics."""
        stats = db.get_stats()
        stats["queued_jobs"] = worker.pending()
        return stats

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "worker_alive": worker.is_alive(),
            "ai_configured": config.credentials.has_ai_key(),
        }

    return app


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the web server."""
    import uvicorn

    # Configure logging to show INFO level for our modules
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    uvicorn.run(
        "painpoint.api.web:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    run_server()
