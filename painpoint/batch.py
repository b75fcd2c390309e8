"""Bounded-concurrency enrichment of a batch of posts."""

import logging
import threading
from dataclasses import dataclass, replace

from painpoint.classifier import ClassificationClient
from painpoint.database import Database, Post
from painpoint.errors import PersistenceError, ValidationError
from painpoint.jobs import EnrichProgress, ProgressCallback

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome counts for one batch."""
    success: int = 0
    failed: int = 0
    live: int = 0
    heuristic: int = 0


class BatchProcessor:
    """Enriches posts with a fixed pool of worker threads.

    Workers claim the next post from a shared index until the list is
    exhausted. A failing post is counted and marked failed; the rest of the
    batch carries on.
    """

    def __init__(self, db: Database, classifier: ClassificationClient):
        self.db = db
        self.classifier = classifier

    def process_batch(
        self,
        job_id: str,
        posts: list[Post],
        concurrency: int,
        report: ProgressCallback | None = None,
        progress: EnrichProgress | None = None,
    ) -> BatchResult:
        """Enrich ``posts`` with at most ``concurrency`` posts in flight.

        Args:
            job_id: Owning job, used for logging and thread names.
            posts: Posts to enrich.
            concurrency: Worker pool size.
            report: Called with a progress snapshot after every post.
            progress: Running totals shared with the stage loop. Updated in
                place; a fresh one covering just this batch is used if None.

        Returns:
            Success and failure counts for this batch.
        """
        if progress is None:
            progress = EnrichProgress(posts_total=len(posts), current_batch=1, total_batches=1)

        result = BatchResult()
        if not posts:
            return result

        lock = threading.Lock()
        next_index = 0

        def claim() -> Post | None:
            nonlocal next_index
            with lock:
                if next_index >= len(posts):
                    return None
                post = posts[next_index]
                next_index += 1
                return post

        def worker() -> None:
            while True:
                post = claim()
                if post is None:
                    return
                source = self._enrich_post(job_id, post)
                with lock:
                    progress.posts_processed += 1
                    if source is None:
                        result.failed += 1
                        progress.posts_failed += 1
                    else:
                        result.success += 1
                        progress.posts_success += 1
                        if source == "live":
                            result.live += 1
                        else:
                            result.heuristic += 1
                    if report is not None:
                        report(replace(progress))

        pool_size = max(1, min(concurrency, len(posts)))
        threads = [
            threading.Thread(target=worker, name=f"{job_id}-worker-{n}", daemon=True)
            for n in range(pool_size)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        logger.info(
            f"[Enrich] {job_id} batch {progress.current_batch}: "
            f"{result.success} ok, {result.failed} failed"
        )
        return result

    def _enrich_post(self, job_id: str, post: Post) -> str | None:
        """Enrich one post. Returns the classification source, or None on failure."""
        try:
            text = post.text
            if not text:
                raise ValidationError("post has no title or body")

            classification = self.classifier.classify(text)
            embedding = None if post.embedding else self.classifier.embed(text)

            if not self.db.save_enrichment(
                post.id,
                sentiment=classification.sentiment_score,
                keywords=classification.keywords,
                is_complaint=classification.is_complaint,
                embedding=embedding,
                source=classification.source,
            ):
                raise PersistenceError("save_enrichment", "post is no longer unprocessed")
            return classification.source

        except Exception as e:
            logger.warning(f"[Enrich] {job_id} post {post.id} failed: {e}")
            try:
                self.db.mark_enrich_failed(post.id)
            except PersistenceError as mark_error:
                logger.error(f"[Enrich] Could not mark post {post.id} failed: {mark_error}")
            return None
