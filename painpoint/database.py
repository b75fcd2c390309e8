"""SQLite record store for the pain-point pipeline.

This module handles all persistence including:
- Schema creation and migrations
- Post storage, enrichment and similarity writes
- Per-stage job tables with conditional status transitions
- Transient cluster results and generated ideas
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generator, Iterable

import numpy as np

from painpoint.errors import PersistenceError


# Stage name -> job table
JOB_TABLES = {
    "enrich": "enrich_jobs",
    "similarity": "similarity_jobs",
    "cluster": "cluster_jobs",
    "generate": "ideas_jobs",
}

# Stage name -> job id prefix
JOB_PREFIXES = {
    "enrich": "enrich",
    "similarity": "similarity",
    "cluster": "cluster",
    "generate": "ideas",
}


class EnrichStatus:
    """Post enrichment states."""
    UNPROCESSED = "unprocessed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Post:
    """Forum post plus everything the pipeline derives from it."""
    id: str
    title: str
    body: str | None = None
    platform: str = ""
    url: str = ""
    created_at: float = field(default_factory=time.time)
    embedding: list[float] | None = None
    sentiment: float | None = None
    keywords: list[str] = field(default_factory=list)
    is_complaint: bool = False
    similarity_scores: list[dict] = field(default_factory=list)
    enrich_status: str = EnrichStatus.UNPROCESSED
    enrich_source: str | None = None
    enriched_at: float | None = None
    similarity_calculated_at: float | None = None

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.body or ''}".strip()


@dataclass
class Job:
    """One stage invocation."""
    id: str
    stage: str
    status: str
    created_at: float
    parameters: dict = field(default_factory=dict)
    started_at: float | None = None
    completed_at: float | None = None
    progress: dict | None = None
    result: dict | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at if self.completed_at is not None else time.time()
        return round(end - self.started_at, 3)

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "stage": self.stage,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "parameters": self.parameters,
        }


@dataclass
class Idea:
    """Product idea generated from a cluster."""
    job_id: str
    cluster_id: str
    name: str
    name_norm: str
    score: int
    one_liner: str = ""
    target_user: str = ""
    core_features: list[str] = field(default_factory=list)
    rationale: str = ""
    representative_post_ids: list[str] = field(default_factory=list)
    payload: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: int | None = None


_JOB_COLUMNS = """
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    progress TEXT,
    result TEXT,
    error TEXT,
    parameters TEXT NOT NULL DEFAULT '{}'
"""

# SQL Schema
SCHEMA = f"""
-- Posts collected from forums
CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    platform TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL,
    body TEXT,
    created_at REAL NOT NULL,
    embedding TEXT,
    sentiment REAL,
    keywords TEXT NOT NULL DEFAULT '[]',
    is_complaint INTEGER NOT NULL DEFAULT 0,
    similarity_scores TEXT NOT NULL DEFAULT '[]',
    enrich_status TEXT NOT NULL DEFAULT 'unprocessed',
    enrich_source TEXT,
    enriched_at REAL,
    similarity_calculated_at REAL
);

-- One job table per stage
CREATE TABLE IF NOT EXISTS enrich_jobs ({_JOB_COLUMNS});
CREATE TABLE IF NOT EXISTS similarity_jobs ({_JOB_COLUMNS});
CREATE TABLE IF NOT EXISTS cluster_jobs ({_JOB_COLUMNS});
CREATE TABLE IF NOT EXISTS ideas_jobs ({_JOB_COLUMNS});

-- Cluster output handed from the cluster stage to idea generation
CREATE TABLE IF NOT EXISTS cluster_results (
    job_id TEXT PRIMARY KEY,
    clusters TEXT NOT NULL,
    created_at REAL NOT NULL
);

-- Generated ideas
CREATE TABLE IF NOT EXISTS ideas (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    cluster_id TEXT NOT NULL,
    name TEXT NOT NULL,
    name_norm TEXT NOT NULL,
    score INTEGER NOT NULL DEFAULT 0,
    one_liner TEXT,
    target_user TEXT,
    core_features TEXT NOT NULL DEFAULT '[]',
    rationale TEXT,
    representative_post_ids TEXT NOT NULL DEFAULT '[]',
    payload TEXT NOT NULL DEFAULT '{{}}',
    created_at REAL NOT NULL,
    UNIQUE (job_id, name_norm)
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_posts_enrich_status ON posts(enrich_status, created_at);
CREATE INDEX IF NOT EXISTS idx_posts_similarity ON posts(enrich_status, similarity_calculated_at);
CREATE INDEX IF NOT EXISTS idx_enrich_jobs_created ON enrich_jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_similarity_jobs_created ON similarity_jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_cluster_jobs_created ON cluster_jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_ideas_jobs_created ON ideas_jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_ideas_job_id ON ideas(job_id);
"""


def _loads(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def stage_for_job_id(job_id: str) -> str:
    """Resolve the owning stage from a job id prefix.

    Unknown prefixes resolve to the generate stage.
    """
    for stage, prefix in JOB_PREFIXES.items():
        if job_id.startswith(prefix + "_"):
            return stage
    return "generate"


class Database:
    """SQLite record store."""

    def __init__(self, db_path: str | Path = "./painpoint.db", busy_timeout: float = 30.0):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
            busy_timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Commits on success, rolls back on any error. sqlite errors surface as
        PersistenceError.

        Yields:
            SQLite connection with row factory set.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise PersistenceError("connect", str(e)) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError("query", str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema and run migrations."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        self._run_migrations()

    def _run_migrations(self) -> None:
        """Add columns introduced after the first schema version."""
        with self.connection() as conn:
            cursor = conn.execute("PRAGMA table_info(posts)")
            columns = {row["name"] for row in cursor.fetchall()}

            if "enrich_source" not in columns:
                conn.execute("ALTER TABLE posts ADD COLUMN enrich_source TEXT")

    # -------------------------------------------------------------------------
    # Post operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_post(row: sqlite3.Row) -> Post:
        d = dict(row)
        d["embedding"] = _loads(d["embedding"])
        d["keywords"] = _loads(d["keywords"], [])
        d["similarity_scores"] = _loads(d["similarity_scores"], [])
        d["is_complaint"] = bool(d["is_complaint"])
        return Post(**d)

    def insert_posts(self, posts: list[Post]) -> int:
        """Insert new posts, skipping ids that already exist.

        Returns:
            Number of posts actually inserted.
        """
        with self.connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO posts
                (id, platform, url, title, body, created_at, embedding, sentiment,
                 keywords, is_complaint, similarity_scores, enrich_status,
                 enrich_source, enriched_at, similarity_calculated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        p.id, p.platform, p.url, p.title, p.body, p.created_at,
                        _dumps(p.embedding), p.sentiment, json.dumps(p.keywords),
                        1 if p.is_complaint else 0, json.dumps(p.similarity_scores),
                        p.enrich_status, p.enrich_source, p.enriched_at,
                        p.similarity_calculated_at,
                    )
                    for p in posts
                ],
            )
            return conn.total_changes - before

    def insert_post(self, post: Post) -> bool:
        """Insert a single post. Returns True if it was new."""
        return self.insert_posts([post]) == 1

    def get_post(self, post_id: str) -> Post | None:
        """Get a post by ID."""
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,)).fetchone()
            return self._row_to_post(row) if row else None

    def get_posts_needing_enrichment(self, limit: int) -> list[Post]:
        """Oldest posts still waiting for enrichment."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM posts WHERE enrich_status = ?
                ORDER BY created_at ASC, id ASC LIMIT ?
                """,
                (EnrichStatus.UNPROCESSED, limit),
            ).fetchall()
            return [self._row_to_post(r) for r in rows]

    def count_posts(self, enrich_status: str | None = None) -> int:
        """Count posts, optionally filtered by enrichment status."""
        with self.connection() as conn:
            if enrich_status is None:
                row = conn.execute("SELECT COUNT(*) AS count FROM posts").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM posts WHERE enrich_status = ?",
                    (enrich_status,),
                ).fetchone()
            return row["count"]

    def save_enrichment(
        self,
        post_id: str,
        sentiment: float,
        keywords: list[str],
        is_complaint: bool,
        embedding: list[float] | None,
        source: str,
    ) -> bool:
        """Write enrichment results if the post is still unprocessed.

        An existing embedding is kept when ``embedding`` is None.

        Returns:
            True if the row was updated.
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE posts
                SET sentiment = ?, keywords = ?, is_complaint = ?,
                    embedding = COALESCE(?, embedding), enrich_status = ?,
                    enrich_source = ?, enriched_at = ?
                WHERE id = ? AND enrich_status = ?
                """,
                (
                    sentiment, json.dumps(keywords), 1 if is_complaint else 0,
                    _dumps(embedding), EnrichStatus.COMPLETED, source, time.time(),
                    post_id, EnrichStatus.UNPROCESSED,
                ),
            )
            return cursor.rowcount > 0

    def mark_enrich_failed(self, post_id: str) -> bool:
        """Flag an unprocessed post as failed so it is not picked up again."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE posts SET enrich_status = ?, enriched_at = ?
                WHERE id = ? AND enrich_status = ?
                """,
                (EnrichStatus.FAILED, time.time(), post_id, EnrichStatus.UNPROCESSED),
            )
            return cursor.rowcount > 0

    def reset_failed_enrichment(self) -> int:
        """Put failed posts back in the enrichment queue."""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE posts SET enrich_status = ? WHERE enrich_status = ?",
                (EnrichStatus.UNPROCESSED, EnrichStatus.FAILED),
            )
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Similarity operations
    # -------------------------------------------------------------------------

    def get_posts_needing_similarity(self, limit: int, exclude_ids: Iterable[str] = ()) -> list[Post]:
        """Enriched posts whose similarity list has never been computed.

        Args:
            limit: Maximum posts returned.
            exclude_ids: Posts to leave out, e.g. ones that already failed in this run.
        """
        excluded = list(exclude_ids)
        skip = ""
        if excluded:
            skip = f"AND id NOT IN ({', '.join('?' * len(excluded))})"
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM posts
                WHERE enrich_status = ? AND similarity_calculated_at IS NULL {skip}
                ORDER BY created_at DESC, id ASC LIMIT ?
                """,
                (EnrichStatus.COMPLETED, *excluded, limit),
            ).fetchall()
            return [self._row_to_post(r) for r in rows]

    def count_posts_needing_similarity(self) -> int:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM posts
                WHERE enrich_status = ? AND similarity_calculated_at IS NULL
                """,
                (EnrichStatus.COMPLETED,),
            ).fetchone()
            return row["count"]

    def find_similar_posts(
        self,
        post_id: str,
        embedding: list[float],
        min_similarity: float,
        max_neighbors: int,
    ) -> list[tuple[str, float]]:
        """Nearest enriched neighbours of ``embedding`` by cosine similarity.

        Args:
            post_id: Source post, excluded from the result.
            embedding: Query vector.
            min_similarity: Inclusive lower bound on the score.
            max_neighbors: Maximum number of neighbours returned.

        Returns:
            (post_id, score) pairs, best first.
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, embedding FROM posts
                WHERE enrich_status = ? AND embedding IS NOT NULL AND id != ?
                """,
                (EnrichStatus.COMPLETED, post_id),
            ).fetchall()

        query = np.asarray(embedding, dtype=float)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        ids = []
        vectors = []
        for row in rows:
            vector = json.loads(row["embedding"])
            if len(vector) != len(query):
                continue
            ids.append(row["id"])
            vectors.append(vector)
        if not vectors:
            return []

        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / (norms * query_norm), 0.0)

        order = np.argsort(-scores, kind="stable")
        neighbours = []
        for i in order:
            if scores[i] < min_similarity:
                break
            neighbours.append((ids[i], float(scores[i])))
            if len(neighbours) >= max_neighbors:
                break
        return neighbours

    def set_similarity_scores(self, post_id: str, scores: list[dict], mark_calculated: bool = True) -> None:
        """Overwrite a post's similarity list."""
        with self.connection() as conn:
            if mark_calculated:
                conn.execute(
                    "UPDATE posts SET similarity_scores = ?, similarity_calculated_at = ? WHERE id = ?",
                    (json.dumps(scores), time.time(), post_id),
                )
            else:
                conn.execute(
                    "UPDATE posts SET similarity_scores = ? WHERE id = ?",
                    (json.dumps(scores), post_id),
                )

    def get_similarity_scores(self, post_id: str) -> list[dict] | None:
        """Read a post's similarity list, None if the post does not exist."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT similarity_scores FROM posts WHERE id = ?", (post_id,)
            ).fetchone()
            return _loads(row["similarity_scores"], []) if row else None

    # -------------------------------------------------------------------------
    # Cluster operations
    # -------------------------------------------------------------------------

    def get_cluster_candidates(self, since: float, limit: int) -> list[Post]:
        """Recent enriched posts carrying an embedding, newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM posts
                WHERE enrich_status = ? AND embedding IS NOT NULL AND created_at >= ?
                ORDER BY created_at DESC, id ASC LIMIT ?
                """,
                (EnrichStatus.COMPLETED, since, limit),
            ).fetchall()
            return [self._row_to_post(r) for r in rows]

    def save_cluster_results(self, job_id: str, clusters: list[dict]) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cluster_results (job_id, clusters, created_at)
                VALUES (?, ?, ?)
                """,
                (job_id, json.dumps(clusters), time.time()),
            )

    def get_cluster_results(self, job_id: str) -> list[dict] | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT clusters FROM cluster_results WHERE job_id = ?", (job_id,)
            ).fetchone()
            return json.loads(row["clusters"]) if row else None

    def cleanup_cluster_results(self, hours: int = 24) -> int:
        """Delete cluster results older than N hours."""
        cutoff = time.time() - hours * 3600
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM cluster_results WHERE created_at < ?", (cutoff,))
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Job operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _job_table(stage: str) -> str:
        try:
            return JOB_TABLES[stage]
        except KeyError:
            raise ValueError(f"Unknown stage: {stage}") from None

    @staticmethod
    def _row_to_job(stage: str, row: sqlite3.Row) -> Job:
        d = dict(row)
        return Job(
            id=d["id"],
            stage=stage,
            status=d["status"],
            created_at=d["created_at"],
            parameters=_loads(d["parameters"], {}),
            started_at=d["started_at"],
            completed_at=d["completed_at"],
            progress=_loads(d["progress"]),
            result=_loads(d["result"]),
            error=d["error"],
        )

    def insert_job(self, job: Job) -> None:
        table = self._job_table(job.stage)
        with self.connection() as conn:
            conn.execute(
                f"""
                INSERT INTO {table} (id, status, created_at, parameters)
                VALUES (?, ?, ?, ?)
                """,
                (job.id, job.status, job.created_at, json.dumps(job.parameters)),
            )

    def get_job(self, stage: str, job_id: str) -> Job | None:
        table = self._job_table(stage)
        with self.connection() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(stage, row) if row else None

    def transition_job(
        self,
        stage: str,
        job_id: str,
        from_status: str,
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Move a job from one status to another, atomically.

        Only succeeds if the job is currently in ``from_status``. Extra
        keyword fields (started_at, completed_at, progress, result, error)
        are written in the same statement.

        Returns:
            True if the transition happened.
        """
        table = self._job_table(stage)
        allowed = {"started_at", "completed_at", "progress", "result", "error"}
        assignments = ["status = ?"]
        values: list[Any] = [to_status]
        for name, value in fields.items():
            if name not in allowed:
                raise ValueError(f"Unknown job field: {name}")
            assignments.append(f"{name} = ?")
            values.append(_dumps(value) if name in ("progress", "result") else value)
        values.extend([job_id, from_status])

        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                values,
            )
            return cursor.rowcount > 0

    def update_job_progress(self, stage: str, job_id: str, progress: dict) -> bool:
        """Overwrite the progress snapshot of a running job."""
        table = self._job_table(stage)
        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET progress = ? WHERE id = ? AND status = 'running'",
                (json.dumps(progress), job_id),
            )
            return cursor.rowcount > 0

    def list_jobs(self, stage: str, limit: int = 20) -> list[Job]:
        table = self._job_table(stage)
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_job(stage, r) for r in rows]

    def archive_jobs(self, days: int = 30) -> int:
        """Delete terminal jobs older than N days across all stages."""
        cutoff = time.time() - days * 24 * 60 * 60
        deleted = 0
        with self.connection() as conn:
            for table in JOB_TABLES.values():
                cursor = conn.execute(
                    f"""
                    DELETE FROM {table}
                    WHERE status IN ('completed', 'failed') AND created_at < ?
                    """,
                    (cutoff,),
                )
                deleted += cursor.rowcount
        return deleted

    # -------------------------------------------------------------------------
    # Idea operations
    # -------------------------------------------------------------------------

    def insert_ideas(self, ideas: list[Idea]) -> int:
        """Store ideas, skipping names already stored for the same job."""
        with self.connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO ideas
                (job_id, cluster_id, name, name_norm, score, one_liner, target_user,
                 core_features, rationale, representative_post_ids, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        i.job_id, i.cluster_id, i.name, i.name_norm, i.score,
                        i.one_liner, i.target_user, json.dumps(i.core_features),
                        i.rationale, json.dumps(i.representative_post_ids),
                        json.dumps(i.payload), i.created_at,
                    )
                    for i in ideas
                ],
            )
            return conn.total_changes - before

    def get_ideas(self, job_id: str | None = None, limit: int = 50) -> list[Idea]:
        """Ideas for one job, or the best recent ones."""
        with self.connection() as conn:
            if job_id:
                rows = conn.execute(
                    "SELECT * FROM ideas WHERE job_id = ? ORDER BY score DESC, id ASC LIMIT ?",
                    (job_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM ideas ORDER BY created_at DESC, score DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["core_features"] = json.loads(d["core_features"])
            d["representative_post_ids"] = json.loads(d["representative_post_ids"])
            d["payload"] = json.loads(d["payload"])
            result.append(Idea(**d))
        return result

    # -------------------------------------------------------------------------
    # Utility operations
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Get database statistics.

        Returns:
            Row counts per table plus an enrich_status breakdown of posts.
        """
        stats: dict[str, Any] = {}
        tables = ["posts", "cluster_results", "ideas", *JOB_TABLES.values()]

        with self.connection() as conn:
            for table in tables:
                row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
                stats[table] = row["count"]

            rows = conn.execute(
                "SELECT enrich_status, COUNT(*) AS count FROM posts GROUP BY enrich_status"
            ).fetchall()
            stats["enrich_status"] = {r["enrich_status"]: r["count"] for r in rows}

            row = conn.execute(
                "SELECT COUNT(*) AS count FROM posts WHERE embedding IS NOT NULL"
            ).fetchone()
            stats["posts_with_embedding"] = row["count"]

        return stats

    def vacuum(self) -> None:
        """Optimize database by running VACUUM."""
        with self.connection() as conn:
            conn.execute("VACUUM")


def get_database(db_path: str | Path | None = None) -> Database:
    """Get a database instance.

    Args:
        db_path: Optional path to database file.

    Returns:
        Database instance.
    """
    from painpoint.config import get_config
    config = get_config()
    if db_path is None:
        db_path = config.database.path

    return Database(db_path, busy_timeout=config.database.busy_timeout)
