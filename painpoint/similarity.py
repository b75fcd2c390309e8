"""Bidirectional nearest-neighbour similarity lists over post embeddings.

Each post stores its own list of ``{post_id, score}`` entries. Updating a post
also rewrites the symmetric entry on every neighbour. Neighbour writes are
read-modify-write without a transaction spanning them, so two sources
updating the same neighbour at once resolve as last-write-wins.
"""

import logging
import math
from typing import Sequence

import numpy as np

from painpoint.database import Database
from painpoint.errors import ValidationError

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for zero-norm or mismatched vectors."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0 or not math.isfinite(norm):
        return 0.0
    return float(np.dot(va, vb) / norm)


def upsert_score(scores: list[dict], post_id: str, score: float) -> list[dict]:
    """Return ``scores`` with the entry for ``post_id`` replaced or appended.

    The new entry always goes last so the list stays ordered by recency of
    update.
    """
    updated = [entry for entry in scores if entry.get("post_id") != post_id]
    updated.append({"post_id": post_id, "score": score})
    return updated


class SimilarityEngine:
    """Maintains similarity lists for posts."""

    def __init__(
        self,
        db: Database,
        min_similarity: float = 0.5,
        max_neighbors: int = 50,
        embedding_dim: int = 1536,
    ):
        self.db = db
        self.min_similarity = min_similarity
        self.max_neighbors = max_neighbors
        self.embedding_dim = embedding_dim

    def update_similarity(self, post_id: str) -> list[dict]:
        """Recompute the neighbour list of one post and mirror it onto the neighbours.

        Returns:
            The list written onto the source post. Empty when the post has
            no valid embedding.

        Raises:
            ValidationError: Unknown post id.
        """
        post = self.db.get_post(post_id)
        if post is None:
            raise ValidationError(f"Post not found: {post_id}")

        if not post.embedding or len(post.embedding) != self.embedding_dim:
            self.db.set_similarity_scores(post_id, [])
            logger.debug(f"[Similarity] {post_id} has no valid embedding, marked processed")
            return []

        neighbours = self.db.find_similar_posts(
            post_id, post.embedding, self.min_similarity, self.max_neighbors
        )
        records = [
            {"post_id": neighbour_id, "score": round(score, 3)}
            for neighbour_id, score in neighbours
        ]
        self.db.set_similarity_scores(post_id, records)

        for record in records:
            existing = self.db.get_similarity_scores(record["post_id"])
            if existing is None:
                continue
            self.db.set_similarity_scores(
                record["post_id"],
                upsert_score(existing, post_id, record["score"]),
                mark_calculated=False,
            )

        logger.debug(f"[Similarity] {post_id}: {len(records)} neighbours")
        return records
