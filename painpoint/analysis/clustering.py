"""Single-link threshold clustering of post embeddings.

Each unclaimed post in input order seeds a candidate cluster that absorbs
every other unclaimed post at or above the similarity threshold. Candidates
smaller than ``min_size`` are dropped and release their members, so those
posts can still join a later seed's cluster.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from painpoint.database import Post
from painpoint.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Cluster:
    """Group of semantically similar posts."""
    id: str
    size: int
    centroid: list[float]
    posts: list[Post] = field(default_factory=list)
    representative_posts: list[Post] = field(default_factory=list)
    theme_summary: str = ""

    @property
    def post_ids(self) -> list[str]:
        return [p.id for p in self.posts]

    def to_summary(self) -> dict:
        """Serializable form handed to idea generation (no centroid or embeddings)."""
        return {
            "id": self.id,
            "size": self.size,
            "theme_summary": self.theme_summary,
            "post_ids": self.post_ids,
            "representative_posts": [
                {
                    "id": p.id,
                    "title": p.title,
                    "body": p.body,
                    "sentiment": p.sentiment,
                    "url": p.url,
                }
                for p in self.representative_posts
            ],
        }


def _similarity_matrix(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1)
    safe = np.where(norms > 0, norms, 1.0)
    unit = vectors / safe[:, None]
    sims = unit @ unit.T
    # zero-norm vectors are similar to nothing
    sims[norms == 0, :] = 0.0
    sims[:, norms == 0] = 0.0
    return sims


def _sentiment_key(post: Post) -> float:
    return post.sentiment if post.sentiment is not None else 0.0


def cluster_posts(
    posts: list[Post],
    threshold: float = 0.6,
    min_size: int = 3,
    max_clusters: int = 10,
    embedding_dim: int = 1536,
    representative_limit: int = 15,
) -> list[Cluster]:
    """Group posts by embedding similarity.

    Args:
        posts: Candidate posts, in the order seeds are tried.
        threshold: Minimum cosine similarity to the seed for membership.
        min_size: Smallest cluster kept.
        max_clusters: Maximum clusters returned.
        embedding_dim: Posts whose embedding has another length are ignored.
        representative_limit: Representatives kept per cluster, most
            negative sentiment first.

    Returns:
        Clusters sorted by descending size, ids ``cluster_1``.. in that order.
        Empty when fewer than ``min_size`` posts carry an embedding.

    Raises:
        ValidationError: ``min_size`` below 1.
    """
    if min_size < 1:
        raise ValidationError(f"min_size must be at least 1, got {min_size}")

    usable = [p for p in posts if p.embedding and len(p.embedding) == embedding_dim]
    if len(usable) < min_size:
        logger.info(f"[Cluster] {len(usable)} posts with embeddings, need {min_size}; no clusters")
        return []

    vectors = np.asarray([p.embedding for p in usable], dtype=float)
    sims = _similarity_matrix(vectors)

    claimed = [False] * len(usable)
    groups: list[list[int]] = []

    for seed in range(len(usable)):
        if claimed[seed]:
            continue
        members = [seed] + [
            j for j in range(len(usable))
            if j != seed and not claimed[j] and sims[seed, j] >= threshold
        ]
        if len(members) < min_size:
            continue
        for j in members:
            claimed[j] = True
        groups.append(members)

    # stable sort keeps discovery order among equal sizes
    groups.sort(key=len, reverse=True)
    groups = groups[:max_clusters]

    clusters = []
    for n, members in enumerate(groups, 1):
        member_posts = [usable[j] for j in members]
        ranked = sorted(member_posts, key=_sentiment_key)
        clusters.append(Cluster(
            id=f"cluster_{n}",
            size=len(member_posts),
            centroid=vectors[members].mean(axis=0).tolist(),
            posts=member_posts,
            representative_posts=ranked[:representative_limit],
            theme_summary=f"Cluster of {len(member_posts)} similar posts",
        ))

    logger.info(
        f"[Cluster] {len(clusters)} clusters from {len(usable)} posts "
        f"(sizes: {', '.join(str(c.size) for c in clusters) or 'none'})"
    )
    return clusters
