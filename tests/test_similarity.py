"""Tests for the bidirectional similarity engine."""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from conftest import DIM, make_post
from painpoint.database import EnrichStatus
from painpoint.errors import ValidationError
from painpoint.similarity import SimilarityEngine, cosine_similarity, upsert_score


def enriched(post_id, embedding):
    return make_post(post_id, embedding=embedding, enrich_status=EnrichStatus.COMPLETED)


@pytest.fixture
def engine(temp_db):
    return SimilarityEngine(temp_db, min_similarity=0.5, max_neighbors=10, embedding_dim=DIM)


class TestCosine:

    def test_symmetric(self):
        a, b = [1.0, 2.0, 0.5], [0.3, -1.0, 2.0]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_degenerate(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([], []) == 0.0


class TestUpsert:

    def test_replaces_and_moves_last(self):
        scores = [{"post_id": "a", "score": 0.5}, {"post_id": "b", "score": 0.6}]
        assert upsert_score(scores, "a", 0.9) == [
            {"post_id": "b", "score": 0.6},
            {"post_id": "a", "score": 0.9},
        ]

    def test_appends(self):
        assert upsert_score([], "a", 0.7) == [{"post_id": "a", "score": 0.7}]


class TestSimilarityEngine:

    def test_bidirectional(self, temp_db, engine):
        temp_db.insert_posts([
            enriched("a", [1.0, 0.0, 0.0, 0.0]),
            enriched("b", [0.8, 0.6, 0.0, 0.0]),
            enriched("far", [0.0, 0.0, 1.0, 0.0]),
        ])

        records = engine.update_similarity("a")

        assert records == [{"post_id": "b", "score": 0.8}]
        assert temp_db.get_similarity_scores("b") == [{"post_id": "a", "score": 0.8}]
        assert temp_db.get_similarity_scores("far") == []
        assert temp_db.get_post("a").similarity_calculated_at is not None
        # neighbour still needs its own pass
        assert temp_db.get_post("b").similarity_calculated_at is None

    def test_recompute_replaces_entry(self, temp_db, engine):
        temp_db.insert_posts([
            enriched("a", [1.0, 0.0, 0.0, 0.0]),
            enriched("b", [0.8, 0.6, 0.0, 0.0]),
            enriched("c", [0.9, 0.1, 0.0, 0.0]),
        ])

        engine.update_similarity("a")
        engine.update_similarity("b")

        scores_a = temp_db.get_similarity_scores("a")
        assert [e["post_id"] for e in scores_a].count("b") == 1
        assert scores_a[-1]["post_id"] == "b"

    def test_scores_symmetric_after_both_passes(self, temp_db, engine):
        temp_db.insert_posts([
            enriched("a", [1.0, 0.2, 0.0, 0.0]),
            enriched("b", [0.7, 0.5, 0.1, 0.0]),
        ])
        engine.update_similarity("a")
        engine.update_similarity("b")

        a_to_b = temp_db.get_similarity_scores("a")[0]["score"]
        b_to_a = temp_db.get_similarity_scores("b")[0]["score"]
        assert a_to_b == b_to_a

    def test_invalid_embedding_marked_processed(self, temp_db, engine):
        temp_db.insert_posts([
            enriched("short", [1.0, 0.0]),
            enriched("none", None),
        ])

        assert engine.update_similarity("short") == []
        assert engine.update_similarity("none") == []
        assert temp_db.count_posts_needing_similarity() == 0

    def test_unknown_post(self, engine):
        with pytest.raises(ValidationError):
            engine.update_similarity("missing")

    def test_max_neighbors(self, temp_db):
        temp_db.insert_posts([enriched(f"p{i}", [1.0, i / 100, 0.0, 0.0]) for i in range(6)])
        engine = SimilarityEngine(temp_db, min_similarity=0.0, max_neighbors=3, embedding_dim=DIM)

        assert len(engine.update_similarity("p0")) == 3
