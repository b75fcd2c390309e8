"""Shared fixtures and fakes for the test suite."""

import json
import os
import sys
import tempfile
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from painpoint.config import Config, Credentials, DatabaseConfig
from painpoint.database import Database, Post
from painpoint.llm_client import LLMResponse

DIM = 4


def make_post(
    post_id: str,
    title: str = "Invoice tracking is broken",
    body: str | None = "I hate doing this by hand every week.",
    embedding: list[float] | None = None,
    created_at: float | None = None,
    **kwargs,
) -> Post:
    """Build a post with sensible defaults."""
    return Post(
        id=post_id,
        title=title,
        body=body,
        platform="forum",
        url=f"https://forum.example/{post_id}",
        created_at=created_at if created_at is not None else time.time(),
        embedding=embedding,
        **kwargs,
    )


class FakeLLM:
    """Stands in for LLMClient.

    ``replies`` are handed out in order by generate(); the last one repeats.
    A reply may be a dict (sent as JSON), a raw string, or an exception to
    raise. embed() returns the first vector whose key occurs in the text.
    """

    def __init__(self, replies=None, embeddings=None, dim: int = DIM):
        self.replies = list(replies or [{
            "sentiment_label": "negative",
            "sentiment_score": -0.6,
            "is_complaint": True,
            "keywords": ["invoice", "manual"],
        }])
        self.embeddings = embeddings or {}
        self.dim = dim
        self.prompts: list[str] = []
        self.embed_calls: list[str] = []

    def generate(self, prompt, system_prompt=None, temperature=None, max_tokens=None,
                 json_mode=False, model=None) -> LLMResponse:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return LLMResponse(
            content=content,
            model=model or "fake",
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
        )

    def embed(self, text, dimensions=None) -> list[float]:
        self.embed_calls.append(text)
        for key, vector in self.embeddings.items():
            if key in text:
                return list(vector)
        return [1.0] + [0.0] * (self.dim - 1)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(db_path)
    db.initialize()

    yield db

    # Cleanup
    os.unlink(db_path)


@pytest.fixture
def test_config(temp_db) -> Config:
    """Config pointing at temp_db, 4-dimensional embeddings, no credentials."""
    config = Config(
        database=DatabaseConfig(path=str(temp_db.db_path)),
        credentials=Credentials(),
    )
    config.ai.embedding_dim = DIM
    config.enrich.inter_batch_delay = 0
    return config
