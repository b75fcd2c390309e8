"""Tests for the LLM client retry policy and the classification client."""

import sys
from pathlib import Path
from types import SimpleNamespace

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import openai
import pytest

from conftest import DIM, FakeLLM
from painpoint.classifier import (
    ClassificationClient,
    chunk_by_chars,
    clean_for_embedding,
    mean_vector,
)
from painpoint.errors import (
    ConfigurationError,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
    ValidationError,
)
from painpoint.heuristics import heuristic_classify
from painpoint.llm_client import LLMClient, backoff_delay, translate_error

URL = "https://api.openai.com/v1/chat/completions"


def status_error(cls, status: int):
    response = httpx.Response(status, request=httpx.Request("POST", URL))
    return cls(f"HTTP {status}", response=response, body=None)


def completion(content: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class ScriptedCompletions:
    """chat.completions stand-in raising or returning scripted outcomes."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def create(self, **kwargs):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def scripted_client(outcomes):
    completions = ScriptedCompletions(outcomes)
    sleeps: list[float] = []
    client = LLMClient(
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
        max_attempts=3,
        backoff_base=1.0,
        sleep=sleeps.append,
    )
    return client, completions, sleeps


class TestRetryPolicy:
    """Rate limits and server errors are retried, other 4xx are not."""

    def test_rate_limited_twice_then_success(self):
        client, completions, sleeps = scripted_client([
            status_error(openai.RateLimitError, 429),
            status_error(openai.RateLimitError, 429),
            completion('{"ok": true}'),
        ])

        response = client.generate("hello")

        assert response.content == '{"ok": true}'
        assert response.attempts == 3
        assert completions.calls == 3
        assert len(sleeps) == 2
        assert sleeps[0] < sleeps[1]

    def test_server_error_retried_until_exhausted(self):
        client, completions, sleeps = scripted_client([
            status_error(openai.InternalServerError, 503) for _ in range(3)
        ])

        with pytest.raises(TransientProviderError) as exc_info:
            client.generate("hello")
        assert exc_info.value.status_code == 503
        assert completions.calls == 3
        assert sleeps == [1.0, 4.0]

    def test_bad_request_fails_immediately(self):
        client, completions, sleeps = scripted_client([
            status_error(openai.BadRequestError, 400),
            completion("never reached"),
        ])

        with pytest.raises(PermanentProviderError) as exc_info:
            client.generate("hello")
        assert exc_info.value.status_code == 400
        assert completions.calls == 1
        assert sleeps == []

    def test_backoff_grows_quadratically(self):
        assert [backoff_delay(n, 0.5) for n in (1, 2, 3)] == [0.5, 2.0, 4.5]

    def test_translate_error(self):
        assert isinstance(translate_error(status_error(openai.RateLimitError, 429)), RateLimited)
        assert isinstance(translate_error(status_error(openai.InternalServerError, 500)), TransientProviderError)
        timeout = openai.APITimeoutError(request=httpx.Request("POST", URL))
        assert translate_error(timeout).retryable
        assert not translate_error(status_error(openai.AuthenticationError, 401)).retryable

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            LLMClient(api_key="")


class TestHeuristicClassification:
    """Fallback path used when no AI key is configured."""

    def test_complaint(self):
        result = heuristic_classify("This invoicing tool is terrible and broken, I hate it")
        assert result["is_complaint"] is True
        assert result["sentiment_label"] == "negative"
        assert -1.0 <= result["sentiment_score"] < 0

    def test_positive(self):
        result = heuristic_classify("I love this, great and easy to use")
        assert result["sentiment_label"] == "positive"
        assert result["is_complaint"] is False

    def test_keywords_bounded(self):
        text = " ".join(f"keyword{i}" for i in range(20))
        assert len(heuristic_classify(text)["keywords"]) == 8

    def test_client_without_llm(self):
        client = ClassificationClient(None, embedding_dim=DIM)
        assert not client.is_live
        result = client.classify("Export is broken again")
        assert result.source == "heuristic"
        assert client.embed("Export is broken again") is None


class TestLiveClassification:

    def test_classify(self):
        llm = FakeLLM([{
            "sentiment_label": "negative",
            "sentiment_score": -3,
            "is_complaint": True,
            "keywords": ["Invoice", "invoice", "export", "a", "b", "c", "d", "e", "f", "g"],
        }])
        result = ClassificationClient(llm, embedding_dim=DIM).classify("Invoices never export")

        assert result.source == "live"
        assert result.sentiment_score == -1.0
        assert result.is_complaint is True
        assert result.keywords[:2] == ["invoice", "export"]
        assert len(result.keywords) == 8

    def test_unknown_label_derived_from_score(self):
        llm = FakeLLM([{"sentiment_label": "furious", "sentiment_score": 0.5}])
        result = ClassificationClient(llm, embedding_dim=DIM).classify("text")
        assert result.sentiment_label == "positive"
        assert result.keywords == []

    def test_invalid_json(self):
        llm = FakeLLM(["not json at all"])
        with pytest.raises(ValidationError):
            ClassificationClient(llm, embedding_dim=DIM).classify("text")

    def test_long_text_chunks_merged(self):
        llm = FakeLLM([
            {"sentiment_score": -0.8, "is_complaint": True, "keywords": ["alpha"]},
            {"sentiment_score": 0.2, "is_complaint": False, "keywords": ["beta", "alpha"]},
        ])
        client = ClassificationClient(llm, embedding_dim=DIM, classify_char_limit=100, classify_max_chunks=2)

        result = client.classify("word " * 100)

        assert len(llm.prompts) == 2
        assert result.sentiment_score == -0.3
        assert result.is_complaint is True
        assert result.keywords == ["alpha", "beta"]

    def test_provider_errors_not_masked(self):
        llm = FakeLLM([RateLimited("Rate limited", status_code=429)])
        with pytest.raises(RateLimited):
            ClassificationClient(llm, embedding_dim=DIM).classify("text")


class TestEmbeddings:

    def test_embed_cleans_and_averages(self):
        llm = FakeLLM(embeddings={"first": [1.0, 0.0, 0.0, 0.0], "second": [0.0, 1.0, 0.0, 0.0]})
        client = ClassificationClient(llm, embedding_dim=DIM, embed_char_limit=40)

        vector = client.embed("first " * 6 + "https://example.com/x " + "second " * 6)

        assert all("https://" not in call for call in llm.embed_calls)
        assert len(llm.embed_calls) >= 2
        assert len(vector) == DIM

    def test_wrong_dimension_discarded(self):
        llm = FakeLLM(embeddings={"text": [1.0, 0.0]})
        assert ClassificationClient(llm, embedding_dim=DIM).embed("some text") is None

    def test_empty_after_cleaning(self):
        llm = FakeLLM()
        assert ClassificationClient(llm, embedding_dim=DIM).embed("```code only```") is None
        assert llm.embed_calls == []


class TestTextHelpers:

    def test_clean_for_embedding(self):
        text = "Hi <b>there</b> ```x = 1``` see `code` at https://a.b/c   now"
        assert clean_for_embedding(text) == "Hi there see at now"

    def test_chunk_short_text(self):
        assert chunk_by_chars("short", 100) == ["short"]

    def test_chunk_prefers_spaces(self):
        chunks = chunk_by_chars("aaaa bbbb cccc dddd", 10)
        assert "".join(chunks) == "aaaa bbbb cccc dddd"
        assert all(len(c) <= 10 for c in chunks)
        assert chunks[0] == "aaaa bbbb"

    def test_chunk_hard_cut(self):
        assert chunk_by_chars("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]

    def test_mean_vector(self):
        assert mean_vector([[1.0, 3.0], [3.0, 5.0]]) == [2.0, 4.0]
