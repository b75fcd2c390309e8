"""Sentiment/complaint classification and embeddings for posts.

With an AI key configured every call goes to the provider and failures are
raised to the caller. Without one, classification falls back to the keyword
lexicon in ``painpoint.heuristics`` and embeddings are disabled. Each
Classification records which path produced it.
"""

import json
import logging
import re
from dataclasses import dataclass

import numpy as np

from painpoint.config import Config, get_config
from painpoint.errors import ValidationError
from painpoint.heuristics import MAX_KEYWORDS, heuristic_classify, sentiment_label
from painpoint.llm_client import LLMClient, get_llm_client

logger = logging.getLogger(__name__)

SOURCE_LIVE = "live"
SOURCE_HEURISTIC = "heuristic"

SYSTEM_PROMPT = "You are a business analyst. Return only valid JSON."

CLASSIFY_PROMPT = """Analyze this post for signs of unmet software needs:

"{text}"

Respond with JSON only:
{{
  "sentiment_label": "positive" | "negative" | "neutral",
  "sentiment_score": number between -1.0 and 1.0,
  "is_complaint": true | false,
  "keywords": ["3 to 8 short lowercase keywords"]
}}"""


@dataclass
class Classification:
    """Result of classifying one post."""
    sentiment_label: str
    sentiment_score: float
    is_complaint: bool
    keywords: list[str]
    source: str


def clean_for_embedding(text: str) -> str:
    """Strip code, URLs and HTML, then collapse whitespace."""
    text = re.sub(r"```.*?```", " ", text, flags=re.DOTALL)
    text = re.sub(r"`[^`]*`", " ", text)
    text = re.sub(r"https?://\S+", " ", text)
    text = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def chunk_by_chars(text: str, max_chars: int) -> list[str]:
    """Split text into pieces of at most ``max_chars`` characters.

    A piece ends at its last space when that space lies past 70% of the
    budget, otherwise it is cut hard at the budget.
    """
    if len(text) <= max_chars:
        return [text]

    chunks = []
    i = 0
    while i < len(text):
        end = min(i + max_chars, len(text))
        piece = text[i:end]
        last_space = piece.rfind(" ")
        split = i + last_space if end < len(text) and last_space > max_chars * 0.7 else end
        chunks.append(text[i:split])
        i = split
    return chunks


def mean_vector(vectors: list[list[float]]) -> list[float]:
    """Per-dimension arithmetic mean."""
    if len(vectors) == 1:
        return list(vectors[0])
    return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()


def _normalize_keywords(raw) -> list[str]:
    if not isinstance(raw, list):
        return []
    keywords: list[str] = []
    for item in raw:
        word = str(item).strip().lower()
        if word and word not in keywords:
            keywords.append(word)
    return keywords[:MAX_KEYWORDS]


def _clamp_score(raw) -> float:
    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(-1.0, min(1.0, score))


class ClassificationClient:
    """Classifies and embeds post text."""

    def __init__(
        self,
        llm: LLMClient | None,
        embedding_dim: int = 1536,
        embed_char_limit: int = 6000,
        classify_char_limit: int = 8000,
        classify_max_chunks: int = 3,
    ):
        """
        Args:
            llm: Provider client, or None to run on the heuristic fallback.
            embedding_dim: Required length of every embedding.
            embed_char_limit: Characters per embedding request.
            classify_char_limit: Characters per classification request.
            classify_max_chunks: Maximum classification requests per post.
        """
        self.llm = llm
        self.embedding_dim = embedding_dim
        self.embed_char_limit = embed_char_limit
        self.classify_char_limit = classify_char_limit
        self.classify_max_chunks = classify_max_chunks

    @property
    def is_live(self) -> bool:
        return self.llm is not None

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(self, text: str) -> Classification:
        """Classify sentiment, complaint flag and keywords.

        Raises:
            ProviderError: Provider call failed after retries.
            ValidationError: Provider returned something other than JSON.
        """
        if not self.is_live:
            return Classification(**heuristic_classify(text), source=SOURCE_HEURISTIC)

        chunks = chunk_by_chars(text, self.classify_char_limit)[: self.classify_max_chunks]
        results = [self._classify_live(chunk) for chunk in chunks]
        if len(results) == 1:
            return results[0]
        return self._merge(results)

    def _classify_live(self, text: str) -> Classification:
        response = self.llm.generate(
            CLASSIFY_PROMPT.format(text=text),
            system_prompt=SYSTEM_PROMPT,
            temperature=0.1,
            max_tokens=300,
            json_mode=True,
        )
        try:
            parsed = json.loads(response.content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Classifier returned invalid JSON: {response.content[:100]!r}") from e
        if not isinstance(parsed, dict):
            raise ValidationError("Classifier returned JSON that is not an object")

        score = _clamp_score(parsed.get("sentiment_score", 0))
        label = parsed.get("sentiment_label")
        if label not in ("positive", "negative", "neutral"):
            label = sentiment_label(score)

        return Classification(
            sentiment_label=label,
            sentiment_score=score,
            is_complaint=bool(parsed.get("is_complaint", False)),
            keywords=_normalize_keywords(parsed.get("keywords")),
            source=SOURCE_LIVE,
        )

    @staticmethod
    def _merge(results: list[Classification]) -> Classification:
        score = round(sum(r.sentiment_score for r in results) / len(results), 2)
        keywords: list[str] = []
        for r in results:
            for word in r.keywords:
                if word not in keywords:
                    keywords.append(word)
        return Classification(
            sentiment_label=sentiment_label(score),
            sentiment_score=score,
            is_complaint=any(r.is_complaint for r in results),
            keywords=keywords[:MAX_KEYWORDS],
            source=SOURCE_LIVE,
        )

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def embed(self, text: str) -> list[float] | None:
        """Mean embedding across character-budget chunks of the cleaned text.

        Returns:
            Vector of ``embedding_dim`` floats, or None when embeddings are
            disabled, the cleaned text is empty, or the provider returned a
            vector of the wrong dimension.

        Raises:
            ProviderError: Provider call failed after retries.
        """
        if not self.is_live:
            return None

        cleaned = clean_for_embedding(text)
        if not cleaned:
            return None

        vectors = []
        for chunk in chunk_by_chars(cleaned, self.embed_char_limit):
            vector = self.llm.embed(chunk, dimensions=self.embedding_dim)
            if len(vector) != self.embedding_dim:
                logger.error(
                    f"[Classifier] Discarding embedding: expected {self.embedding_dim} "
                    f"dimensions, got {len(vector)}"
                )
                return None
            vectors.append(vector)

        return mean_vector(vectors)


def get_classification_client(config: Config | None = None) -> ClassificationClient:
    """Build a classification client from config.

    Falls back to heuristics only when OPENAI_API_KEY is absent.
    """
    config = config or get_config()

    llm = None
    if config.credentials.has_ai_key():
        llm = get_llm_client(model=config.ai.classify_model)
    else:
        logger.warning("[Classifier] No OPENAI_API_KEY set, using heuristic classifier and skipping embeddings")

    return ClassificationClient(
        llm,
        embedding_dim=config.ai.embedding_dim,
        embed_char_limit=config.ai.embed_char_limit,
        classify_char_limit=config.ai.classify_char_limit,
        classify_max_chunks=config.ai.classify_max_chunks,
    )
