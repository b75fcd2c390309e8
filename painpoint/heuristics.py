"""Keyword-lexicon classifier used when no AI provider key is configured."""

import re

COMPLAINT_TERMS = [
    "annoying", "frustrat", "i hate", "wish there was", "why is it so hard",
    "broken", "useless", "terrible", "buggy", "hate", "sucks", "pain",
    "doesn't work", "so slow", "awful", "worst", "horrible",
    "laggy", "crash", "glitch", "messy", "complicated", "confusing",
    "unreliable", "unstable", "frozen", "error", "fails", "issue",
]

NEGATIVE_WORDS = [
    "hate", "annoying", "terrible", "useless", "broken", "bad", "worst", "pain",
    "sucks", "awful", "glitchy", "confusing", "hard", "expensive", "slow",
]

POSITIVE_WORDS = [
    "love", "great", "awesome", "amazing", "fantastic", "excellent", "perfect",
    "helpful", "useful", "intuitive", "smooth", "easy", "simple", "efficient",
    "worth it", "recommend",
]

STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
    "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
    "how", "man", "new", "now", "old", "see", "two", "way", "who", "boy",
    "did", "its", "let", "put", "say", "she", "too", "use",
}

MAX_KEYWORDS = 8


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """First ``limit`` distinct lowercase words longer than 3 characters."""
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    keywords: list[str] = []
    for word in words:
        if len(word) > 3 and word not in STOPWORDS and word not in keywords:
            keywords.append(word)
            if len(keywords) >= limit:
                break
    return keywords


def sentiment_label(score: float) -> str:
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"


def heuristic_classify(text: str) -> dict:
    """Coarse sentiment, complaint flag and keywords from word lists.

    Returns:
        Dict with sentiment_label, sentiment_score, is_complaint, keywords.
    """
    low = text.lower()

    complaint_match = any(term in low for term in COMPLAINT_TERMS)
    negative = sum(1 for word in NEGATIVE_WORDS if word in low)
    positive = sum(1 for word in POSITIVE_WORDS if word in low)

    score = max(-1.0, min(1.0, (positive - negative) / 3))

    return {
        "sentiment_label": sentiment_label(score),
        "sentiment_score": score,
        "is_complaint": complaint_match or score < -0.3,
        "keywords": extract_keywords(text),
    }
