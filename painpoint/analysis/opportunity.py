"""Heuristic screen deciding which posts are worth clustering.

A post is an opportunity when it is a negative complaint, or when its text
matches one of the curated phrase lists (feature requests, home-made
workarounds, gaps in existing tools, tool research, business-process talk).
"""

from dataclasses import dataclass, field

from painpoint.config import OpportunityConfig
from painpoint.database import Post


@dataclass
class OpportunitySignal:
    """Result of screening one post."""
    is_opportunity: bool
    opportunity_type: str | None = None  # complaint / wishlist / diy / gap / research / business
    signals: list[str] = field(default_factory=list)


def _matches(text: str, phrases: list[str]) -> list[str]:
    return [phrase for phrase in phrases if phrase in text]


def classify_opportunity(post: Post, rules: OpportunityConfig | None = None) -> OpportunitySignal:
    """Screen a post against the opportunity rules.

    Rules are checked in order and the first match sets the type; later
    matches only add to ``signals``. Research and business-process matches
    count only when nothing earlier matched.
    """
    rules = rules or OpportunityConfig()
    text = f"{post.title} {post.body or ''}".lower()
    sentiment = post.sentiment if post.sentiment is not None else 0.0

    kind: str | None = None
    signals: list[str] = []

    if post.is_complaint and sentiment < rules.complaint_max_sentiment:
        kind = "complaint"
        signals.append("negative complaint")

    wishlist = _matches(text, rules.wishlist_phrases)
    if wishlist:
        kind = kind or "wishlist"
        signals.extend(f"wishlist: {p}" for p in wishlist)

    diy = _matches(text, rules.diy_phrases)
    if diy:
        kind = kind or "diy"
        signals.extend(f"diy: {p}" for p in diy)

    gap = _matches(text, rules.gap_phrases)
    if gap and sentiment > rules.gap_min_sentiment:
        kind = kind or "gap"
        signals.extend(f"gap: {p}" for p in gap)

    if kind is None:
        research = _matches(text, rules.research_phrases)
        if research:
            kind = "research"
            signals.extend(f"research: {p}" for p in research)

    if kind is None:
        business = _matches(text, rules.business_keywords)
        if len(business) >= rules.business_min_hits:
            kind = "business"
            signals.extend(f"business: {p}" for p in business)

    return OpportunitySignal(is_opportunity=kind is not None, opportunity_type=kind, signals=signals)


def filter_opportunities(posts: list[Post], rules: OpportunityConfig | None = None) -> list[Post]:
    """Posts that pass the screen, input order preserved."""
    return [p for p in posts if classify_opportunity(p, rules).is_opportunity]
