"""Idea generation from stored clusters.

Reads the cluster results a cluster job stored, asks the LLM for one to three
product ideas per cluster (largest clusters first) and stores the ideas that
clear the minimum score, de-duplicated by normalized name.
"""

import json
import logging
import re
import time

from painpoint.database import Database, Idea
from painpoint.errors import ProviderError, ValidationError
from painpoint.jobs import GenerateProgress, ProgressCallback
from painpoint.llm_client import LLMClient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a B2B SaaS strategist. You receive one cluster of forum posts
that describe the same underlying problem. Find the problem that recurs across
the posts and propose 1 to 3 distinct software products that solve it.

Score each idea from 0 to 100:
- pattern strength across posts (0-30)
- pain intensity and frequency (0-25)
- willingness to pay (0-20)
- feasibility and differentiation (0-15)
- timing (0-10)

Ignore one-off complaints. Only cite post ids that appear in the input.
{existing}
Return ONLY a JSON object of this shape:
{{
  "ideas": [
    {{
      "score": 0,
      "name": "",
      "one_liner": "",
      "target_user": "",
      "core_features": [""],
      "why_now": "",
      "pricing_hint": "",
      "rationale": "",
      "representative_post_ids": [""],
      "pattern_evidence": ""
    }}
  ]
}}"""

USER_PROMPT = """Theme: {theme}
Cluster size: {size} posts

Representative posts:
{posts}

Propose ideas for the strongest recurring problem in these posts."""

POST_PREVIEW_CHARS = 400

# Keyword groups that lift an idea's score: category -> (boost, keywords)
AUTOMATION_BOOSTS = {
    "workflow_automation": (15, [
        "automat", "workflow", "manual", "repetitive", "recurring", "scheduled",
        "bulk", "routine", "streamline",
    ]),
    "reporting_dashboard": (10, [
        "report", "dashboard", "analytic", "metric", "kpi", "visibility",
        "monitor", "track",
    ]),
    "compliance_automation": (8, [
        "compliance", "audit", "regulatory", "approval", "permission", "gdpr", "hipaa",
    ]),
}


def normalize_name(name: str) -> str:
    """Lowercase alphanumerics with single spaces, used to de-duplicate ideas."""
    name = re.sub(r"[^a-z0-9 ]", " ", str(name or "").lower())
    return re.sub(r"\s+", " ", name).strip()


def automation_boost(idea: dict) -> tuple[int, str | None]:
    """Score bonus and category for ideas that automate business processes."""
    text = " ".join([
        str(idea.get("name", "")),
        str(idea.get("one_liner", "")),
        str(idea.get("rationale", "")),
        json.dumps(idea.get("core_features", [])),
    ]).lower()

    boost = 0
    category = None
    for name, (points, keywords) in AUTOMATION_BOOSTS.items():
        if any(k in text for k in keywords):
            boost += points
            category = category or name
    return boost, category


def format_posts(cluster: dict) -> str:
    lines = []
    for post in cluster.get("representative_posts", []):
        content = re.sub(r"\s+", " ", f"{post.get('title') or ''} {post.get('body') or ''}").strip()
        preview = content[:POST_PREVIEW_CHARS] + ("…" if len(content) > POST_PREVIEW_CHARS else "")
        lines.append(f"({post.get('id')}) {preview} [{post.get('url') or 'N/A'}]")
    return "\n\n".join(lines)


def _clamp_score(value) -> int:
    try:
        return max(0, min(100, round(float(value))))
    except (TypeError, ValueError):
        return 0


class IdeaGenerator:
    """Turns stored clusters into ranked product ideas."""

    def __init__(
        self,
        db: Database,
        llm: LLMClient,
        model: str = "gpt-4o-mini",
        temperature: float = 0.4,
        max_tokens: int = 2000,
        max_clusters: int = 8,
        min_score: int = 30,
        time_budget_seconds: float = 8 * 60,
        apply_boost: bool = True,
    ):
        self.db = db
        self.llm = llm
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_clusters = max_clusters
        self.min_score = min_score
        self.time_budget_seconds = time_budget_seconds
        self.apply_boost = apply_boost

    def generate(
        self,
        job_id: str,
        cluster_job_id: str,
        report: ProgressCallback | None = None,
    ) -> dict:
        """Generate and store ideas for the clusters of ``cluster_job_id``.

        Args:
            job_id: The generate job, stored on every idea.
            cluster_job_id: Cluster job whose results are read.
            report: Progress callback.

        Returns:
            Result summary for the job.

        Raises:
            ValidationError: No cluster results are stored for the job.
        """
        clusters = self.db.get_cluster_results(cluster_job_id)
        if clusters is None:
            raise ValidationError(f"No cluster results stored for {cluster_job_id}")

        clusters = sorted(clusters, key=lambda c: c.get("size", 0), reverse=True)
        clusters = clusters[: self.max_clusters]
        progress = GenerateProgress(clusters_total=len(clusters))
        if report:
            report(progress)

        if not clusters:
            return {"cluster_job_id": cluster_job_id, "clusters_processed": 0,
                    "ideas_generated": 0, "ideas_stored": 0, "completed_all": True}

        existing = [f"{i.name} (target: {i.target_user or 'n/a'})" for i in self.db.get_ideas(limit=50)]
        seen: set[str] = set()
        ideas: list[Idea] = []
        failed_clusters: list[str] = []
        started = time.monotonic()
        completed_all = True

        for n, cluster in enumerate(clusters, 1):
            if time.monotonic() - started > self.time_budget_seconds:
                logger.info(f"[Generate] {job_id} time budget reached at cluster {n}/{len(clusters)}")
                completed_all = False
                break

            logger.info(f"[Generate] {job_id} cluster {n}/{len(clusters)}: {cluster.get('theme_summary')}")
            try:
                raw_ideas = self._ideas_for_cluster(cluster, existing)
            except (ProviderError, ValidationError) as e:
                logger.warning(f"[Generate] {job_id} cluster {cluster.get('id')} failed: {e}")
                failed_clusters.append(cluster.get("id", f"#{n}"))
                raw_ideas = []

            progress.ideas_generated += len(raw_ideas)
            for raw in raw_ideas:
                idea = self._to_idea(job_id, cluster, raw)
                if idea is None or idea.name_norm in seen:
                    continue
                seen.add(idea.name_norm)
                ideas.append(idea)

            progress.clusters_processed = n
            if report:
                report(progress)

        stored = self.db.insert_ideas(ideas) if ideas else 0
        progress.ideas_stored = stored
        if report:
            report(progress)

        logger.info(f"[Generate] {job_id} stored {stored} ideas from {progress.clusters_processed} clusters")
        return {
            "cluster_job_id": cluster_job_id,
            "clusters_processed": progress.clusters_processed,
            "clusters_failed": failed_clusters,
            "ideas_generated": progress.ideas_generated,
            "ideas_stored": stored,
            "top_ideas": [
                {"name": i.name, "score": i.score}
                for i in sorted(ideas, key=lambda i: i.score, reverse=True)[:5]
            ],
            "completed_all": completed_all,
        }

    def _ideas_for_cluster(self, cluster: dict, existing: list[str]) -> list[dict]:
        existing_text = ""
        if existing:
            existing_text = "\nExisting ideas to avoid duplicating:\n" + "\n".join(existing) + "\n"

        response = self.llm.generate(
            USER_PROMPT.format(
                theme=cluster.get("theme_summary", ""),
                size=cluster.get("size", 0),
                posts=format_posts(cluster),
            ),
            system_prompt=SYSTEM_PROMPT.format(existing=existing_text),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_mode=True,
            model=self.model,
        )
        try:
            parsed = json.loads(response.content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Idea response is not JSON: {response.content[:100]!r}") from e

        raw = parsed.get("ideas") if isinstance(parsed, dict) else None
        return [i for i in raw if isinstance(i, dict)] if isinstance(raw, list) else []

    def _to_idea(self, job_id: str, cluster: dict, raw: dict) -> Idea | None:
        name = str(raw.get("name") or "").strip()
        name_norm = normalize_name(name)
        if not name_norm:
            return None

        score = _clamp_score(raw.get("score"))
        payload = dict(raw)
        if self.apply_boost:
            boost, category = automation_boost(raw)
            payload["original_score"] = score
            payload["automation_boost"] = boost
            payload["automation_category"] = category
            score = min(100, score + boost)

        if score < self.min_score:
            return None

        cluster_post_ids = {p.get("id") for p in cluster.get("representative_posts", [])}
        cluster_post_ids.update(cluster.get("post_ids", []))
        cited = [str(pid) for pid in raw.get("representative_post_ids") or [] if str(pid) in cluster_post_ids]

        features = raw.get("core_features")
        return Idea(
            job_id=job_id,
            cluster_id=cluster.get("id", ""),
            name=name,
            name_norm=name_norm,
            score=score,
            one_liner=str(raw.get("one_liner") or ""),
            target_user=str(raw.get("target_user") or ""),
            core_features=[str(f) for f in features] if isinstance(features, list) else [],
            rationale=str(raw.get("rationale") or ""),
            representative_post_ids=cited,
            payload=payload,
        )
