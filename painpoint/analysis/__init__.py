"""Analysis module for the pain-point pipeline.

Screens posts for opportunity signals and groups them into clusters.
"""

from painpoint.analysis.clustering import (
    Cluster,
    cluster_posts,
)

from painpoint.analysis.opportunity import (
    OpportunitySignal,
    classify_opportunity,
    filter_opportunities,
)

__all__ = [
    "Cluster",
    "cluster_posts",
    "OpportunitySignal",
    "classify_opportunity",
    "filter_opportunities",
]
