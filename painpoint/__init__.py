"""Pain-point pipeline: enrich, link, cluster and ideate on forum posts."""

__version__ = "0.1.0"
