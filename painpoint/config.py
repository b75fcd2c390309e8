"""Configuration management for the pain-point pipeline."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from painpoint.errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()


@dataclass
class DatabaseConfig:
    """Record store configuration."""
    path: str = "./painpoint.db"
    busy_timeout: float = 30.0  # seconds sqlite waits on a locked database


@dataclass
class AIConfig:
    """AI provider configuration."""
    base_url: str = ""
    classify_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-large"
    embedding_dim: int = 1536
    timeout: float = 30.0
    max_attempts: int = 3
    backoff_base: float = 1.0  # delay = base * attempt ** 2
    embed_char_limit: int = 6000
    classify_char_limit: int = 8000
    classify_max_chunks: int = 3


@dataclass
class EnrichConfig:
    """Enrich stage configuration."""
    batch_size: int = 10
    concurrency: int = 3
    time_budget_minutes: float = 14.0
    inter_batch_delay: float = 1.0
    chain: bool = False  # enqueue similarity when done


@dataclass
class SimilarityConfig:
    """Similarity stage configuration."""
    min_similarity: float = 0.5
    max_neighbors: int = 50
    batch_limit: int = 500
    time_budget_minutes: float = 14.0
    chain: bool = False  # enqueue cluster when done


@dataclass
class ClusterConfig:
    """Cluster stage configuration."""
    threshold: float = 0.6
    min_size: int = 3
    max_clusters: int = 10
    representative_limit: int = 15
    days: int = 14
    post_limit: int = 300
    results_ttl_hours: int = 24


@dataclass
class GenerateConfig:
    """Idea generation stage configuration."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.4
    max_tokens: int = 2000
    max_clusters: int = 8
    min_score: int = 30
    time_budget_minutes: float = 8.0
    url: str = ""  # when empty, cluster runs generation in-process
    trigger_timeout: float = 600.0


@dataclass
class TriggerConfig:
    """Trigger endpoint configuration."""
    rate_limit: int = 3
    window_seconds: float = 60.0


@dataclass
class OpportunityConfig:
    """Phrase lists and cut-offs used to screen posts before clustering."""
    complaint_max_sentiment: float = -0.1
    gap_min_sentiment: float = -0.5
    business_min_hits: int = 2
    wishlist_phrases: list[str] = field(default_factory=lambda: [
        "wish there was", "looking for", "need a tool", "wish someone built",
        "does anyone know", "is there a", "any recommendations for",
        "what tool do you use", "how do you handle", "best way to",
        "feature request", "would love to see", "missing feature",
    ])
    diy_phrases: list[str] = field(default_factory=lambda: [
        "i built", "i created", "my script", "my solution", "i made",
        "wrote a", "custom tool", "automation i", "workflow i",
        "here is how i", "i solve this by", "my approach",
    ])
    gap_phrases: list[str] = field(default_factory=lambda: [
        "missing", "lacks", "doesnt have", "wish it had", "except for",
        "but it doesnt", "only issue", "if only it", "would be perfect if",
        "needs better", "could improve",
    ])
    research_phrases: list[str] = field(default_factory=lambda: [
        "what tools", "how do you", "best practices", "recommendations",
        "what software", "how does your team", "workflow for", "process for",
        "tools for", "software for",
    ])
    business_keywords: list[str] = field(default_factory=lambda: [
        "workflow", "process", "automation", "integration", "crm", "erp",
        "project management", "team collaboration", "reporting", "dashboard",
    ])


@dataclass
class UIConfig:
    """Web server configuration."""
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class SchedulerConfig:
    """Cron expressions per stage. Empty string disables the stage."""
    enabled: bool = False
    enrich: str = ""
    similarity: str = ""
    cluster: str = ""


@dataclass
class Credentials:
    """Secrets read from the environment."""
    openai_api_key: str = ""
    trigger_api_key: str = ""

    @classmethod
    def from_env(cls) -> "Credentials":
        """Load credentials from environment variables."""
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            trigger_api_key=os.getenv("PAINPOINT_API_KEY", ""),
        )

    def has_ai_key(self) -> bool:
        return bool(self.openai_api_key)


@dataclass
class Config:
    """Main configuration container."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    enrich: EnrichConfig = field(default_factory=EnrichConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    generate: GenerateConfig = field(default_factory=GenerateConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    opportunity: OpportunityConfig = field(default_factory=OpportunityConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    # Credentials (loaded from environment)
    credentials: Credentials = field(default_factory=Credentials.from_env)

    def validate(self) -> None:
        """Raise ConfigurationError on settings the pipeline cannot start without."""
        if not self.database.path:
            raise ConfigurationError("database.path")
        if self.ai.embedding_dim <= 0:
            raise ConfigurationError("ai.embedding_dim", "must be positive")
        if self.enrich.concurrency < 1:
            raise ConfigurationError("enrich.concurrency", "must be at least 1")
        if self.enrich.batch_size < 1:
            raise ConfigurationError("enrich.batch_size", "must be at least 1")


# Environment overrides: variable -> (section, field, cast)
ENV_OVERRIDES = {
    "PAINPOINT_DB_PATH": ("database", "path", str),
    "PAINPOINT_BATCH_SIZE": ("enrich", "batch_size", int),
    "PAINPOINT_CONCURRENCY": ("enrich", "concurrency", int),
    "PAINPOINT_TIME_BUDGET_MINUTES": ("enrich", "time_budget_minutes", float),
    "PAINPOINT_GENERATE_URL": ("generate", "url", str),
    "OPENAI_BASE_URL": ("ai", "base_url", str),
}


def _dict_to_dataclass(data: dict[str, Any], cls: type) -> Any:
    """Convert a dictionary to a dataclass instance, ignoring unknown keys."""
    if not data:
        return cls()

    field_names = set(cls.__dataclass_fields__)
    kwargs = {key: value for key, value in data.items() if key in field_names}
    return cls(**kwargs)


def _apply_env_overrides(config: Config) -> None:
    for var, (section, name, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigurationError(var, f"invalid value {raw!r}") from e
        setattr(getattr(config, section), name, value)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses config/local.yaml or
            config/default.yaml, falling back to built-in defaults.

    Returns:
        Validated Config object.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        local_config = Path("config/local.yaml")
        default_config = Path("config/default.yaml")

        if local_config.exists():
            config_path = local_config
        elif default_config.exists():
            config_path = default_config

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    config = Config(
        database=_dict_to_dataclass(data.get("database", {}), DatabaseConfig),
        ai=_dict_to_dataclass(data.get("ai", {}), AIConfig),
        enrich=_dict_to_dataclass(data.get("enrich", {}), EnrichConfig),
        similarity=_dict_to_dataclass(data.get("similarity", {}), SimilarityConfig),
        cluster=_dict_to_dataclass(data.get("cluster", {}), ClusterConfig),
        generate=_dict_to_dataclass(data.get("generate", {}), GenerateConfig),
        trigger=_dict_to_dataclass(data.get("trigger", {}), TriggerConfig),
        opportunity=_dict_to_dataclass(data.get("opportunity", {}), OpportunityConfig),
        ui=_dict_to_dataclass(data.get("ui", {}), UIConfig),
        scheduler=_dict_to_dataclass(data.get("scheduler", {}), SchedulerConfig),
        credentials=Credentials.from_env(),
    )

    _apply_env_overrides(config)
    config.validate()
    return config


# Global config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global config instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: str | Path | None = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = load_config(config_path)
    return _config
