"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache): one instance per process
    - Compaction settings map 1:1 onto CompactorOptions / PruneOptions / SummarizeOptions

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings: works out-of-the-box locally
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from turnloop.core.domain_types import CompactionMode


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = (
        "postgresql+asyncpg://turnloop:turnloop@db:5432/turnloop"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosted Postgres hands out postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_create_all: bool = False

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_max_retries: int = 3
    anthropic_timeout_seconds: int = 300
    anthropic_base_delay_ms: int = 1000
    anthropic_max_delay_ms: int = 60_000

    # Agent
    agent_model: str = "claude-sonnet-4-5"
    agent_max_tokens: int = 8192
    agent_system_prompt: str = "You are a helpful assistant."

    # Compaction
    compaction_threshold: int = 30_000
    compaction_mode: CompactionMode = CompactionMode.HYBRID
    compaction_prune_minimum: int = 20_000
    compaction_prune_protect: int = 40_000
    compaction_protected_tools: list[str] = ["skill"]
    compaction_protected_turns: int = 2
    compaction_keep_recent_tokens: int = 20_000
    compaction_auto: bool = False

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
