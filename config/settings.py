"""
PKB Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Paths (use PKB_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="PKB_DATA_PATH",
        description="Directory holding crm.db"
    )

    # API Keys (no prefix - standard env var names)
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")

    # Master switch for every LLM-backed feature
    ai_enabled: bool = Field(default=True, alias="PKB_AI_ENABLED")

    # Extraction model (non-dated alias, always gets latest version)
    extraction_model: str = Field(default="claude-haiku-4-5", alias="PKB_EXTRACTION_MODEL")
    extraction_timeout: float = Field(
        default=60.0,
        gt=0,
        alias="PKB_EXTRACTION_TIMEOUT",
        description="Per-call timeout for the extraction API (seconds)"
    )

    # Embedding Model
    # all-MiniLM-L6-v2: small 384-dim model, fast enough for per-fact dedup
    embedding_model: str = Field(default="all-MiniLM-L6-v2", alias="PKB_EMBEDDING_MODEL")
    embedding_cache_dir: str = Field(
        default="~/.cache/huggingface",
        alias="PKB_EMBEDDING_CACHE",
        description="Directory for caching embedding model files"
    )

    # User name for extraction prompts
    user_name: str = Field(
        default="User",
        alias="PKB_USER_NAME",
        description="Your name for fact extraction prompts"
    )

    log_level: str = Field(default="INFO", alias="PKB_LOG_LEVEL")

    # ==========================================================================
    # FACT / RELATIONSHIP / FOLLOWUP (FRF) PIPELINE
    # ==========================================================================
    # The pipeline runs on a cron schedule, batches each contact's unprocessed
    # communications and commits extracted facts, relationships and followups.
    # ==========================================================================

    frf_cron_interval: str = Field(default="*/30 * * * *", alias="FRF_CRON_INTERVAL")
    frf_batch_size: int = Field(default=15, ge=1, alias="FRF_BATCH_SIZE")
    frf_batch_overlap: int = Field(default=2, ge=0, alias="FRF_BATCH_OVERLAP")
    frf_context_messages: int = Field(default=5, ge=0, alias="FRF_CONTEXT_MESSAGES")
    frf_confidence_threshold: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        alias="FRF_CONFIDENCE_THRESHOLD",
        description="Extracted facts/relationships below this confidence are dropped"
    )
    frf_dedup_similarity: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        alias="FRF_DEDUP_SIMILARITY",
        description="Cosine similarity at or above which a fact is a duplicate"
    )
    frf_supersede_confidence: float = Field(
        default=0.90,
        ge=0.0,
        le=1.0,
        alias="FRF_SUPERSEDE_CONFIDENCE",
        description="Minimum confidence for an extracted fact to replace an older extracted value"
    )
    frf_followup_cutoff_days: int = Field(default=90, ge=0, alias="FRF_FOLLOWUP_CUTOFF_DAYS")
    frf_batch_delay_ms: int = Field(default=300, ge=0, alias="FRF_BATCH_DELAY_MS")
    frf_retry_delay_ms: int = Field(default=1000, ge=0, alias="FRF_RETRY_DELAY_MS")
    frf_min_content_length: int = Field(
        default=20,
        ge=0,
        alias="FRF_MIN_CONTENT_LENGTH",
        description="Communications shorter than this are never batched"
    )

    @property
    def ai_available(self) -> bool:
        """Check if the extraction API is configured and enabled."""
        return bool(self.ai_enabled and self.anthropic_api_key)


settings = Settings()
