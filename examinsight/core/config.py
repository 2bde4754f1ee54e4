"""
Application configuration management with environment-based settings.
"""
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..analytics.config import DEFAULT_COEFFICIENT_TABLES, AnalyticsConfig


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ============= Application Settings =============
    APP_NAME: str = "ExamInsight"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Booklet scoring, analytics snapshots and AI coaching"
    ENVIRONMENT: str = Field(default="development")
    CORS_ORIGINS: List[str] = ["*"]

    # ============= Storage Settings =============
    DATABASE_URL: str = "sqlite:///./examinsight.db"
    DATABASE_ECHO: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    USE_REDIS: bool = False
    RQ_QUEUE: str = "analytics"

    # ============= Snapshot Orchestrator =============
    SNAPSHOT_TTL_SECONDS: int = 24 * 3600
    SNAPSHOT_LOCK_TTL_SECONDS: int = 60
    COMPUTE_WAIT_TIMEOUT_SECONDS: float = 30.0
    PERSIST_RETRY_ATTEMPTS: int = 3
    PERSIST_RETRY_BACKOFF_SECONDS: float = 0.2
    PERSIST_RETRY_MAX_BACKOFF_SECONDS: float = 2.0
    RECOMPUTE_CONCURRENCY: int = 4
    RECOMPUTE_BATCH_LIMIT: int = 500

    # ============= AI Coach =============
    OPENAI_API_KEY: Optional[SecretStr] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_MAX_TOKENS: int = 800
    OPENAI_TIMEOUT_SECONDS: float = 30.0
    AI_CACHE_TTL_SECONDS: int = 7 * 24 * 3600
    AI_LOCK_TTL_SECONDS: int = 45
    AI_WAIT_TIMEOUT_SECONDS: float = 10.0
    AI_LOCK_POLL_INTERVAL_SECONDS: float = 0.25

    # ============= Analytics Settings =============
    DEFAULT_EXAM_TYPE: str = "LGS"
    COEFFICIENT_TABLES: Dict[str, Dict[str, float]] = Field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_COEFFICIENT_TABLES.items()}
    )
    MIN_POPULATION_SIZE: int = 5
    MIN_TOPIC_QUESTIONS: int = 2
    MASTERY_THRESHOLD: float = 0.70
    WEAK_THRESHOLD: float = 0.40
    CRITICAL_THRESHOLD: float = 0.25
    LOW_CONFIDENCE_THRESHOLD: float = 0.50

    # ============= Logging Settings =============
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    def analytics_config(self) -> AnalyticsConfig:
        """Build the immutable configuration handed to the analytics engine."""
        return AnalyticsConfig(
            coefficient_tables={k: dict(v) for k, v in self.COEFFICIENT_TABLES.items()},
            min_population_size=self.MIN_POPULATION_SIZE,
            min_topic_questions=self.MIN_TOPIC_QUESTIONS,
            mastery_threshold=self.MASTERY_THRESHOLD,
            weak_threshold=self.WEAK_THRESHOLD,
            critical_threshold=self.CRITICAL_THRESHOLD,
            low_confidence_threshold=self.LOW_CONFIDENCE_THRESHOLD,
        )

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT.lower() == "production"

    def is_testing(self) -> bool:
        """Check if running in testing."""
        return self.ENVIRONMENT.lower() == "testing"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
