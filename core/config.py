"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
Tuned heuristics (competency boosts, advanced-user thresholds, TTLs)
live here as defaults so deployments can adjust them without code changes.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Dict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Engine settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Cache Store
    CACHE_CAPACITY: int = Field(default=50, ge=1)
    CACHE_EVICTION_FRACTION: float = Field(default=0.2, gt=0, le=1)
    CACHE_SWEEP_INTERVAL_S: float = Field(default=120.0, gt=0)  # 2 minutes

    # Cache TTLs (seconds)
    CACHE_TTL_DEFAULT: int = Field(default=300)          # 5 minutes
    CACHE_TTL_TASKS: int = Field(default=300)            # 5 minutes
    CACHE_TTL_MILESTONES: int = Field(default=600)       # 10 minutes
    CACHE_TTL_COMPETENCY: int = Field(default=120)       # 2 minutes
    CACHE_TTL_PROGRESS: int = Field(default=30)          # 30 seconds
    CACHE_TTL_RECOMMENDATIONS: int = Field(default=600)  # 10 minutes
    CACHE_TTL_FALLBACK: int = Field(default=60)          # 1 minute

    # Durable mirror (Redis)
    CACHE_MIRROR_ENABLED: bool = Field(default=False)
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    CACHE_MIRROR_KEY_PREFIX: str = Field(default="taskCache:")
    LEDGER_KEY_PREFIX: str = Field(default="taskUsage:")

    # Completion batch sender
    COMPLETION_BATCH_SIZE: int = Field(default=5, ge=1)
    COMPLETION_DEBOUNCE_S: float = Field(default=1.0, ge=0)
    COMPLETION_BATCH_INTERVAL_S: float = Field(default=2.0, ge=0)
    COMPLETION_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    COMPLETION_BACKOFF_BASE_S: float = Field(default=1.0, ge=0)
    COMPLETION_QUEUE_MAX: int = Field(default=500, ge=1)

    # Competency scoring
    COMPETENCY_DEFAULT_SCORE: int = Field(default=50, ge=0, le=100)
    COMPETENCY_BOOSTS: Dict[str, int] = Field(
        default_factory=lambda: {"critical": 8, "high": 5, "medium": 3, "low": 1}
    )

    # Advanced-user predicate (any one qualifies)
    ADVANCED_TOOL_PROGRESS_THRESHOLD: float = Field(default=100.0)
    ADVANCED_RESOURCES_ACCESSED_THRESHOLD: int = Field(default=10)
    ADVANCED_MEAN_COMPETENCY_THRESHOLD: float = Field(default=70.0)

    # Recommendations
    RECOMMENDATION_LIMIT: int = Field(default=8, ge=1)
    TASK_LIST_LIMIT: int = Field(default=5, ge=1)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")


# Global settings instance
settings = Settings()
