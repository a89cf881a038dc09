"""
Configuration settings for the ExamFlow submission pipeline.
"""

import os
from typing import Optional


def _env_bool(name: str, default: str = "False") -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


class Settings:
    """Application settings loaded from environment."""

    # Database
    MONGODB_URL: str = os.environ.get("MONGODB_URI", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.environ.get("DATABASE_NAME", "examflow")

    # Shared secrets
    CRON_SECRET: Optional[str] = os.environ.get("CRON_SECRET")
    ADMIN_SECRET: Optional[str] = os.environ.get("ADMIN_SECRET")

    # Server
    PORT: int = int(os.environ.get("PORT", 8001))
    HOST: str = os.environ.get("HOST", "0.0.0.0")
    DEBUG: bool = _env_bool("DEBUG")

    # Batch processing
    EXAM_BATCH_SIZE: int = int(os.environ.get("EXAM_BATCH_SIZE", 20))
    CRON_MAX_PROCESSING_TIME_MS: int = int(os.environ.get("CRON_MAX_PROCESSING_TIME_MS", 750000))
    BATCH_CONCURRENCY: int = int(os.environ.get("BATCH_CONCURRENCY", 10))
    ENABLE_AUTO_SCALING: bool = _env_bool("ENABLE_AUTO_SCALING")
    AUTO_SCALING_PROFILE: str = os.environ.get("AUTO_SCALING_PROFILE", "moderate")
    WORKER_POLL_SECONDS: int = int(os.environ.get("WORKER_POLL_SECONDS", 30))

    # Submission queue
    QUEUE_ALL_SUBMISSIONS: bool = _env_bool("QUEUE_ALL_SUBMISSIONS")
    QUEUE_MAX_ATTEMPTS: int = int(os.environ.get("QUEUE_MAX_ATTEMPTS", 3))
    QUEUE_RETRY_INITIAL_DELAY_MS: int = int(os.environ.get("QUEUE_RETRY_INITIAL_DELAY_MS", 1000))
    QUEUE_RETRY_BACKOFF: float = float(os.environ.get("QUEUE_RETRY_BACKOFF", 2))
    QUEUE_RETRY_MAX_DELAY_MS: int = int(os.environ.get("QUEUE_RETRY_MAX_DELAY_MS", 300000))
    QUEUE_RETENTION_DAYS: int = int(os.environ.get("QUEUE_RETENTION_DAYS", 7))
    STALE_PROCESSING_MINUTES: int = int(os.environ.get("STALE_PROCESSING_MINUTES", 60))

    # Cache
    RULE_CACHE_TTL_SECONDS: int = int(os.environ.get("RULE_CACHE_TTL_SECONDS", 600))
    RULE_CACHE_MAX_SIZE: int = int(os.environ.get("RULE_CACHE_MAX_SIZE", 1000))
    RULE_SET_CACHE_MAX_SIZE: int = 50
    CAPACITY_CACHE_TTL_SECONDS: int = int(os.environ.get("CAPACITY_CACHE_TTL_SECONDS", 300))

    # Logging
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    @property
    def admin_secret(self) -> Optional[str]:
        """Secret for the admin/monitoring surface, falling back to the cron secret."""
        return self.ADMIN_SECRET or self.CRON_SECRET

    def validate(self):
        """Validate critical settings."""
        if not self.MONGODB_URL:
            raise ValueError("MONGODB_URI environment variable not set")
        if self.EXAM_BATCH_SIZE <= 0:
            raise ValueError("EXAM_BATCH_SIZE must be positive")
        if self.QUEUE_MAX_ATTEMPTS <= 0:
            raise ValueError("QUEUE_MAX_ATTEMPTS must be positive")
        if self.AUTO_SCALING_PROFILE not in ("conservative", "moderate", "aggressive"):
            raise ValueError(f"Unknown AUTO_SCALING_PROFILE: {self.AUTO_SCALING_PROFILE}")
        return True


# Global settings instance
settings = Settings()
