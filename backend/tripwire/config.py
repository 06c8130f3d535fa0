"""Application settings loaded from environment variables using pydantic-settings."""

from pydantic_settings import BaseSettings

# Cache entries never live shorter than this, whatever the environment says.
MIN_CACHE_TTL_SECONDS = 60


class ConfigurationError(Exception):
    """Raised when a required external binding (embedding API, vector index,
    job service) is not configured. Maps to HTTP 503 and is never retried."""


class Settings(BaseSettings):
    """Tripwire application configuration.

    All settings can be overridden via environment variables.
    External service URLs default to None and are validated when first
    used, not at application startup.
    """

    DATABASE_DIR: str = "./data"
    UPLOAD_DIR: str = "./uploads"
    FRONTEND_URL: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    EMBEDDING_URL: str | None = None
    EMBEDDING_API_KEY: str | None = None
    EMBEDDING_MODEL: str = "bge-base-en-v1.5"
    VECTOR_INDEX_URL: str | None = None
    VECTOR_INDEX_API_KEY: str | None = None
    JOB_SERVICE_URL: str | None = None
    CALLBACK_BASE_URL: str = "http://localhost:8000"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    CACHE_TTL_SECONDS: int = MIN_CACHE_TTL_SECONDS

    EMBEDDING_BATCH_SIZE: int = 50
    VECTOR_UPSERT_BATCH_SIZE: int = 100
    VECTOR_DELETE_BATCH_SIZE: int = 1000
    STORE_MAX_PARAMS: int = 100

    SCORE_WEIGHT_VECTOR: float = 0.35
    SCORE_WEIGHT_NAME: float = 0.55
    SCORE_WEIGHT_META: float = 0.10

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cache_ttl_seconds(self) -> int:
        """Effective cache TTL; values under the floor fall back to the floor."""
        if self.CACHE_TTL_SECONDS < MIN_CACHE_TTL_SECONDS:
            return MIN_CACHE_TTL_SECONDS
        return self.CACHE_TTL_SECONDS
