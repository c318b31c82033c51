"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///storage/memory.db"
    log_level: str = "INFO"

    # Dataset location for the demo runner (manifest.json lives here)
    DATA_DIR: str = "data"

    # Memory trust
    # Days after which an unused memory's effective confidence halves
    MEMORY_HALF_LIFE_DAYS: float = 30.0
    # Minimum decayed confidence for a memory entry to be applied
    MEMORY_TRUST_FLOOR: float = 0.65

    # Decision policy
    REVIEW_CONFIDENCE_THRESHOLD: float = 0.75
    DUPLICATE_CONFIDENCE: float = 0.2
    DEFAULT_EXTRACTION_CONFIDENCE: float = 0.5

    # Reference matching
    PO_DATE_WINDOW_DAYS: int = 30


# Global settings instance
settings = Settings()
