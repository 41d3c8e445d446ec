"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Chain Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings (used by the database checkpoint backend)
    DATABASE_URL: str = "sqlite+aiosqlite:///./checkpoints.db"
    SQLALCHEMY_ECHO: bool = False

    # Chain definitions are loaded from *.json files in this directory on startup
    CHAINS_DIR: str = "./chains"

    # Module services reachable over HTTP, as JSON: {"crm": "http://crm:9100"}
    MODULE_ENDPOINTS: dict[str, str] = {}

    # Checkpoints
    CHECKPOINT_BACKEND: str = "file"  # file or database
    CHECKPOINT_DIR: str = "./checkpoints"
    # Fernet key (urlsafe base64, 32 bytes). Supplied out-of-band, never committed.
    CHECKPOINT_ENCRYPTION_KEY: str = ""

    # Execution limits
    MAX_CONCURRENT_EXECUTIONS: int = 4
    MAX_CHAIN_STEPS: int = 100
    MAX_RECURSION_DEPTH: int = 10
    MAX_STEP_RETRIES: int = 5
    MAX_RETRY_DELAY: float = 60.0  # seconds
    DEFAULT_CHAIN_TIMEOUT: float = 1800.0  # 30 minutes

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT: float = 60.0
    CIRCUIT_HALF_OPEN_SUCCESSES: int = 1

    # Lifecycle event channel
    EVENT_QUEUE_SIZE: int = 1000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def validate_secrets(self) -> None:
        """Validate that critical secrets are present in production.

        Raises:
            RuntimeError: If production environment has no CHECKPOINT_ENCRYPTION_KEY
        """
        if self.is_production and not self.CHECKPOINT_ENCRYPTION_KEY:
            raise RuntimeError(
                "CRITICAL: CHECKPOINT_ENCRYPTION_KEY environment variable must be set in production. "
                "Checkpoints cannot be written without it."
            )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
