"""
Configuration settings for NodeFlow.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application
    APP_NAME: str = "NodeFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Execution engine
    DEFAULT_SCRIPT_TIMEOUT_MS: int = 5000  # Per-node budget when config.timeout is unset
    SANDBOX_WORKERS: int = 8  # Threads available to running scripts
    ID_SEED: Optional[int] = None  # Seed for event/run id suffixes (tests, demos)

    # Step playback
    PLAYER_INTERVAL_MS: int = 600

    # Workspace script templates (defaults to the bundled directory)
    SCRIPTS_DIR: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
