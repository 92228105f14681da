"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Engine Settings
    MAX_CONCURRENT_EXECUTIONS: int = 5
    EXECUTION_TIMEOUT_SECONDS: float = 300.0  # 5 minutes
    EXECUTION_HISTORY_SIZE: int = 100
    LOOP_MAX_ITERATIONS: int = 100
    LOOP_OUTPUT_POLICY: str = "isolate"  # isolate or propagate
    MANUAL_STEP_POLICY: str = "auto"  # auto or await
    CONDITIONAL_RESULT_POLICY: str = "nest"  # nest or adopt

    # Tool Settings
    COMMAND_TOOL_NAME: str = "execute_command"
    COMMAND_TIMEOUT_SECONDS: float = 300.0
    WORKSPACE_ROOT: str = "."
    DEFAULT_MODE: str = "code"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    ENGINE_LOG_LEVEL: str = ""  # workflow.* and core.*; empty follows LOG_LEVEL
    TOOL_LOG_LEVEL: str = ""  # tasks.*; empty follows LOG_LEVEL

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

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
