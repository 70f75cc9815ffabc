"""
Configuration settings for the PhaseFlow engine.
"""

import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # Application
    APP_NAME: str = "PhaseFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    
    # Workflow Engine
    MAX_SUBWORKFLOW_DEPTH: int = 5
    DEFAULT_MAX_LOOP_ITERATIONS: int = 1000
    DEFAULT_RETRY_DELAY_MS: int = 1000
    DEFAULT_BACKOFF_MULTIPLIER: float = 2.0
    SUBWORKFLOW_TIMEOUT_MS: int = 300000
    MAX_NODE_EXECUTIONS: int = 10000  # Per instance, guards against runaway cycles
    USER_INPUT_MAX_ATTEMPTS: int = 10
    INSTANCE_RETENTION_SECONDS: float = 60.0  # Terminal instances kept for queries
    EVENT_HISTORY_LIMIT: int = 1000  # Per-instance events kept for late subscribers
    
    # Capabilities
    HTTP_TIMEOUT_SECONDS: float = 30.0
    PROJECT_ROOT: str = os.getcwd()
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
