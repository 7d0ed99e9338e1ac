import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Moni API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Security settings
    rate_limit_per_minute: int = 60
    rate_limit_enabled: bool = True
    agent_api_key: Optional[str] = None

    # CORS settings
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    allowed_headers: List[str] = ["Authorization", "Content-Type", "Idempotency-Key", "X-API-Key"]

    # Backend settings
    storage_backend: str = "memory"  # memory or supabase
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    backend_timeout_seconds: float = 10.0

    # Idempotency
    idempotency_disabled: bool = False
    idempotency_table: str = "idempotency_keys"

    # Bearer token -> user id, only read by the in-memory identity provider
    dev_tokens: Dict[str, str] = {}


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    rate_limit_per_minute: int = 100  # More lenient for development


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    storage_backend: str = "supabase"


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    rate_limit_per_minute: int = 1000
    rate_limit_enabled: bool = False
    agent_api_key: Optional[str] = "test-agent-key"


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance for the APP_ENV environment."""
    return get_settings_for_environment(os.getenv("APP_ENV", "development"))
