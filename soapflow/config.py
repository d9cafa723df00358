from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SOAPFLOW_", env_file=".env", extra="ignore")

    # Transport settings
    request_timeout: float = 30.0  # seconds
    verify_ssl: bool = True
    follow_redirects: bool = True
    max_body_size: int = 10 * 1024 * 1024  # 10MB max response body

    # Sidecar settings
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:1420", "tauri://localhost"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
