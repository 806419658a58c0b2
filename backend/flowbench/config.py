from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FLOWBENCH_")

    # Backend request service (flows, environments)
    backend_url: str = "http://localhost/gassapi2/backend"
    backend_token: str = ""
    backend_timeout: float = 30.0  # seconds

    # Flow execution defaults
    max_execution_time_ms: int = 300_000  # 5 minutes
    default_step_timeout_ms: int = 30_000
    verify_ssl: bool = True
    follow_redirects: bool = True
    max_body_size: int = 10 * 1024 * 1024  # 10MB max response body

    # Reporting
    preview_length: int = 500  # body preview in non-debug text reports

    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    @field_validator("backend_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
