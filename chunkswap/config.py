from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    app_name: str = Field(default="chunkswap")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="sqlite+aiosqlite:///data/chunkswap.db")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/chunkswap.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8020)
    metrics_enabled: bool = Field(default=True)

    ssh_command: str = Field(default="ssh")
    ssh_user: str = Field(default="root")
    ssh_port: int = Field(default=22)
    ssh_options: str = Field(default="-o BatchMode=yes -o StrictHostKeyChecking=no")
    remote_timeout_seconds: int = Field(default=60)
    container_runtime: str = Field(default="docker")

    health_probe_format: str = Field(default="{{.State.Health.Status}}")
    format_image_command: str = Field(default="curve_format")
    format_container_prefix: str = Field(default="chunkswap-format")
    format_poll_interval_seconds: float = Field(default=10.0)
    format_wait_timeout_seconds: int = Field(default=86400)

    lock_ttl_seconds: int = Field(default=3600)

    model_config = SettingsConfigDict(
        env_prefix="CHUNKSWAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        issues: list[str] = []
        if not self.database_url:
            issues.append("CHUNKSWAP_DATABASE_URL must be set in .env or environment variables.")
        if self.log_level.strip().upper() not in _LOG_LEVELS:
            issues.append(f"CHUNKSWAP_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}.")
        if self.lock_ttl_seconds <= 0:
            issues.append("CHUNKSWAP_LOCK_TTL_SECONDS must be positive.")
        if self.format_poll_interval_seconds <= 0:
            issues.append("CHUNKSWAP_FORMAT_POLL_INTERVAL_SECONDS must be positive.")
        if issues:
            raise ValueError(" ".join(issues))
        self.log_level = self.log_level.strip().upper()
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
