from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    api_host: str = "0.0.0.0"
    api_port: int = 8010
    environment: Literal["development", "test", "staging", "production"] = "development"
    api_version: str = "2026-01-15_kpi_v1"

    databricks_host: str = ""
    databricks_token: str = ""
    warehouse_id: str = ""
    warehouse_catalog: str = "commercial_dev"
    warehouse_schema: str = "capabilities"
    statement_wait_timeout: str = "0s"

    kpi_poll_interval_seconds: float = 0.35
    kpi_deadline_seconds: float = 12.0
    options_poll_interval_seconds: float = 1.0
    options_deadline_seconds: float = 45.0
    statement_http_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 55.0

    kpi_row_limit: int = 500
    options_row_limit: int = 2000

    kpi_exclude_default_category: bool = False
    kpi_excluded_category_column: str = "megabrand"
    kpi_excluded_category_value: str = "NON-BEER"

    cors_allowed_origins: list[str] = [
        "https://brickhouser3.github.io",
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
    ]
    log_statements: bool = False

    @model_validator(mode="after")
    def _validate_request_timeout(self) -> "Settings":
        longest = max(self.kpi_deadline_seconds, self.options_deadline_seconds) + self.statement_http_timeout_seconds
        if self.request_timeout_seconds <= longest:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must exceed the longest statement deadline plus one cancel request")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
