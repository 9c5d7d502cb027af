from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False
    # Upper bound on how long a transaction waits for a row/database lock
    db_lock_timeout_seconds: float = 5.0

    # Internal API security (operator endpoints)
    internal_api_key: str = ""

    # Enrollment invitations
    approval_request_ttl_days: int = 7
    record_declined_relationships: bool = False

    # Card provisioning
    card_number_prefix: str = "GC"
    card_number_max_attempts: int = 5

    # Points ledger
    ledger_strategy_chain: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["primary", "secondary", "emergency"]
    )
    notification_retry_enabled: bool = True

    @field_validator("ledger_strategy_chain", mode="before")
    @classmethod
    def _parse_strategy_chain(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError("ledger_strategy_chain must be a comma separated string or list")

    # Consistency auditor
    drift_tolerance_points: int = Field(default=0, ge=0)
    consistency_audit_worker_enabled: bool = False
    consistency_audit_interval_seconds: int = 900
    consistency_audit_auto_repair: bool = False
    consistency_audit_trigger_label: str = "scheduler"

    # Tracing
    tracing_enabled: bool = True
    otel_exporter_endpoint: str | None = None
    otel_exporter_headers: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
