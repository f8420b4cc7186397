from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PHONEOPS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "PhoneOps"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0)

    device_lock_ttl_seconds: PositiveInt = 300
    worker_timeout_seconds: PositiveInt = 120
    cancel_grace_seconds: PositiveInt = 30
    max_pause_seconds: PositiveInt = 24 * 3600
    watchdog_interval_seconds: PositiveFloat = 5.0

    adapter_retry_attempts: PositiveInt = 3
    adapter_retry_base_seconds: PositiveFloat = 0.5

    subscriber_queue_size: PositiveInt = 256
    stream_keepalive_seconds: PositiveFloat = 15.0

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    ownership_service_url: str | None = None
    ownership_service_timeout_seconds: PositiveFloat = 5.0
    device_owners: dict[str, str] = Field(default_factory=dict)

    simulated_item_count: PositiveInt = 40
    simulated_step_seconds: float = Field(default=0.05, ge=0.0)

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("ownership_service_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip().rstrip("/")
        return stripped or None

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.worker_timeout_seconds <= self.watchdog_interval_seconds:
            raise ValueError("worker_timeout_seconds must be greater than watchdog_interval_seconds")

        if self.device_lock_ttl_seconds <= self.watchdog_interval_seconds:
            raise ValueError("device_lock_ttl_seconds must be greater than watchdog_interval_seconds")

        self.log_level = self.log_level.upper().strip()
        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "phoneops.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
