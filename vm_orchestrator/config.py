from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VM_ORCHESTRATOR_", env_file=".env", extra="ignore"
    )

    backend_url: str = Field(default="http://localhost:3000")
    backend_api_prefix: str = Field(default="/api")
    backend_auth_token: str | None = Field(default=None)
    backend_timeout_sec: float = Field(default=10.0, gt=0)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: float = Field(default=1.0, ge=0)

    create_timeout_sec: float = Field(default=300.0, gt=0)
    start_timeout_sec: float = Field(default=60.0, gt=0)
    await_init_sec: float = Field(default=60.0, ge=0)
    await_init_by_flavor: dict[str, float] = Field(default_factory=dict)
    address_timeout_sec: float = Field(default=30.0, ge=0)
    address_interval_sec: float = Field(default=2.0, gt=0)
    run_retention_sec: float = Field(default=3.0, ge=0)

    telemetry_period_sec: float = Field(default=3.0, gt=0)
    telemetry_capacity: int = Field(default=20, ge=1)
    telemetry_stop_join_sec: float = Field(default=0.5, ge=0)

    bind_host: str = Field(default="0.0.0.0")
    bind_port: int = Field(default=8000, ge=1)
    api_token: str | None = Field(default=None)
    log_level: str = Field(default="INFO")

    def await_init_for(self, flavor: str | None) -> float:
        if flavor and flavor in self.await_init_by_flavor:
            return min(self.await_init_by_flavor[flavor], self.await_init_sec)
        return self.await_init_sec


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
