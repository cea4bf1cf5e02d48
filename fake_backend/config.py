from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeBackendSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_BACKEND_", extra="ignore")

    bind_host: str = Field(default="0.0.0.0")
    bind_port: int = Field(default=3000, ge=1)

    node_info: str = Field(default="fake-node: 8 CPUs, 16384 MB")
    version: str = Field(default="fake-libvirt 0.1.0")

    address_after_polls: int = Field(default=3, ge=1)
    address_prefix: str = Field(default="10.0.0.")
    vnc_host: str = Field(default="localhost")
    vnc_base_port: int = Field(default=5900, ge=1)
    seed_resources_csv: str = Field(default="")

    @property
    def seed_resources(self) -> list[str]:
        return [x.strip() for x in self.seed_resources_csv.split(",") if x.strip()]


@lru_cache(maxsize=1)
def get_settings() -> FakeBackendSettings:
    return FakeBackendSettings()
