from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gateway_config_path: str = "gateway.yaml"
    gateway_event_log_enabled: bool = False
    gateway_event_log_path: str = "logs/gateway_events.jsonl"
    gateway_health_check_interval_seconds: float | None = None
    gateway_request_timeout_seconds: float | None = None
    gateway_disabled_providers: str = ""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def disabled_providers_list(self) -> list[str]:
        return _split_csv(self.gateway_disabled_providers)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
