"""Application configuration for the relay and the peer client."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    log_level: str = Field(default="INFO")

    default_display_name: str = Field(default="Anonymous")

    signaling_url: str = Field(default="ws://localhost:8080/ws")
    reconnect_delay_seconds: float = Field(default=2.0, ge=0)
    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun3.l.google.com:19302",
        "stun:stun4.l.google.com:19302",
    ])

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value

    def rtc_configuration(self) -> dict:
        """Return the peer-connection configuration built from ``ice_servers``."""

        return {"iceServers": [{"urls": url} for url in self.ice_servers]}


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
