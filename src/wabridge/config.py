"""Bridge configuration — loads from bridge.yaml + environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wabridge.errors import ConfigError


def _load_yaml_config() -> dict[str, Any]:
    """Load bridge.yaml from BRIDGE_CONFIG_PATH or default locations."""
    config_path = os.getenv("BRIDGE_CONFIG_PATH")
    search_paths = (
        [Path(config_path)]
        if config_path
        else [
            Path("/etc/wabridge/bridge.yaml"),
            Path("bridge.yaml"),
        ]
    )
    for path in search_paths:
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
    return {}


class TelegramConfig(BaseSettings):
    """Destination (Telegram) configuration."""

    token: str = Field(default="", description="Telegram bot API token")
    chat_id: str = Field(default="", description="Chat that receives relayed messages")
    api_base: str = Field(default="https://api.telegram.org")
    poll_timeout_s: int = Field(default=10, ge=1, le=60)
    retry_delay_s: float = Field(default=3.0, gt=0)
    conflict_backoff_s: float = Field(default=5.0, gt=0)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _stringify_chat_id(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    model_config = SettingsConfigDict(env_prefix="BRIDGE_TELEGRAM_", frozen=True)


class DeliveryConfig(BaseSettings):
    """Outbound delivery queue configuration."""

    max_retries: int = Field(default=3, ge=1, description="Attempts per queued item")
    rate_limit_delay_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum gap between the end of one send and the start of the next",
    )
    retry_base_s: float = Field(default=1.0, ge=0.0, description="Linear retry backoff unit")
    message_timeout_s: float = Field(default=30.0, gt=0, description="Per-attempt timeout")
    max_message_length: int = Field(default=4096, ge=16, le=4096)
    max_media_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    model_config = SettingsConfigDict(env_prefix="BRIDGE_DELIVERY_", frozen=True)


class SessionConfig(BaseSettings):
    """Source (WhatsApp) session configuration."""

    factory: str = Field(
        default="",
        description="Import path of the source session factory, 'module:callable'",
    )
    reconnect_delay_s: float = Field(default=5.0, gt=0)
    max_reconnect_delay_s: float = Field(default=300.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=1)
    dedup_ttl_s: float = Field(default=10.0, gt=0)
    contact_timeout_s: float = Field(default=5.0, gt=0)
    media_timeout_s: float = Field(default=30.0, gt=0)
    relay_outgoing: bool = False

    model_config = SettingsConfigDict(env_prefix="BRIDGE_SESSION_", frozen=True)


class BridgeConfig(BaseSettings):
    """Root bridge configuration."""

    # Server
    host: str = Field(default="0.0.0.0", description="Status server bind host")
    port: int = Field(default=3000, ge=1, le=65535, description="Status server bind port")

    # Auth for /status. Empty = no auth
    api_key: str = Field(default="")

    health_check_interval_s: float = Field(default=60.0, gt=0)
    shutdown_timeout_s: float = Field(default=10.0, gt=0)

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_",
        env_nested_delimiter="__",
        frozen=True,
    )

    @classmethod
    def load(cls) -> BridgeConfig:
        """Load config from YAML + env vars (env takes precedence)."""
        yaml_cfg = _load_yaml_config()

        telegram_data = yaml_cfg.pop("telegram", {})
        delivery_data = yaml_cfg.pop("delivery", {})
        session_data = yaml_cfg.pop("session", {})

        # Only pass YAML sub-configs if they have data;
        # otherwise let pydantic-settings pick up env vars
        kwargs: dict[str, Any] = {**yaml_cfg}
        if telegram_data:
            kwargs["telegram"] = TelegramConfig(**telegram_data)
        if delivery_data:
            kwargs["delivery"] = DeliveryConfig(**delivery_data)
        if session_data:
            kwargs["session"] = SessionConfig(**session_data)

        config = cls(**kwargs)
        config.validate_required()
        return config

    def validate_required(self) -> None:
        missing = [
            name
            for name, value in (
                ("BRIDGE_TELEGRAM_TOKEN", self.telegram.token),
                ("BRIDGE_TELEGRAM_CHAT_ID", self.telegram.chat_id),
            )
            if not value.strip()
        ]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")


# Singleton
_config: BridgeConfig | None = None


def get_config() -> BridgeConfig:
    """Get or create the global config."""
    global _config
    if _config is None:
        _config = BridgeConfig.load()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests)."""
    global _config
    _config = None
