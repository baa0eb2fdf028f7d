"""Bridge settings: server definitions, retry policy, LLM provider."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from mcpbridge.mcp.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MCPBRIDGE_CONFIG"
_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
_TRANSPORT_ALIASES = {
    "pipe": "stdio",
    "socket": "websocket",
    "ws": "websocket",
    "event-stream": "sse",
}


class TransportKind(StrEnum):
    """Closed set of transport variants."""

    STDIO = "stdio"
    WEBSOCKET = "websocket"
    SSE = "sse"


class ServerConfig(BaseModel):
    """One tool server definition. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = ""
    transport: TransportKind = Field(
        default=TransportKind.STDIO,
        validation_alias=AliasChoices("transport", "type"),
    )
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = Field(
        default=None,
        validation_alias=AliasChoices("working_directory", "workingDirectory", "cwd"),
    )
    url: str | None = None
    enabled: bool = True
    timeout: int = Field(default=30000, gt=0, description="Request timeout in milliseconds")
    retry_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("retry_attempts", "retryAttempts", "max_retry_attempts"),
    )

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _TRANSPORT_ALIASES.get(lowered, lowered)
        return value

    @field_validator("working_directory", "url", "command", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_transport_fields(self) -> ServerConfig:
        if self.transport is TransportKind.STDIO and not self.command:
            msg = "stdio transport requires a command"
            raise ValueError(msg)
        if self.transport is not TransportKind.STDIO and not self.url:
            msg = f"{self.transport.value} transport requires a url"
            raise ValueError(msg)
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


class RetrySettings(BaseModel):
    """Exponential backoff between connect attempts."""

    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30000, ge=0)


class LLMSettings(BaseModel):
    """LLM provider used for query planning."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("enabled", "enableIntelligentRouting"),
    )
    provider: Literal["openai", "anthropic", "local", "disabled"] = "disabled"
    model: str | None = None
    api_key: str | None = Field(default=None, validation_alias=AliasChoices("api_key", "apiKey"))
    base_url: str | None = Field(default=None, validation_alias=AliasChoices("base_url", "baseUrl"))
    max_tokens: int = Field(
        default=1000, gt=0, validation_alias=AliasChoices("max_tokens", "maxTokens")
    )
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @property
    def is_configured(self) -> bool:
        if not self.enabled or self.provider == "disabled":
            return False
        if self.provider == "local":
            return bool(self.base_url)
        return bool(self.api_key)


class BridgeSettings(BaseModel):
    """Top-level settings document."""

    model_config = ConfigDict(populate_by_name=True)

    servers: dict[str, ServerConfig] = Field(default_factory=dict)
    default_timeout: int = Field(
        default=30000,
        gt=0,
        validation_alias=AliasChoices("default_timeout", "defaultTimeout"),
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    api_keys: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("api_keys", "apiKeys"),
    )
    discovery_interval_seconds: float = Field(default=300.0, gt=0)
    confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("log_level", "logLevel"))

    @model_validator(mode="after")
    def _apply_server_defaults(self) -> BridgeSettings:
        resolved: dict[str, ServerConfig] = {}
        for server_id, config in self.servers.items():
            update: dict[str, Any] = {}
            if not config.name:
                update["name"] = server_id
            if "timeout" not in config.model_fields_set:
                update["timeout"] = self.default_timeout
            resolved[server_id] = config.model_copy(update=update) if update else config
        self.servers = resolved
        if self.llm.api_key is None and self.llm.provider in self.api_keys:
            self.llm = self.llm.model_copy(update={"api_key": self.api_keys[self.llm.provider]})
        return self

    def enabled_servers(self) -> dict[str, ServerConfig]:
        return {server_id: config for server_id, config in self.servers.items() if config.enabled}


def substitute_env(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Replace `${VAR}` and `${VAR:-default}` in every string of a JSON document."""
    env = os.environ if environ is None else environ
    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            name, default = match.group(1), match.group(2)
            if name in env:
                return env[name]
            if default is not None:
                return default
            logger.warning("Environment variable %s referenced in config is not set", name)
            return ""

        return _ENV_REFERENCE.sub(_replace, value)
    if isinstance(value, dict):
        return {key: substitute_env(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_env(item, env) for item in value]
    return value


def parse_settings(
    payload: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> BridgeSettings:
    try:
        return BridgeSettings.model_validate(substitute_env(dict(payload), environ))
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigError(msg) from exc


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> BridgeSettings:
    """Load settings from JSON; a missing file yields defaults."""
    env = os.environ if environ is None else environ
    location = path if path is not None else env.get(CONFIG_ENV_VAR)
    if not location:
        logger.info("No configuration path given, using defaults")
        return BridgeSettings()
    config_path = Path(location).expanduser()
    if not config_path.exists():
        logger.info("No configuration found at %s, using defaults", config_path)
        return BridgeSettings()
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        msg = f"Could not read configuration {config_path}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"Configuration {config_path} must be a JSON object"
        raise ConfigError(msg)
    logger.debug("Loading settings from %s", config_path)
    return parse_settings(payload, environ=env)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
