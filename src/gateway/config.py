"""Configuration schema for the gateway.

Defines Pydantic models for loading and validating gateway configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """Client-facing WebSocket server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    path: str = Field(default="/ws", description="Request path accepted for upgrades")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Require an absolute request path."""
        if not v.startswith("/"):
            raise ValueError(f"WebSocket path must start with '/', got '{v}'")
        return v


class HealthConfig(BaseModel):
    """HTTP health/metrics side channel configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class GeminiConfig(BaseModel):
    """Gemini Live conversational-audio provider configuration."""

    api_key: str = Field(default="", description="Gemini API key")
    model: str = Field(
        default="gemini-2.5-flash-preview-native-audio-dialog",
        description="Live model with native audio output",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    input_sample_rate: int = Field(default=16000, description="Inbound PCM sample rate")
    send_queue_size: int = Field(
        default=64, ge=1, description="Audio frames buffered per session before dropping"
    )

    @field_validator("input_sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that the sample rate is one the Live API accepts."""
        valid_rates = [8000, 16000, 24000, 48000]
        if v not in valid_rates:
            raise ValueError(f"input_sample_rate must be one of {valid_rates}, got {v}")
        return v


class LiveKitConfig(BaseModel):
    """LiveKit room provider configuration."""

    enabled: bool = Field(default=False, description="Create rooms on a LiveKit server")
    url: str = Field(default="ws://localhost:7880", description="LiveKit server URL")
    api_key: str = Field(default="", description="LiveKit API key")
    api_secret: str = Field(default="", description="LiveKit API secret")
    room_prefix: str = Field(
        default="portuguese_tutor", description="Prefix for generated room names"
    )
    empty_timeout_seconds: int = Field(
        default=300, ge=0, description="Seconds before an empty room is closed by LiveKit"
    )
    token_ttl_hours: int = Field(default=1, ge=1, le=24, description="Access token lifetime")

    @property
    def has_credentials(self) -> bool:
        """True when both API key and secret are set."""
        return bool(self.api_key and self.api_secret)


class SessionConfig(BaseModel):
    """Conversation session limits."""

    max_sessions: int = Field(
        default=30, ge=1, le=10000, description="Global concurrent session ceiling"
    )
    start_timeout_seconds: float = Field(
        default=15.0, gt=0, le=120.0, description="Bound on each remote allocation"
    )
    teardown_timeout_seconds: float = Field(
        default=5.0, gt=0, le=60.0, description="Bound on each teardown step"
    )


class GatewayConfig(BaseModel):
    """Root gateway configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    livekit: LiveKitConfig = Field(default_factory=LiveKitConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the logging level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log_level '{v}'")
        return level

    @classmethod
    def from_yaml(cls, path: Path) -> "GatewayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "GatewayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    if not isinstance(data.get(name), dict):
        data[name] = {}
    return data[name]


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay environment variables onto raw configuration data.

    Args:
        data: Raw configuration mapping (modified in place)

    Returns:
        The same mapping, for chaining
    """
    if api_key := os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"):
        _section(data, "gemini")["api_key"] = api_key

    if model := os.getenv("GEMINI_MODEL"):
        _section(data, "gemini")["model"] = model

    # Any LiveKit setting in the environment turns room provisioning on
    if livekit_url := os.getenv("LIVEKIT_URL"):
        livekit = _section(data, "livekit")
        livekit["url"] = livekit_url
        livekit["enabled"] = True

    if livekit_api_key := os.getenv("LIVEKIT_API_KEY"):
        _section(data, "livekit")["api_key"] = livekit_api_key

    if livekit_api_secret := os.getenv("LIVEKIT_API_SECRET"):
        _section(data, "livekit")["api_secret"] = livekit_api_secret

    if max_sessions := os.getenv("MAX_SESSIONS"):
        _section(data, "session")["max_sessions"] = int(max_sessions)

    if port := os.getenv("GATEWAY_PORT"):
        _section(data, "websocket")["port"] = int(port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
