"""Configuration schema for the matchmaker server.

Defines Pydantic models for loading and validating server configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket signaling transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3001, ge=0, le=65535, description="Bind port (0 = ephemeral)")
    max_connections: int = Field(
        default=1000, ge=2, description="Maximum concurrent connections"
    )
    max_message_bytes: int = Field(
        default=65536,
        ge=1024,
        description="Maximum accepted frame size (SDP blobs are a few KB)",
    )


class HealthConfig(BaseModel):
    """Health check and metrics HTTP endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=0,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class MatchmakerConfig(BaseModel):
    """Root matchmaker configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

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
        """Validate and normalise the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        """Resolved health endpoint port."""
        if self.health.port is not None:
            return self.health.port
        return self.websocket.port + 1 if self.websocket.port else 0

    @classmethod
    def from_yaml(cls, path: Path) -> "MatchmakerConfig":
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

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "MatchmakerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    if host := os.getenv("MATCHMAKER_HOST"):
        data.setdefault("websocket", {})["host"] = host

    if port := os.getenv("MATCHMAKER_PORT"):
        data.setdefault("websocket", {})["port"] = int(port)

    if health_port := os.getenv("MATCHMAKER_HEALTH_PORT"):
        data.setdefault("health", {})["port"] = int(health_port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
