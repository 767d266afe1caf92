"""Configuration schema for the call client.

Defines Pydantic models for loading and validating client configuration
from YAML files and environment variables.
"""

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class IceServerConfig(BaseModel):
    """STUN/TURN server entry."""

    urls: str | list[str] = Field(..., description="Server URL(s), e.g. stun:host:port")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")


def _default_ice_servers() -> list[IceServerConfig]:
    return [
        IceServerConfig(urls="stun:stun.l.google.com:19302"),
        IceServerConfig(urls="stun:stun1.l.google.com:19302"),
        IceServerConfig(urls="stun:stun2.l.google.com:19302"),
    ]


class VoiceProfile(BaseModel):
    """Microphone capture settings (audio only, no video)."""

    echo_cancellation: bool = Field(default=True, description="Request echo cancellation")
    noise_suppression: bool = Field(default=True, description="Request noise suppression")
    auto_gain_control: bool = Field(default=True, description="Request automatic gain control")
    sample_rate: int = Field(default=48000, ge=8000, le=48000, description="Sample rate in Hz")
    channels: int = Field(default=1, ge=1, le=2, description="Channel count")
    frame_ms: int = Field(default=20, description="Capture block duration in milliseconds")

    @field_validator("frame_ms")
    @classmethod
    def validate_frame_ms(cls, v: int) -> int:
        """Only the frame durations Opus accepts."""
        if v not in (10, 20, 40, 60):
            raise ValueError(f"frame_ms must be one of 10, 20, 40, 60, got {v}")
        return v

    @property
    def frame_samples(self) -> int:
        """Samples per channel in one capture block."""
        return self.sample_rate * self.frame_ms // 1000


class CallerConfig(BaseModel):
    """Root call client configuration."""

    server_url: str = Field(
        default="ws://localhost:3001", description="Signaling server WebSocket URL"
    )
    ice_servers: list[IceServerConfig] = Field(default_factory=_default_ice_servers)
    voice: VoiceProfile = Field(default_factory=VoiceProfile)

    track_ready_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="How long the initiator waits for the local track before offering",
    )
    track_poll_interval_s: float = Field(
        default=0.05, gt=0, description="Local track readiness polling interval"
    )
    input_device: int | str | None = Field(default=None, description="Capture device")
    output_device: int | str | None = Field(default=None, description="Playback device")

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Require a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalise the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "CallerConfig":
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
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "CallerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    if server_url := os.getenv("CALLER_SERVER_URL"):
        data["server_url"] = server_url

    # ICE_URLS is a JSON list of {"urls": ..., "username": ..., "credential": ...}
    if ice_urls := os.getenv("ICE_URLS"):
        try:
            servers = json.loads(ice_urls)
        except json.JSONDecodeError as e:
            raise ValueError(f"ICE_URLS is not valid JSON: {e}") from e
        if not isinstance(servers, list):
            raise ValueError("ICE_URLS must be a JSON list")
        data["ice_servers"] = servers

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
