"""Pydantic configuration models with validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from anil.domain.entities.stream import StreamQuality, TranslationType
from anil.infrastructure.providers import ProviderKind

Environment = Literal["dev", "test", "prod"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console"]


def _normalize_path(value: Any) -> Path:
    """
    Normalize a path-like value without causing filesystem side-effects.

    This function MUST NOT create directories or files.
    """
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise TypeError(f"Expected path-like value, got: {type(value)!r}")


def _parse_quality(value: Any) -> StreamQuality:
    """Strict quality parsing: ``auto`` or an exact tier (``720``/``720p``)."""
    if isinstance(value, StreamQuality):
        return value
    text = str(value).strip().lower().removesuffix("p")
    if text == "auto":
        return StreamQuality.AUTO
    if text.isdigit():
        for tier in StreamQuality.fixed_tiers():
            if tier.value == int(text):
                return tier
    allowed = ", ".join(["auto", *(t.label for t in StreamQuality.fixed_tiers())])
    raise ValueError(f"unknown quality {value!r} (allowed: {allowed})")


class StreamConfig(BaseModel):
    """Stream selection and watch tracking (YAML section: stream.*)."""

    model_config = ConfigDict(extra="forbid")

    quality: StreamQuality = Field(
        default=StreamQuality.Q1080,
        description="Requested quality tier (360/480/720/1080 or auto).",
    )
    translation_type: TranslationType = Field(
        default=TranslationType.SUB,
        description="Preferred audio variant: sub or dub.",
    )
    completion_threshold: float = Field(
        default=85.0,
        ge=1.0,
        le=100.0,
        description="Percent watched at which an episode counts as completed.",
    )
    resume_min_fraction: float = Field(
        default=0.05,
        ge=0.0,
        lt=1.0,
        description="Stored progress above this fraction resumes playback there.",
    )

    @field_validator("quality", mode="before")
    @classmethod
    def _validate_quality(cls, v: Any) -> StreamQuality:
        return _parse_quality(v)


class ProvidersConfig(BaseModel):
    """Provider selection and resolution tuning (YAML section: providers.*)."""

    model_config = ConfigDict(extra="forbid")

    order: list[str] = Field(
        default_factory=lambda: [ProviderKind.ALLANIME.value],
        description="Ordered provider ids tried for every resolution.",
    )
    timeout_seconds: float = Field(
        default=15.0, gt=0, description="Per-HTTP-request timeout."
    )
    call_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Upper bound for one provider listing."
    )
    max_retries: int = Field(
        default=2, ge=0, description="Retries after a transient provider failure."
    )
    backoff_base_seconds: float = Field(
        default=0.5, ge=0, description="Base delay for exponential backoff."
    )
    max_backoff_seconds: float = Field(
        default=8.0, ge=0, description="Backoff delay cap."
    )
    prefer_lower_on_tie: bool = Field(
        default=True,
        description="On equal distance to the requested quality, prefer the lower tier.",
    )
    breaker_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed resolutions before a provider is skipped.",
    )
    breaker_cooldown_seconds: float = Field(
        default=300.0, ge=0, description="How long an open breaker skips a provider."
    )
    search_min_score: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum title similarity for a provider search hit.",
    )
    user_agent: Optional[str] = Field(
        default=None,
        description="User-Agent for provider requests (None = built-in).",
    )

    @field_validator("order")
    @classmethod
    def _validate_order(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("providers.order must not be empty")
        known = {k.value for k in ProviderKind}
        unknown = [name for name in v if name not in known]
        if unknown:
            raise ValueError(
                f"unknown providers {unknown} (known: {sorted(known)})"
            )
        # Keep first occurrence only.
        return list(dict.fromkeys(v))


class PlayerConfig(BaseModel):
    """External player control (YAML section: player.*)."""

    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(
        default_factory=lambda: ["mpv"],
        description="Player executable and fixed leading arguments.",
    )
    extra_args: list[str] = Field(
        default_factory=list, description="Appended before the stream URL."
    )
    ipc_connect_timeout_seconds: float = Field(default=5.0, gt=0)
    ipc_request_timeout_seconds: float = Field(default=2.0, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    max_stale_polls: int = Field(default=3, ge=1)
    load_timeout_seconds: float = Field(
        default=30.0, gt=0, description="How long mpv may take to open a stream."
    )
    terminate_timeout_seconds: float = Field(default=3.0, gt=0)
    next_episode_key: Optional[str] = Field(
        default="Shift+N",
        description="mpv key that loads the next episode (None = unbound).",
    )
    previous_episode_key: Optional[str] = Field(
        default="Shift+P",
        description="mpv key that loads the previous episode (None = unbound).",
    )
    socket_dir: Optional[Path] = Field(
        default=None, description="Where IPC sockets are created (None = temp dir)."
    )

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: list[str]) -> list[str]:
        if not v or not v[0]:
            raise ValueError("player.command must name an executable")
        return v

    @field_validator("socket_dir", mode="before")
    @classmethod
    def _validate_socket_dir(cls, v: Any) -> Any:
        if v is None:
            return None
        return _normalize_path(v)


class AppConfig(BaseModel):
    """
    Canonical application configuration (validated, final).

    Note:
    - YAML is expected to be sectioned (stream/providers/player/storage/logging).
    - Environment variables are handled by EnvOverrides(BaseSettings) to allow strict
      precedence control (defaults < YAML < ENV < CLI) in load.py.
    """

    environment: Environment = Field(
        default="dev",
        description="Runtime environment (affects defaults like log format).",
    )

    stream: StreamConfig = Field(default_factory=StreamConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    player: PlayerConfig = Field(default_factory=PlayerConfig)

    # Storage (YAML section: storage.dir)
    storage_dir: Path = Field(
        default=Path("~/.local/share/anil").expanduser(),
        validation_alias=AliasChoices(
            "storage_dir",
            AliasPath("storage", "dir"),
        ),
        description="Directory of the watch-progress store.",
    )

    # Logging (YAML section: logging.*)
    log_level: LogLevel = Field(
        default="WARNING",
        validation_alias=AliasChoices(
            "log_level",
            AliasPath("logging", "level"),
        ),
        description="Log level.",
    )
    log_format: Optional[LogFormat] = Field(
        default=None,
        validation_alias=AliasChoices(
            "log_format",
            AliasPath("logging", "format"),
        ),
        description=(
            "Log renderer format (console/json). If unset, derived from environment."
        ),
    )

    @field_validator("storage_dir", mode="before")
    @classmethod
    def _validate_paths(cls, v: Any) -> Path:
        return _normalize_path(v)

    @model_validator(mode="after")
    def _derive_defaults(self) -> "AppConfig":
        # Default log format: console in dev/test, json in prod.
        if self.log_format is None:
            self.log_format = "json" if self.environment == "prod" else "console"
        return self

    def to_sectioned_dict(self) -> dict[str, Any]:
        """
        Dump configuration in the sectioned shape used by config.yaml/docs.
        """
        player = self.player.model_dump()
        if player["socket_dir"] is not None:
            player["socket_dir"] = str(player["socket_dir"])
        return {
            "environment": self.environment,
            "stream": {
                "quality": self.stream.quality.label,
                "translation_type": self.stream.translation_type.value,
                "completion_threshold": self.stream.completion_threshold,
                "resume_min_fraction": self.stream.resume_min_fraction,
            },
            "providers": self.providers.model_dump(),
            "player": player,
            "storage": {"dir": str(self.storage_dir)},
            "logging": {"level": self.log_level, "format": self.log_format},
        }


class EnvOverrides(BaseSettings):
    """
    Environment-variable overrides (all optional).

    Intended usage:
    - load.py creates EnvOverrides() to read ANIL_* variables,
      converts to dict of set values, merges into YAML/defaults,
      then validates AppConfig.

    Supported env var examples (flat, explicit):
    - ANIL_STREAM_QUALITY=720
    - ANIL_PROVIDERS_ORDER='["allanime", "megaplay"]'
    - ANIL_PLAYER_COMMAND='["mpv", "--no-config"]'
    - ANIL_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="ANIL_",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Optional[Environment] = None

    stream_quality: Optional[str] = None
    stream_translation_type: Optional[str] = None
    stream_completion_threshold: Optional[float] = None
    stream_resume_min_fraction: Optional[float] = None

    providers_order: Optional[list[str]] = None
    providers_timeout_seconds: Optional[float] = None
    providers_max_retries: Optional[int] = None
    providers_prefer_lower_on_tie: Optional[bool] = None
    providers_user_agent: Optional[str] = None

    player_command: Optional[list[str]] = None
    player_extra_args: Optional[list[str]] = None
    player_socket_dir: Optional[Path] = None

    storage_dir: Optional[Path] = None

    log_level: Optional[LogLevel] = None
    log_format: Optional[LogFormat] = None

    @field_validator("storage_dir", "player_socket_dir", mode="before")
    @classmethod
    def _validate_paths(cls, v: Any) -> Any:
        if v is None:
            return None
        return _normalize_path(v)

    def to_update_dict(self) -> dict[str, Any]:
        """
        Return only values that were actually provided (non-None), for merging.
        """
        return self.model_dump(exclude_none=True)
