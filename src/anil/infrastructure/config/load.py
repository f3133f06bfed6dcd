from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from anil.domain.errors import ConfigError

from .defaults import DEFAULT_CONFIG
from .schema import AppConfig, EnvOverrides


_SECTION_KEYS: set[str] = {"stream", "providers", "player", "storage", "logging"}


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """
    Recursively merge `override` into `base` and return `base`.

    Rules:
    - dict + dict => deep merge
    - otherwise => override wins
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, Mapping)
        ):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _normalize_layer(data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize a layer (defaults/YAML/ENV/CLI) into the canonical *sectioned* shape.

    Canonical top-level keys:
    - environment
    - stream.quality, stream.translation_type, stream.completion_threshold, ...
    - providers.order, providers.timeout_seconds, providers.max_retries, ...
    - player.command, player.extra_args, player.socket_dir, ...
    - storage.dir
    - logging.level, logging.format
    """
    out: dict[str, Any] = {}

    # Pass through already sectioned blocks
    for section in _SECTION_KEYS:
        if section in data and isinstance(data[section], Mapping):
            out[section] = dict(data[section])

    # General
    if "environment" in data:
        out["environment"] = data["environment"]

    # Flat -> section mappings
    flat_map: dict[str, tuple[str, str]] = {
        "stream_quality": ("stream", "quality"),
        "stream_translation_type": ("stream", "translation_type"),
        "stream_completion_threshold": ("stream", "completion_threshold"),
        "stream_resume_min_fraction": ("stream", "resume_min_fraction"),
        "providers_order": ("providers", "order"),
        "providers_timeout_seconds": ("providers", "timeout_seconds"),
        "providers_max_retries": ("providers", "max_retries"),
        "providers_prefer_lower_on_tie": ("providers", "prefer_lower_on_tie"),
        "providers_user_agent": ("providers", "user_agent"),
        "player_command": ("player", "command"),
        "player_extra_args": ("player", "extra_args"),
        "player_socket_dir": ("player", "socket_dir"),
        "storage_dir": ("storage", "dir"),
        "log_level": ("logging", "level"),
        "log_format": ("logging", "format"),
    }

    for flat_key, (section, section_key) in flat_map.items():
        if flat_key in data:
            out.setdefault(section, {})
            out[section][section_key] = data[flat_key]

    return out


def _read_yaml_config(config_path: Path) -> dict[str, Any]:
    raw = config_path.read_text(encoding="utf-8")
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigError(
            f"Config YAML must be a mapping, got: {type(parsed)!r}")
    return parsed


def load_config(
    *,
    config_path: Path | None = None,
    dotenv_path: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration with strict precedence:
    defaults < YAML file < env vars < cli overrides

    This function MUST NOT create files or directories (no filesystem side-effects).

    Raises:
        FileNotFoundError: An explicitly given config or .env file is missing.
        ConfigError: The merged configuration is invalid.
    """
    cli_overrides = cli_overrides or {}

    # Load .env first so it participates as "env vars" layer.
    if dotenv_path is not None:
        if not dotenv_path.exists():
            raise FileNotFoundError(dotenv_path)
        load_dotenv(dotenv_path, override=False)

    base = _normalize_layer(deepcopy(DEFAULT_CONFIG))

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(config_path)
        yaml_layer = _normalize_layer(_read_yaml_config(config_path))
        _deep_merge(base, yaml_layer)

    try:
        env_layer_flat = EnvOverrides().to_update_dict()
    except ValidationError as e:
        raise ConfigError(f"Invalid ANIL_* environment variable: {e}") from e
    env_layer = _normalize_layer(env_layer_flat)
    _deep_merge(base, env_layer)

    cli_layer = _normalize_layer(cli_overrides)
    _deep_merge(base, cli_layer)

    # Validate final merged config (single source of truth).
    try:
        return AppConfig.model_validate(base)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
