"""Integration tests for configuration loading with layered precedence.

Tests the real load_config() function with actual YAML files, environment
variables, and CLI overrides to verify precedence: defaults < YAML < ENV < CLI.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from anil.domain.entities import StreamQuality, TranslationType
from anil.domain.errors import ConfigError
from anil.infrastructure.config.load import load_config
from anil.interfaces.composition import player_policy

pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ANIL_ENVIRONMENT",
        "ANIL_LOG_LEVEL",
        "ANIL_LOG_FORMAT",
        "ANIL_STREAM_QUALITY",
        "ANIL_PROVIDERS_ORDER",
        "ANIL_STORAGE_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def yaml_config(tmp_path: Path) -> Path:
    """Write a minimal YAML config and return its path."""
    config = {
        "environment": "test",
        "stream": {"quality": "720p", "translation_type": "dub"},
        "providers": {"order": ["megaplay", "allanime"], "max_retries": 4},
        "player": {"command": ["mpv", "--no-config"], "socket_dir": str(tmp_path)},
        "logging": {"level": "DEBUG", "format": "console"},
        "storage": {"dir": str(tmp_path / "store")},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config), encoding="utf-8")
    return path


def _write(tmp_path: Path, data: object, name: str = "c.yaml") -> Path:
    path = tmp_path / name
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


class TestDefaultsOnly:
    """Load with no YAML, no ENV, no CLI: pure defaults."""

    def test_defaults_produce_valid_config(self) -> None:
        config = load_config()
        assert config.environment == "dev"
        assert config.stream.quality is StreamQuality.Q1080
        assert config.stream.translation_type is TranslationType.SUB
        assert config.stream.completion_threshold == 85.0
        assert config.providers.order == ["allanime"]
        assert config.player.command == ["mpv"]
        assert config.log_level == "WARNING"
        assert config.log_format == "console"  # dev → console
        assert config.storage_dir == Path("~/.local/share/anil").expanduser()

    def test_prod_derives_json_logs(self) -> None:
        config = load_config(cli_overrides={"environment": "prod"})
        assert config.log_format == "json"


class TestYamlOverrides:
    def test_yaml_overrides_defaults(self, yaml_config: Path, tmp_path: Path) -> None:
        config = load_config(config_path=yaml_config)
        assert config.environment == "test"
        assert config.stream.quality is StreamQuality.Q720
        assert config.stream.translation_type is TranslationType.DUB
        assert config.providers.order == ["megaplay", "allanime"]
        assert config.providers.max_retries == 4
        assert config.player.command == ["mpv", "--no-config"]
        assert config.player.socket_dir == tmp_path
        assert config.log_level == "DEBUG"
        assert config.storage_dir == tmp_path / "store"

    def test_partial_override_preserves_defaults(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"providers": {"timeout_seconds": 30}})
        config = load_config(config_path=path)
        assert config.providers.timeout_seconds == 30.0
        assert config.providers.max_retries == 2
        assert config.stream.completion_threshold == 85.0

    def test_empty_yaml_is_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(config_path=path).providers.order == ["allanime"]

    def test_player_keys_and_load_timeout(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            {
                "player": {
                    "load_timeout_seconds": 12,
                    "next_episode_key": "n",
                    "previous_episode_key": None,
                }
            },
        )

        policy = player_policy(load_config(config_path=path))

        assert policy.load_timeout == 12.0
        assert policy.next_episode_key == "n"
        assert policy.previous_episode_key is None

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nonexistent.yaml")


class TestEnvOverrides:
    def test_env_overrides_yaml(
        self, yaml_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANIL_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("ANIL_STREAM_QUALITY", "480")
        monkeypatch.setenv("ANIL_PROVIDERS_ORDER", '["allanime"]')

        config = load_config(config_path=yaml_config)
        assert config.log_level == "ERROR"
        assert config.stream.quality is StreamQuality.Q480
        assert config.providers.order == ["allanime"]
        # YAML values not overridden by ENV stay
        assert config.providers.max_retries == 4

    def test_dotenv_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        dotenv = tmp_path / ".env"
        dotenv.write_text("ANIL_ENVIRONMENT=prod\n", encoding="utf-8")
        # load_dotenv writes os.environ directly; register the key for restore
        monkeypatch.setenv("ANIL_ENVIRONMENT", "")
        monkeypatch.delenv("ANIL_ENVIRONMENT")

        config = load_config(dotenv_path=dotenv)
        assert config.environment == "prod"
        assert config.log_format == "json"

    def test_missing_dotenv_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(dotenv_path=tmp_path / ".env")

    def test_invalid_env_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANIL_LOG_LEVEL", "LOUD")
        with pytest.raises(ConfigError):
            load_config()


class TestCliOverrides:
    def test_cli_beats_env_and_yaml(
        self, yaml_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANIL_LOG_LEVEL", "ERROR")

        config = load_config(
            config_path=yaml_config,
            cli_overrides={"log_level": "INFO", "log_format": "json"},
        )
        assert config.log_level == "INFO"
        assert config.log_format == "json"


class TestValidation:
    @pytest.mark.parametrize(
        "data",
        [
            {"stream": {"quality": "4k"}},
            {"stream": {"completion_threshold": 0}},
            {"stream": {"completion_threshold": 150}},
            {"providers": {"order": []}},
            {"providers": {"order": ["nyaa"]}},
            {"providers": {"max_retries": -1}},
            {"player": {"command": []}},
            {"player": {"unknown_key": 1}},
        ],
    )
    def test_invalid_values_raise_config_error(
        self, tmp_path: Path, data: dict
    ) -> None:
        with pytest.raises(ConfigError):
            load_config(config_path=_write(tmp_path, data))

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=_write(tmp_path, ["a", "b"]))

    def test_broken_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("stream: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path=path)

    def test_duplicate_providers_are_collapsed(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"providers": {"order": ["allanime", "allanime"]}})
        assert load_config(config_path=path).providers.order == ["allanime"]

    def test_sectioned_dump_round_trips(self, yaml_config: Path, tmp_path: Path) -> None:
        config = load_config(config_path=yaml_config)
        dumped = _write(tmp_path, config.to_sectioned_dict(), "dump.yaml")
        assert load_config(config_path=dumped) == config
