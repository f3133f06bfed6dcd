"""Tests for the anil command line: argument parsing, request building, exit codes."""

from __future__ import annotations

import argparse
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import yaml
from fakes import make_candidate

from anil.domain.entities import (
    EpisodeRef,
    PlaybackOutcome,
    ResolutionResult,
    StreamQuality,
    TranslationType,
    WatchProgress,
)
from anil.domain.errors import AllProvidersExhausted
from anil.infrastructure.config import load_config
from anil.interfaces.cli import cli
from anil.interfaces.composition import build_request, slugify_title


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump({"storage": {"dir": str(tmp_path / "store")}}), encoding="utf-8"
    )
    return path


def _fake_services(monkeypatch: pytest.MonkeyPatch, **services: object) -> None:
    @asynccontextmanager
    async def fake_build_services(config):
        yield SimpleNamespace(**services)

    monkeypatch.setattr(cli, "build_services", fake_build_services)


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


class TestQualityArg:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("1080", StreamQuality.Q1080),
            ("720p", StreamQuality.Q720),
            ("480P", StreamQuality.Q480),
            (" 360 ", StreamQuality.Q360),
            ("auto", StreamQuality.AUTO),
            ("AUTO", StreamQuality.AUTO),
        ],
    )
    def test_accepted(self, raw: str, expected: StreamQuality) -> None:
        assert cli._quality_arg(raw) is expected

    @pytest.mark.parametrize("raw", ["4k", "9999", "", "720i", "-1"])
    def test_rejected(self, raw: str) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            cli._quality_arg(raw)


class TestEpisodeArg:
    def test_positive(self) -> None:
        assert cli._episode_arg("12") == 12

    @pytest.mark.parametrize("raw", ["0", "-3", "one", "1.5"])
    def test_rejected(self, raw: str) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            cli._episode_arg(raw)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_play_arguments(self) -> None:
        args = cli._parse_args(
            [
                "--log-level",
                "DEBUG",
                "play",
                "Sousou no Frieren",
                "3",
                "--quality",
                "720",
                "--translation",
                "dub",
                "--provider",
                "megaplay",
                "--provider",
                "allanime",
                "--slug",
                "frieren-18542",
            ]
        )
        assert args.command == "play"
        assert args.title == "Sousou no Frieren"
        assert args.episode == 3
        assert args.quality is StreamQuality.Q720
        assert args.translation == "dub"
        assert args.provider == ["megaplay", "allanime"]
        assert args.slug == "frieren-18542"
        assert args.log_level == "DEBUG"

    def test_defaults_are_unset(self) -> None:
        args = cli._parse_args(["resolve", "Frieren", "1"])
        assert args.quality is None
        assert args.translation is None
        assert args.provider is None
        assert args.title_id is None

    def test_history_limit(self) -> None:
        assert cli._parse_args(["history", "--limit", "5"]).limit == 5

    @pytest.mark.parametrize(
        "argv",
        [
            [],
            ["play", "Frieren"],
            ["play", "Frieren", "0"],
            ["play", "Frieren", "1", "--provider", "nyaa"],
            ["play", "Frieren", "1", "--quality", "4k"],
        ],
    )
    def test_usage_errors_exit_2(self, argv: list[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli._parse_args(argv)
        assert exc_info.value.code == 2


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestBuildRequest:
    def test_slugify_title(self) -> None:
        assert slugify_title("Frieren: Beyond Journey's End") == "frieren-beyond-journey-s-end"
        assert slugify_title("Shingeki no Kyojin") == "shingeki-no-kyojin"
        assert slugify_title("Pokémon") == "pokemon"
        assert slugify_title("!!!") == "untitled"

    def test_config_fills_unset_fields(self) -> None:
        config = load_config()
        request = build_request(config, title="Sousou no Frieren", episode=3)
        assert request.episode.title_id == "sousou-no-frieren"
        assert request.episode.episode == 3
        assert request.episode.provider_slug is None
        assert request.quality is config.stream.quality
        assert request.translation is config.stream.translation_type
        assert request.providers == tuple(config.providers.order)

    def test_explicit_fields_win(self) -> None:
        request = build_request(
            load_config(),
            title="Frieren",
            episode=1,
            title_id="frieren",
            slug="frieren-18542",
            quality=StreamQuality.AUTO,
            translation=TranslationType.DUB,
            providers=["megaplay"],
        )
        assert request.episode.title_id == "frieren"
        assert request.episode.provider_slug == "frieren-18542"
        assert request.quality is StreamQuality.AUTO
        assert request.translation is TranslationType.DUB
        assert request.providers == ("megaplay",)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class TestStart:
    def test_missing_config_file(self, tmp_path: Path, capsys) -> None:
        code = cli.start(["--config", str(tmp_path / "nope.yaml"), "history"])
        assert code == cli.EXIT_FAILURE
        assert "file not found" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path: Path, capsys) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"stream": {"quality": "4k"}}), encoding="utf-8")
        code = cli.start(["--config", str(path), "history"])
        assert code == cli.EXIT_FAILURE
        assert "invalid configuration" in capsys.readouterr().err

    def test_usage_error_raises_system_exit(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.start(["bogus"])
        assert exc_info.value.code == 2

    def test_empty_history(self, config_file: Path, capsys) -> None:
        code = cli.start(["--config", str(config_file), "history"])
        assert code == cli.EXIT_OK
        assert "no watch history" in capsys.readouterr().out

    def test_config_dump_loads_back(
        self, config_file: Path, tmp_path: Path, capsys
    ) -> None:
        code = cli.start(["--config", str(config_file), "config"])

        assert code == cli.EXIT_OK
        dumped = yaml.safe_load(capsys.readouterr().out)
        assert dumped["stream"]["quality"] == "1080p"
        assert dumped["storage"]["dir"] == str(tmp_path / "store")
        again = tmp_path / "again.yaml"
        again.write_text(yaml.safe_dump(dumped), encoding="utf-8")
        assert load_config(config_path=again) == load_config(config_path=config_file)

    def test_resolve_prints_ranked(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys
    ) -> None:
        best = make_candidate(mirror="S-mp4")
        other = make_candidate(quality=StreamQuality.Q720, mirror="Luf-mp4")

        async def resolve(request):
            return ResolutionResult(
                request=request,
                chosen=best,
                ranked=(best, other),
                failures={"megaplay": "not_found: no candidates"},
            )

        _fake_services(monkeypatch, orchestrator=SimpleNamespace(resolve=resolve))

        code = cli.start(["--config", str(config_file), "resolve", "Frieren", "3"])

        captured = capsys.readouterr()
        assert code == cli.EXIT_OK
        lines = captured.out.splitlines()
        assert lines[0].startswith("*")
        assert best.url in lines[0]
        assert other.url in lines[1]
        assert "megaplay: not_found" in captured.err

    def test_resolve_failure(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys
    ) -> None:
        async def resolve(request):
            failures = {"allanime": "not_found: no candidates"}
            return ResolutionResult(
                request=request,
                error=AllProvidersExhausted(failures),
                failures=failures,
            )

        _fake_services(monkeypatch, orchestrator=SimpleNamespace(resolve=resolve))

        code = cli.start(["--config", str(config_file), "resolve", "Frieren", "3"])

        assert code == cli.EXIT_FAILURE
        assert "all providers exhausted" in capsys.readouterr().err

    def test_interrupt_exits_130(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store = SimpleNamespace(list_all=AsyncMock(side_effect=KeyboardInterrupt))
        _fake_services(monkeypatch, store=store)

        code = cli.start(["--config", str(config_file), "history"])

        assert code == cli.EXIT_INTERRUPTED

    def test_play_reports_final_episode(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys
    ) -> None:
        async def play(request, *, on_sample=None):
            episode = EpisodeRef("frieren", 4, "Frieren")
            return PlaybackOutcome(
                episode=episode,
                progress=WatchProgress(episode, fraction=0.5),
                candidate=make_candidate(mirror="S-mp4"),
            )

        _fake_services(monkeypatch, play=SimpleNamespace(play=play))

        code = cli.start(["--config", str(config_file), "play", "Frieren", "3"])

        out = capsys.readouterr().out
        assert code == cli.EXIT_OK
        assert "played: allanime/S-mp4 1080p" in out
        assert "Frieren - Episode 4: 50.0%" in out
