from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from anil.domain.entities.playback import PositionSample
from anil.domain.entities.stream import StreamQuality, TranslationType
from anil.domain.errors import AnilError
from anil.infrastructure.config import AppConfig, load_config
from anil.infrastructure.logging import configure_logging, shutdown_logging
from anil.infrastructure.providers import ProviderKind
from anil.interfaces.composition import build_request, build_services

log = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _quality_arg(raw: str) -> StreamQuality:
    text = raw.strip().lower().removesuffix("p")
    if text == "auto":
        return StreamQuality.AUTO
    if text.isdigit():
        for tier in StreamQuality.fixed_tiers():
            if tier.value == int(text):
                return tier
    raise argparse.ArgumentTypeError(
        f"invalid quality {raw!r} (choose auto, 360, 480, 720 or 1080)"
    )


def _episode_arg(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid episode number {raw!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError("episode number must be >= 1")
    return value


def _add_request_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("title", help="Title to search for at the providers.")
    parser.add_argument("episode", type=_episode_arg, help="Episode number (>= 1).")
    parser.add_argument(
        "--quality",
        type=_quality_arg,
        default=None,
        help="Requested quality: auto, 360, 480, 720 or 1080.",
    )
    parser.add_argument(
        "--translation",
        choices=[t.value for t in TranslationType],
        default=None,
        help="Preferred variant (sub/dub).",
    )
    parser.add_argument(
        "--provider",
        action="append",
        choices=[k.value for k in ProviderKind],
        default=None,
        help="Provider to try; repeat to set an order (overrides config).",
    )
    parser.add_argument(
        "--slug",
        default=None,
        help="Provider-specific id; skips the provider's title search.",
    )
    parser.add_argument(
        "--title-id",
        default=None,
        help="Catalog id used for watch history (default: derived from title).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anil",
        description="Resolve anime episode streams, play them in mpv, track progress.",
    )

    # Config wiring flags (no business logic)
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--dotenv",
        default=None,
        help="Path to .env file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level.",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        choices=["json", "console"],
        help="Override log format.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve and print ranked streams.")
    _add_request_args(resolve)

    play = sub.add_parser("play", help="Resolve and play an episode in mpv.")
    _add_request_args(play)

    history = sub.add_parser("history", help="Show stored watch progress.")
    history.add_argument(
        "--limit", type=int, default=20, help="Maximum rows to show (default 20)."
    )

    sub.add_parser("config", help="Print the effective configuration as YAML.")

    return parser


def _parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    return _build_parser().parse_args(list(argv) if argv is not None else None)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _request_from(config: AppConfig, args: argparse.Namespace):
    return build_request(
        config,
        title=args.title,
        episode=args.episode,
        title_id=args.title_id,
        slug=args.slug,
        quality=args.quality,
        translation=TranslationType(args.translation) if args.translation else None,
        providers=args.provider,
    )


async def _cmd_resolve(config: AppConfig, args: argparse.Namespace) -> int:
    request = _request_from(config, args)
    async with build_services(config) as services:
        result = await services.orchestrator.resolve(request)

    for provider, reason in result.failures.items():
        print(f"! {provider}: {reason}", file=sys.stderr)
    if result.chosen is None:
        print(f"error: {result.error}", file=sys.stderr)
        return EXIT_FAILURE

    for i, cand in enumerate(result.ranked):
        marker = "*" if i == 0 else " "
        print(
            f"{marker} {cand.quality.label:>5}  {cand.translation.value}  "
            f"{cand.provider}/{cand.mirror or '-'}  {cand.url}"
        )
    return EXIT_OK


def _print_progress(sample: PositionSample) -> None:
    if not sys.stdout.isatty() or sample.fraction is None:
        return
    duration = sample.duration or 0.0
    print(
        f"\r{_clock(sample.elapsed)} / {_clock(duration)} "
        f"({sample.fraction * 100:5.1f}%)",
        end="",
        flush=True,
    )


def _clock(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


async def _cmd_play(config: AppConfig, args: argparse.Namespace) -> int:
    request = _request_from(config, args)
    async with build_services(config) as services:
        outcome = await services.play.play(request, on_sample=_print_progress)

    if sys.stdout.isatty():
        print()
    if outcome.candidate is not None:
        cand = outcome.candidate
        print(f"played: {cand.provider}/{cand.mirror or '-'} {cand.quality.label}")
    progress = outcome.progress
    status = "completed" if progress.completed else f"{progress.percent:.1f}%"
    print(f"{outcome.episode.display_name}: {status}")
    if outcome.error is not None:
        print(f"error: {outcome.error}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


async def _cmd_history(config: AppConfig, args: argparse.Namespace) -> int:
    async with build_services(config) as services:
        records = await services.store.list_all()

    if not records:
        print("no watch history")
        return EXIT_OK
    for progress in records[: max(args.limit, 0)]:
        status = "done" if progress.completed else f"{progress.percent:5.1f}%"
        print(
            f"{progress.updated_at:%Y-%m-%d %H:%M}  {status:>6}  "
            f"{progress.episode.display_name}"
        )
    return EXIT_OK



async def _cmd_config(config: AppConfig, args: argparse.Namespace) -> int:
    print(yaml.safe_dump(config.to_sectioned_dict(), sort_keys=False), end="")
    return EXIT_OK

_COMMANDS = {
    "resolve": _cmd_resolve,
    "play": _cmd_play,
    "history": _cmd_history,
    "config": _cmd_config,
}


def start(argv: Iterable[str] | None = None) -> int:
    """
    Process entrypoint.

    Loads config exactly once, configures logging, then runs one subcommand.
    Exit codes: 0 success, 1 domain failure, 2 usage error (argparse).
    """
    if argv is None:
        argv = sys.argv[1:]

    args = _parse_args(argv)

    config_path = Path(args.config) if args.config else None
    dotenv_path = Path(args.dotenv) if args.dotenv else None

    cli_overrides: dict[str, Any] = {}
    if args.log_level:
        cli_overrides["log_level"] = args.log_level
    if args.log_format:
        cli_overrides["log_format"] = args.log_format

    try:
        config = load_config(
            config_path=config_path,
            dotenv_path=dotenv_path,
            cli_overrides=cli_overrides,
        )
    except FileNotFoundError as e:
        print(f"error: file not found: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except AnilError as e:
        print(f"error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(config)
    try:
        return asyncio.run(_COMMANDS[args.command](config, args))
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except AnilError as e:
        log.error("command_failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        shutdown_logging()


if __name__ == "__main__":
    raise SystemExit(start())
