"""
Script: release_tools/cli.py
What: Single entrypoint that dispatches to one release helper command.
Doing: Parses the command name, runs its `main()`, and turns known errors into a short message and exit 1.
Why: Workflow steps call one stable command line instead of individual module paths.
Goal: Keep the workflow-facing command surface small and testable.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Mapping

from release_tools.common import ReleaseToolError


def command_map() -> dict[str, Callable[[], None]]:
    """
    Map CLI command names to Python entry functions.

    Imports stay inside this function so `--help` does not load httpx.
    """
    from release_tools.release_run import check_config_main as release_check_config
    from release_tools.release_run import main as release_publish
    from release_tools.release_trigger import main as release_check_trigger

    return {
        "release-check-trigger": release_check_trigger,
        "release-check-config": release_check_config,
        "release-publish": release_publish,
    }


def build_parser(commands: Mapping[str, Callable[[], None]]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-tools",
        description="Run one release helper command. Inputs are read from the CI environment.",
    )
    parser.add_argument("command", choices=sorted(commands.keys()))
    return parser


def run_command(command: str, commands: Mapping[str, Callable[[], None]]) -> None:
    commands[command]()


def main(argv: list[str] | None = None) -> None:
    commands = command_map()
    args = build_parser(commands).parse_args(argv)

    try:
        run_command(args.command, commands)
    except ReleaseToolError as exc:
        # `release-publish` exits with its own state codes; this path covers
        # errors raised before a run report exists.
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
