from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Mapping

from cloudbuild_tools.common import BuildToolError


def command_map() -> dict[str, Callable[[], None]]:
    """
    Map CLI command names to Python entry functions.

    Each value is a `main()` function from one pipeline helper module.
    """
    from cloudbuild_tools.check_pipeline import main as check_pipeline
    from cloudbuild_tools.render_pipeline import main as render_pipeline
    from cloudbuild_tools.run_pipeline import main as run_pipeline
    from cloudbuild_tools.write_deploy_manifest import main as write_deploy_manifest

    return {
        "render-pipeline": render_pipeline,
        "check-pipeline": check_pipeline,
        "run-pipeline": run_pipeline,
        "write-deploy-manifest": write_deploy_manifest,
    }


def build_parser(commands: Mapping[str, Callable[[], None]]) -> argparse.ArgumentParser:
    """Build argument parser with one positional command choice."""
    parser = argparse.ArgumentParser(
        prog="python3 -m cloudbuild_tools.cli",
        description="Run one pipeline helper command. Inputs are read from environment variables.",
    )
    parser.add_argument("command", choices=sorted(commands.keys()))
    return parser


def run_command(command: str, commands: Mapping[str, Callable[[], None]]) -> None:
    """
    Run one registered command.

    `commands` is passed in to keep this function easy to test.
    """
    commands[command]()


def main(argv: list[str] | None = None) -> None:
    # Build command registry once so parser and dispatcher use the same keys.
    commands = command_map()
    parser = build_parser(commands)
    args = parser.parse_args(argv)

    try:
        run_command(args.command, commands)
    except BuildToolError as exc:
        # Keep failures short and readable in build logs.
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
