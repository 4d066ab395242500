"""
Script: cloudbuild_tools/run_pipeline.py
What: Runs the `cloudbuild.yaml` steps locally, in order, the way the orchestrator would.
Doing: Substitutes project/commit values, checks the file, then runs each step's command and stops on the first failure.
Why: Lets a maintainer reproduce or dry-run a deploy without waiting for a triggered build.
Goal: Same step order and failure policy as the hosted pipeline, with readable logs.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from cloudbuild_tools.check_pipeline import check_or_raise, expected_targets_from_env
from cloudbuild_tools.common import (
    DEFAULT_PIPELINE_FILE,
    BuildToolError,
    env_flag,
    optional_env,
    require_env,
    run_cmd,
)
from cloudbuild_tools.pipeline import (
    default_substitutions,
    load_pipeline,
    step_command,
    step_kind,
    substitute_pipeline,
)


StepRunner = Callable[[Sequence[str], str], None]

STATUS_OK = "ok"
STATUS_ALLOWED_FAILURE = "allowed-failure"
STATUS_SKIPPED = "dry-run"


def run_step_command(command: Sequence[str], cwd: str) -> None:
    """Default runner: stream step output straight into the log."""
    run_cmd(command, capture_output=False, cwd=cwd)


def describe_step(number: int, step: Mapping[str, Any]) -> str:
    label = str(step.get("id") or step_kind(step))
    return f"Step #{number} ({label})"


def run_steps(
    steps: Sequence[Mapping[str, Any]],
    *,
    workdir: str = ".",
    runner: StepRunner = run_step_command,
    dry_run: bool = False,
) -> list[str]:
    """
    Run steps one by one and return one status per step that ran.

    A failing step raises `BuildToolError` and later steps never run.
    Steps marked `allowFailure: true` report the error and continue.
    """
    # Resolve every command up front so a bad step stops the run before any side effect.
    commands: list[list[str]] = []
    for number, step in enumerate(steps, start=1):
        try:
            commands.append(step_command(step))
        except BuildToolError as exc:
            raise BuildToolError(f"{describe_step(number, step)} cannot run: {exc}") from exc

    statuses: list[str] = []
    for number, (step, command) in enumerate(zip(steps, commands), start=1):
        label = describe_step(number, step)
        print(f"{label}: {shlex.join(command)}")

        if dry_run:
            statuses.append(STATUS_SKIPPED)
            continue

        try:
            runner(command, workdir)
        except BuildToolError as exc:
            if step.get("allowFailure") is True:
                print(f"{label} failed but allowFailure is set; continuing.\n{exc}")
                statuses.append(STATUS_ALLOWED_FAILURE)
                continue
            raise BuildToolError(f"{label} failed; stopping pipeline.\n{exc}") from exc
        statuses.append(STATUS_OK)
    return statuses


def main() -> None:
    substitutions = default_substitutions(require_env("PROJECT_ID"), require_env("COMMIT_SHA"))
    pipeline_path = Path(optional_env("PIPELINE_FILE", DEFAULT_PIPELINE_FILE))
    workdir = optional_env("SOURCE_DIR", ".")
    dry_run = env_flag("DRY_RUN")

    document = load_pipeline(pipeline_path)
    if not env_flag("SKIP_CHECKS"):
        check_or_raise(document, expected_targets=expected_targets_from_env())

    resolved = substitute_pipeline(document, substitutions)
    statuses = run_steps(resolved["steps"], workdir=workdir, dry_run=dry_run)

    print(f"Ran {len(statuses)} step(s) from {pipeline_path}" + (" (dry run)" if dry_run else ""))
    for image in resolved.get("images") or []:
        print(f"Artifact image: {image}")


if __name__ == "__main__":
    main()
