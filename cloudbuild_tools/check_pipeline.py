"""
Script: cloudbuild_tools/check_pipeline.py
What: Checks that `cloudbuild.yaml` is internally consistent before the orchestrator runs it.
Doing: Follows the image tag from build to push to deploy, and checks the pull, region, and target rules.
Why: A typo in one tag or service name would otherwise only show up as a broken deploy.
Goal: Fail fast in review or CI when build, push, and deploy steps disagree.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from cloudbuild_tools.common import (
    DEFAULT_PIPELINE_FILE,
    BuildToolError,
    optional_env,
)
from cloudbuild_tools.pipeline import (
    build_tags,
    cache_sources,
    deploy_target,
    is_best_effort,
    load_pipeline,
    pulled_image,
    pushed_image,
    steps_of_kind,
)


DEFAULT_EXPECTED_TARGETS = 2


def find_problems(document: Mapping[str, Any], *, expected_targets: int = DEFAULT_EXPECTED_TARGETS) -> list[str]:
    """
    Return readable consistency problems. Empty list means the pipeline is fine.

    Image refs are compared as written, before substitution, so
    `gcr.io/$PROJECT_ID/x:$COMMIT_SHA` must be spelled the same everywhere.
    """
    problems: list[str] = []

    pull_steps = steps_of_kind(document, "pull")
    build_steps = steps_of_kind(document, "build")
    push_steps = steps_of_kind(document, "push")
    deploy_steps = steps_of_kind(document, "deploy")

    # Cache warming must never stop the pipeline.
    for number, step in pull_steps:
        if not is_best_effort(step):
            problems.append(
                f"Step #{number} pulls {pulled_image(step)} but can fail the pipeline; "
                "append `|| exit 0` or set allowFailure: true"
            )

    if len(build_steps) != 1:
        problems.append(f"Expected exactly one docker build step, found {len(build_steps)}")
    built_tags = {tag for _number, step in build_steps for tag in build_tags(step)}

    pulled = {pulled_image(step) for _number, step in pull_steps}
    for number, step in build_steps:
        for source in cache_sources(step):
            if source not in pulled:
                problems.append(f"Step #{number} uses --cache-from {source} but no step pulls it")

    if not push_steps:
        problems.append("Expected at least one docker push step, found 0")
    pushed: set[str] = set()
    for number, step in push_steps:
        image = pushed_image(step)
        pushed.add(image)
        if image not in built_tags:
            problems.append(f"Step #{number} pushes {image}, which no build step tags")

    targets = [(number, deploy_target(step)) for number, step in deploy_steps]
    if len(targets) != expected_targets:
        problems.append(f"Expected {expected_targets} deploy targets, found {len(targets)}")

    seen_services: set[str] = set()
    regions: set[str] = set()
    for number, target in targets:
        service = target["service"]
        if not service:
            problems.append(f"Step #{number} deploys without a service name")
        elif service in seen_services:
            problems.append(f"Step #{number} deploys service {service} more than once")
        seen_services.add(service)

        if target["image"] not in pushed:
            problems.append(
                f"Step #{number} deploys {target['image'] or '<no --image>'}, which no push step pushes"
            )

        if target["region"]:
            regions.add(target["region"])
        else:
            problems.append(f"Step #{number} deploys {service} without --region")

    if len(regions) > 1:
        problems.append(f"Deploy steps use more than one region: {', '.join(sorted(regions))}")

    declared = list(document.get("images") or [])
    if not declared:
        problems.append("No images declared under `images:`")
    for image in declared:
        if image not in pushed:
            problems.append(f"Declared image {image} is never pushed")

    return problems


def check_or_raise(document: Mapping[str, Any], *, expected_targets: int = DEFAULT_EXPECTED_TARGETS) -> None:
    problems = find_problems(document, expected_targets=expected_targets)
    if problems:
        details = "\n".join(f"- {problem}" for problem in problems)
        raise BuildToolError(f"Pipeline check failed with {len(problems)} problem(s):\n{details}")


def expected_targets_from_env() -> int:
    raw_value = optional_env("EXPECTED_DEPLOY_TARGETS", str(DEFAULT_EXPECTED_TARGETS))
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise BuildToolError(f"EXPECTED_DEPLOY_TARGETS must be a number, got {raw_value}") from exc
    if value < 1:
        raise BuildToolError(f"EXPECTED_DEPLOY_TARGETS must be at least 1, got {value}")
    return value


def main() -> None:
    pipeline_path = Path(optional_env("PIPELINE_FILE", DEFAULT_PIPELINE_FILE))
    document = load_pipeline(pipeline_path)
    check_or_raise(document, expected_targets=expected_targets_from_env())

    # Short summary so the log shows what was actually checked.
    for _number, step in steps_of_kind(document, "push"):
        print(f"Pushed image: {pushed_image(step)}")
    for _number, step in steps_of_kind(document, "deploy"):
        target = deploy_target(step)
        print(f"Deploy target: {target['service']} ({target['region']})")
    print(f"{pipeline_path}: pipeline is consistent.")


if __name__ == "__main__":
    main()
