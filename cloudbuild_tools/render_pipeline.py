"""
Script: cloudbuild_tools/render_pipeline.py
What: Writes `cloudbuild.yaml` from a small set of deploy settings.
Doing: Builds the pull, build, push, and per-service deploy steps, checks them, then dumps YAML.
Why: Adding a deploy target or moving region should be one setting, not five hand-edited steps.
Goal: Produce a pipeline file that always passes `check-pipeline`.
"""

from __future__ import annotations

from pathlib import Path

from cloudbuild_tools.check_pipeline import check_or_raise
from cloudbuild_tools.common import (
    DEFAULT_PIPELINE_FILE,
    BuildToolError,
    optional_env,
    split_csv,
)
from cloudbuild_tools.pipeline import dump_pipeline


DOCKER_BUILDER = "gcr.io/cloud-builders/docker"
CLOUD_SDK_BUILDER = "gcr.io/google.com/cloudsdktool/cloud-sdk"

DEFAULT_IMAGE_NAME = "rustysnake"
DEFAULT_SERVICES = "rustysnake,rustysnake-standard"
DEFAULT_REGION = "us-west2"
DEFAULT_REGISTRY_HOST = "gcr.io"


def build_pipeline_document(
    *,
    registry_host: str,
    image_name: str,
    services: list[str],
    region: str,
    project_id: str = "$PROJECT_ID",
    commit_sha: str = "$COMMIT_SHA",
) -> dict:
    """
    Build the pipeline document as a plain dict.

    `project_id` and `commit_sha` default to the orchestrator's substitution
    names so the output stays a template.
    """
    if not services:
        raise BuildToolError("At least one deploy service is required")

    repository = f"{registry_host}/{project_id}/{image_name}"
    commit_image = f"{repository}:{commit_sha}"
    latest_image = f"{repository}:latest"

    steps: list[dict] = [
        # Warm the layer cache; a missing `latest` image is not an error.
        {
            "name": DOCKER_BUILDER,
            "entrypoint": "bash",
            "args": ["-c", f"docker pull {latest_image} || exit 0"],
        },
        {
            "name": DOCKER_BUILDER,
            "args": [
                "build",
                "-t",
                commit_image,
                "-t",
                latest_image,
                "--cache-from",
                latest_image,
                ".",
            ],
        },
        {
            "name": DOCKER_BUILDER,
            "args": ["push", commit_image],
        },
    ]
    for service in services:
        steps.append(
            {
                "name": CLOUD_SDK_BUILDER,
                "entrypoint": "gcloud",
                "args": ["run", "deploy", service, "--image", commit_image, "--region", region],
            }
        )

    return {"steps": steps, "images": [commit_image]}


def main() -> None:
    services = split_csv(optional_env("DEPLOY_SERVICES", DEFAULT_SERVICES))
    document = build_pipeline_document(
        registry_host=optional_env("REGISTRY_HOST", DEFAULT_REGISTRY_HOST),
        image_name=optional_env("IMAGE_NAME", DEFAULT_IMAGE_NAME),
        services=services,
        region=optional_env("DEPLOY_REGION", DEFAULT_REGION),
    )

    # Never write a file that the check command would reject.
    check_or_raise(document, expected_targets=len(services))

    pipeline_path = Path(optional_env("PIPELINE_FILE", DEFAULT_PIPELINE_FILE))
    pipeline_path.write_text(dump_pipeline(document), encoding="utf-8")
    print(f"Wrote {pipeline_path} with {len(document['steps'])} steps")
    print(f"Deploy targets: {', '.join(services)}")


if __name__ == "__main__":
    main()
