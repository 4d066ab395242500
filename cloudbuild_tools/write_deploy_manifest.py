"""
Script: cloudbuild_tools/write_deploy_manifest.py
What: Writes a JSON record of what one pipeline run built and where it deployed it.
Doing: Resolves `cloudbuild.yaml` for this project/commit, then writes `artifacts/deploy-manifest.json`.
Why: Makes it easy to see which commit image each service received.
Goal: Save a clear per-run deploy snapshot manifest.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from cloudbuild_tools.common import (
    DEFAULT_PIPELINE_FILE,
    optional_env,
    require_env,
    write_json_file,
)
from cloudbuild_tools.pipeline import (
    default_substitutions,
    deploy_target,
    load_pipeline,
    steps_of_kind,
    substitute_pipeline,
)


ARTIFACT_DIR = Path("artifacts")
ARTIFACT_PATH = ARTIFACT_DIR / "deploy-manifest.json"


def build_manifest_document(
    document: Mapping[str, Any],
    *,
    project_id: str,
    commit_sha: str,
    generated_at: str,
) -> dict:
    # Resolve first so the manifest holds real image refs, not `$COMMIT_SHA`.
    resolved = substitute_pipeline(document, default_substitutions(project_id, commit_sha))
    return {
        "schema_version": 1,
        "generated_at": generated_at,
        "project_id": project_id,
        "commit_sha": commit_sha,
        "images": list(resolved.get("images") or []),
        "deployments": [deploy_target(step) for _number, step in steps_of_kind(resolved, "deploy")],
    }


def main() -> None:
    generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    document = load_pipeline(Path(optional_env("PIPELINE_FILE", DEFAULT_PIPELINE_FILE)))

    manifest = build_manifest_document(
        document,
        project_id=require_env("PROJECT_ID"),
        commit_sha=require_env("COMMIT_SHA"),
        generated_at=generated_at,
    )

    write_json_file(ARTIFACT_PATH, manifest)
    # Print in logs so operators can copy the file contents quickly if needed.
    print(ARTIFACT_PATH.read_text(encoding="utf-8"), end="")


if __name__ == "__main__":
    main()
