"""
Script: cloudbuild_tools/pipeline.py
What: Reads and writes the Cloud Build pipeline file as plain data.
Doing: Loads/dumps YAML, expands `$VAR` substitutions, and classifies each step by the command it runs.
Why: Check, run, and manifest commands all need the same view of what each step does.
Goal: Keep one shared, tested interpretation of `cloudbuild.yaml`.
"""

from __future__ import annotations

import copy
import re
import shlex
from pathlib import Path
from typing import Any, Mapping

import yaml

from cloudbuild_tools.common import BuildToolError, image_repository


# Builders whose image already sets an entrypoint, so steps may omit it.
BUILDER_ENTRYPOINTS = {
    "gcr.io/cloud-builders/docker": "docker",
    "gcr.io/cloud-builders/gcloud": "gcloud",
    "gcr.io/cloud-builders/gsutil": "gsutil",
    "gcr.io/cloud-builders/git": "git",
}

SHELL_ENTRYPOINTS = {"bash", "sh", "/bin/bash", "/bin/sh"}
SHELL_OPERATORS = {"||", "&&", ";", "|", "&"}

# `$$` is an escaped dollar; `$NAME` and `${NAME}` are substitutions.
SUBSTITUTION_RE = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)
BEST_EFFORT_SUFFIX_RE = re.compile(r"\|\|\s*(?:exit\s+0|true|:)\s*;?\s*$")

# Options that take a separate value, so that value is not the positional arg.
DOCKER_IMAGE_VALUE_FLAGS = frozenset({"--platform"})
DEPLOY_VALUE_FLAGS = frozenset(
    {
        "--image",
        "--region",
        "--platform",
        "--project",
        "--account",
        "--source",
        "--service-account",
        "--memory",
        "--cpu",
        "--port",
        "--concurrency",
        "--timeout",
        "--min-instances",
        "--max-instances",
        "--set-env-vars",
        "--update-env-vars",
        "--env-vars-file",
        "--labels",
        "--update-labels",
        "--tag",
        "--revision-suffix",
        "--vpc-connector",
        "--ingress",
        "--execution-environment",
        "--command",
        "--args",
        "--format",
        "--verbosity",
    }
)

SHORT_SHA_LENGTH = 7


def load_pipeline(path: Path) -> dict:
    """Load and shape-check one pipeline file."""
    if not path.exists():
        raise BuildToolError(f"Pipeline file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise BuildToolError(f"Pipeline file is not valid YAML: {path}\n{exc}") from exc

    validate_document(document, source=str(path))
    return document


def validate_document(document: Any, *, source: str = "pipeline") -> None:
    """Raise when the document does not have the shape Cloud Build expects."""
    if not isinstance(document, dict):
        raise BuildToolError(f"{source}: top level must be a mapping")

    steps = document.get("steps")
    if not isinstance(steps, list) or not steps:
        raise BuildToolError(f"{source}: `steps` must be a non-empty list")

    for number, step in enumerate(steps, start=1):
        if not isinstance(step, dict):
            raise BuildToolError(f"{source}: step #{number} must be a mapping")
        if not str(step.get("name") or ""):
            raise BuildToolError(f"{source}: step #{number} is missing builder `name`")
        args = step.get("args", [])
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise BuildToolError(f"{source}: step #{number} `args` must be a list of strings")

    images = document.get("images", [])
    if not isinstance(images, list) or not all(isinstance(image, str) for image in images):
        raise BuildToolError(f"{source}: `images` must be a list of strings")

    document_substitutions(document, source=source)


def document_substitutions(document: Mapping[str, Any], *, source: str = "pipeline") -> dict[str, str]:
    """Return the document's own `substitutions:` defaults as strings."""
    values = document.get("substitutions") or {}
    if not isinstance(values, dict):
        raise BuildToolError(f"{source}: `substitutions` must be a mapping")
    for key, value in values.items():
        if not isinstance(key, str) or isinstance(value, (dict, list)) or value is None:
            raise BuildToolError(f"{source}: substitution {key} must map a name to a plain value")
    return {key: str(value) for key, value in values.items()}


def dump_pipeline(document: Mapping[str, Any]) -> str:
    """Render a pipeline document as YAML, keeping key order."""
    return yaml.safe_dump(dict(document), sort_keys=False, default_flow_style=False)


def default_substitutions(project_id: str, commit_sha: str) -> dict[str, str]:
    """Built-in values the orchestrator provides for a commit-triggered build."""
    return {
        "PROJECT_ID": project_id,
        "COMMIT_SHA": commit_sha,
        "SHORT_SHA": commit_sha[:SHORT_SHA_LENGTH],
    }


def substitute(
    value: str,
    substitutions: Mapping[str, str],
    *,
    allow_missing: bool = False,
) -> str:
    """
    Expand `$NAME` / `${NAME}` references in one string.

    `$$` turns into a single `$`. Unknown names raise unless
    `allow_missing` is set, in which case they are left untouched.
    """

    def replace(match: re.Match) -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("braced") or match.group("bare")
        if name in substitutions:
            return str(substitutions[name])
        if allow_missing:
            return match.group(0)
        raise BuildToolError(f"No value for substitution ${name} in: {value}")

    return SUBSTITUTION_RE.sub(replace, value)


def substitute_pipeline(
    document: Mapping[str, Any],
    substitutions: Mapping[str, str],
    *,
    allow_missing: bool = False,
) -> dict:
    """
    Return a copy of the pipeline with `steps` and `images` substituted.

    Values under the document's own `substitutions:` key act as defaults;
    explicit `substitutions` win.
    """
    merged = document_substitutions(document)
    merged.update(substitutions)

    def expand(node: Any) -> Any:
        if isinstance(node, str):
            return substitute(node, merged, allow_missing=allow_missing)
        if isinstance(node, list):
            return [expand(item) for item in node]
        if isinstance(node, dict):
            return {key: expand(item) for key, item in node.items()}
        return node

    resolved = copy.deepcopy(dict(document))
    resolved["steps"] = expand(resolved.get("steps", []))
    if "images" in resolved:
        resolved["images"] = expand(resolved["images"])
    return resolved


def _base_command(step: Mapping[str, Any]) -> list[str]:
    entrypoint = str(step.get("entrypoint") or "")
    if not entrypoint:
        entrypoint = BUILDER_ENTRYPOINTS.get(image_repository(str(step.get("name") or "")), "")
    if not entrypoint:
        return []
    return [entrypoint, *[str(arg) for arg in step.get("args", [])]]


def step_command(step: Mapping[str, Any]) -> list[str]:
    """Return the argv one step runs: entrypoint first, then its args."""
    command = _base_command(step)
    if not command:
        raise BuildToolError(
            f"Step with builder {step.get('name')} has no `entrypoint` and no known default"
        )
    return command


def _shell_script(command: list[str]) -> str:
    if not command or command[0] not in SHELL_ENTRYPOINTS or "-c" not in command[1:]:
        return ""
    index = command.index("-c")
    return command[index + 1] if index + 1 < len(command) else ""


def effective_command(step: Mapping[str, Any]) -> list[str]:
    """
    Return the first real command a step runs.

    For `bash -c "docker pull x || exit 0"` this is `["docker", "pull", "x"]`.
    Steps with an unknown builder and no entrypoint give an empty list.
    """
    command = _base_command(step)
    script = _shell_script(command)
    if not script:
        return command

    lexer = shlex.shlex(script, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    first: list[str] = []
    for token in lexer:
        if token in SHELL_OPERATORS:
            break
        first.append(token)
    return first


def is_best_effort(step: Mapping[str, Any]) -> bool:
    """True when a failure in this step cannot abort the pipeline."""
    if step.get("allowFailure") is True:
        return True
    script = _shell_script(_base_command(step))
    return bool(script and BEST_EFFORT_SUFFIX_RE.search(script))


def step_kind(step: Mapping[str, Any]) -> str:
    """Classify a step as `pull`, `build`, `push`, `deploy`, or `other`."""
    command = effective_command(step)
    if len(command) < 2:
        return "other"
    program = command[0].rsplit("/", 1)[-1]
    if program == "docker" and command[1] in {"pull", "build", "push"}:
        return command[1]
    if program == "gcloud" and command[1:3] == ["run", "deploy"]:
        return "deploy"
    return "other"


def option_values(args: list[str], *flags: str) -> list[str]:
    """Collect values of repeated flags given as `--flag value` or `--flag=value`."""
    values: list[str] = []
    index = 0
    while index < len(args):
        arg = args[index]
        if arg in flags and index + 1 < len(args):
            values.append(args[index + 1])
            index += 2
            continue
        for flag in flags:
            if arg.startswith(f"{flag}="):
                values.append(arg[len(flag) + 1 :])
                break
        index += 1
    return values


def _first_positional(args: list[str], value_flags: frozenset[str] = frozenset()) -> str:
    """First non-option argument, skipping the values of `value_flags`."""
    index = 0
    while index < len(args):
        arg = args[index]
        if arg in value_flags:
            index += 2
            continue
        if not arg.startswith("-"):
            return arg
        index += 1
    return ""


def build_tags(step: Mapping[str, Any]) -> list[str]:
    """Image tags written by a `docker build` step."""
    return option_values(effective_command(step)[2:], "-t", "--tag")


def cache_sources(step: Mapping[str, Any]) -> list[str]:
    """Images a `docker build` step reuses layers from."""
    return option_values(effective_command(step)[2:], "--cache-from")


def pulled_image(step: Mapping[str, Any]) -> str:
    return _first_positional(effective_command(step)[2:], DOCKER_IMAGE_VALUE_FLAGS)


def pushed_image(step: Mapping[str, Any]) -> str:
    return _first_positional(effective_command(step)[2:], DOCKER_IMAGE_VALUE_FLAGS)


def deploy_target(step: Mapping[str, Any]) -> dict[str, str]:
    """
    Read service, image, and region from a `gcloud run deploy` step.

    Missing values come back as empty strings so checks can report them.
    """
    args = effective_command(step)[3:]
    images = option_values(args, "--image")
    regions = option_values(args, "--region")
    return {
        "service": _first_positional(args, DEPLOY_VALUE_FLAGS),
        "image": images[0] if images else "",
        "region": regions[0] if regions else "",
    }


def steps_of_kind(document: Mapping[str, Any], kind: str) -> list[tuple[int, dict]]:
    """Return `(step_number, step)` pairs for one kind, numbered from 1."""
    return [
        (number, step)
        for number, step in enumerate(document.get("steps", []), start=1)
        if step_kind(step) == kind
    ]
