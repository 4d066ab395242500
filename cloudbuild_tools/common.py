"""
Script: cloudbuild_tools/common.py
What: Shared helper functions used by all `cloudbuild_tools` modules.
Doing: Wraps env reads, command execution, image reference parsing, and file writes.
Why: Avoids duplicated helper code.
Goal: Keep behavior consistent across all helper modules.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
from pathlib import Path
from typing import Sequence


class BuildToolError(RuntimeError):
    """Raised when a pipeline helper hits a known error condition."""


# `name:tag` where the tag cannot contain `/` (that would be a registry port).
TAG_FROM_REF_RE = re.compile(r"^(?P<repository>[^@]+):(?P<tag>[^/@:]+)$")

DEFAULT_PIPELINE_FILE = "cloudbuild.yaml"


def require_env(name: str) -> str:
    """Return a required environment variable or raise a clear error."""
    value = os.environ.get(name)
    if value is None or value == "":
        raise BuildToolError(f"Missing required environment variable: {name}")
    return value


def optional_env(name: str, default: str = "") -> str:
    """Return an environment variable with a fallback default."""
    return os.environ.get(name, default)


def env_flag(name: str, default: bool = False) -> bool:
    """Read a `true`/`false` environment flag."""
    return optional_env(name, "true" if default else "false").strip().lower() == "true"


def run_cmd(
    args: Sequence[str],
    *,
    capture_output: bool = True,
    cwd: str | None = None,
) -> str:
    """Run a command and return stdout, raising a readable error on failure."""
    try:
        result = subprocess.run(
            list(args),
            check=True,
            text=True,
            capture_output=capture_output,
            cwd=cwd,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        details = stderr or stdout or str(exc)
        raise BuildToolError(f"Command failed: {' '.join(args)}\n{details}") from exc
    except FileNotFoundError as exc:
        raise BuildToolError(f"Command not found: {args[0]}") from exc

    if not capture_output:
        return ""
    return result.stdout


def image_repository(image_ref: str) -> str:
    """
    Return the repository part of an image reference.

    Example: `gcr.io/my-project/rustysnake:abc123` becomes
    `gcr.io/my-project/rustysnake`. Digest refs (`name@sha256:...`) keep
    only the name.
    """
    if "@" in image_ref:
        return image_ref.split("@", 1)[0]
    match = TAG_FROM_REF_RE.match(image_ref)
    return match.group("repository") if match else image_ref


def image_tag(image_ref: str) -> str:
    """Return the tag from an image ref like `name:tag`, or empty string."""
    match = TAG_FROM_REF_RE.match(image_ref)
    return match.group("tag") if match else ""


def write_json_file(path: Path, document: dict) -> None:
    """Write one JSON document with a trailing newline, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")


def split_csv(value: str) -> list[str]:
    """Split a comma-separated env value, dropping blanks."""
    return [item.strip() for item in value.split(",") if item.strip()]
