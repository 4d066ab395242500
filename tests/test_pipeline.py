"""
Script: tests/test_pipeline.py
What: Tests the shared pipeline readers in `cloudbuild_tools/pipeline.py`.
Doing: Checks YAML loading errors, substitution rules, and step classification against the repo pipeline.
Why: Every command relies on these readers agreeing with what Cloud Build actually runs.
Goal: Keep the interpretation of `cloudbuild.yaml` stable over time.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from cloudbuild_tools.common import BuildToolError, image_repository, image_tag
from cloudbuild_tools.pipeline import (
    build_tags,
    cache_sources,
    default_substitutions,
    deploy_target,
    effective_command,
    is_best_effort,
    load_pipeline,
    option_values,
    pulled_image,
    pushed_image,
    step_command,
    step_kind,
    substitute,
    substitute_pipeline,
)


REPO_PIPELINE = Path(__file__).resolve().parents[1] / "cloudbuild.yaml"
COMMIT_IMAGE = "gcr.io/$PROJECT_ID/rustysnake:$COMMIT_SHA"
LATEST_IMAGE = "gcr.io/$PROJECT_ID/rustysnake:latest"


class LoadPipelineTests(unittest.TestCase):
    def _write(self, directory: str, text: str) -> Path:
        path = Path(directory) / "cloudbuild.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_loads_repo_pipeline(self) -> None:
        document = load_pipeline(REPO_PIPELINE)
        self.assertEqual(len(document["steps"]), 5)
        self.assertEqual(document["images"], [COMMIT_IMAGE])

    def test_missing_file_raises(self) -> None:
        with self.assertRaises(BuildToolError):
            load_pipeline(Path("/nonexistent/cloudbuild.yaml"))

    def test_invalid_yaml_raises(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = self._write(temp_dir, "steps: [\n")
            with self.assertRaises(BuildToolError):
                load_pipeline(path)

    def test_empty_steps_raise(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = self._write(temp_dir, "steps: []\n")
            with self.assertRaises(BuildToolError):
                load_pipeline(path)

    def test_step_without_builder_name_raises(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = self._write(temp_dir, "steps:\n  - args: ['push', 'x']\n")
            with self.assertRaises(BuildToolError):
                load_pipeline(path)

    def test_shape_errors_raise(self) -> None:
        cases = {
            "top level list": "- steps\n",
            "args not strings": "steps:\n  - name: gcr.io/cloud-builders/docker\n    args: [push, [x]]\n",
            "args not a list": "steps:\n  - name: gcr.io/cloud-builders/docker\n    args: push x\n",
            "images not a list": "steps:\n  - name: gcr.io/cloud-builders/docker\n    args: [push, x]\nimages: x\n",
            "substitutions not a mapping": (
                "steps:\n  - name: gcr.io/cloud-builders/docker\n    args: [push, x]\n"
                "substitutions: [_IMAGE]\n"
            ),
        }
        for label, text in cases.items():
            with self.subTest(label), tempfile.TemporaryDirectory() as temp_dir:
                path = self._write(temp_dir, text)
                with self.assertRaises(BuildToolError):
                    load_pipeline(path)


class SubstitutionTests(unittest.TestCase):
    def test_expands_bare_and_braced_names(self) -> None:
        value = substitute(
            "gcr.io/$PROJECT_ID/app:${COMMIT_SHA}",
            {"PROJECT_ID": "demo", "COMMIT_SHA": "abc"},
        )
        self.assertEqual(value, "gcr.io/demo/app:abc")

    def test_double_dollar_is_literal(self) -> None:
        self.assertEqual(substitute("echo $$HOME", {}), "echo $HOME")

    def test_unknown_name_raises(self) -> None:
        with self.assertRaises(BuildToolError):
            substitute("$BRANCH_NAME", {})

    def test_unknown_name_kept_when_allowed(self) -> None:
        self.assertEqual(substitute("$BRANCH_NAME", {}, allow_missing=True), "$BRANCH_NAME")

    def test_default_substitutions_include_short_sha(self) -> None:
        values = default_substitutions("demo", "0123456789abcdef")
        self.assertEqual(values["SHORT_SHA"], "0123456")

    def test_document_substitutions_are_defaults(self) -> None:
        document = {
            "steps": [{"name": "gcr.io/cloud-builders/docker", "args": ["push", "$_IMAGE:$COMMIT_SHA"]}],
            "substitutions": {"_IMAGE": "gcr.io/demo/app"},
        }
        resolved = substitute_pipeline(document, {"COMMIT_SHA": "abc"})
        self.assertEqual(resolved["steps"][0]["args"], ["push", "gcr.io/demo/app:abc"])
        # Original document stays untouched.
        self.assertEqual(document["steps"][0]["args"][1], "$_IMAGE:$COMMIT_SHA")

    def test_non_mapping_substitutions_raise(self) -> None:
        document = {
            "steps": [{"name": "gcr.io/cloud-builders/docker", "args": ["push", "x"]}],
            "substitutions": ["_IMAGE"],
        }
        with self.assertRaises(BuildToolError):
            substitute_pipeline(document, {})

    def test_resolves_repo_pipeline(self) -> None:
        resolved = substitute_pipeline(
            load_pipeline(REPO_PIPELINE), default_substitutions("demo", "abc123")
        )
        self.assertEqual(resolved["images"], ["gcr.io/demo/rustysnake:abc123"])


class StepClassificationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.steps = load_pipeline(REPO_PIPELINE)["steps"]

    def test_step_kinds_follow_pipeline_order(self) -> None:
        kinds = [step_kind(step) for step in self.steps]
        self.assertEqual(kinds, ["pull", "build", "push", "deploy", "deploy"])

    def test_unwraps_bash_script_to_first_command(self) -> None:
        self.assertEqual(effective_command(self.steps[0]), ["docker", "pull", LATEST_IMAGE])

    def test_only_pull_step_is_best_effort(self) -> None:
        self.assertEqual([is_best_effort(step) for step in self.steps], [True, False, False, False, False])

    def test_allow_failure_flag_is_best_effort(self) -> None:
        step = {"name": "gcr.io/cloud-builders/docker", "args": ["pull", "x"], "allowFailure": True}
        self.assertTrue(is_best_effort(step))

    def test_shell_fallback_suffixes_are_best_effort(self) -> None:
        for fallback in ("|| exit 0", "|| true", "|| :"):
            step = {
                "name": "gcr.io/cloud-builders/docker",
                "entrypoint": "bash",
                "args": ["-c", f"docker pull {LATEST_IMAGE} {fallback}"],
            }
            with self.subTest(fallback=fallback):
                self.assertTrue(is_best_effort(step))

    def test_build_tags_and_cache_sources(self) -> None:
        self.assertEqual(build_tags(self.steps[1]), [COMMIT_IMAGE, LATEST_IMAGE])
        self.assertEqual(cache_sources(self.steps[1]), [LATEST_IMAGE])

    def test_pushed_image(self) -> None:
        self.assertEqual(pushed_image(self.steps[2]), COMMIT_IMAGE)

    def test_deploy_target(self) -> None:
        self.assertEqual(
            deploy_target(self.steps[4]),
            {"service": "rustysnake-standard", "image": COMMIT_IMAGE, "region": "us-west2"},
        )

    def test_docker_builder_uses_default_entrypoint(self) -> None:
        self.assertEqual(step_command(self.steps[2]), ["docker", "push", COMMIT_IMAGE])

    def test_unknown_builder_without_entrypoint_raises(self) -> None:
        with self.assertRaises(BuildToolError):
            step_command({"name": "example.com/custom-builder", "args": ["go"]})

    def test_option_values_accepts_equals_form(self) -> None:
        args = ["deploy", "svc", "--image=gcr.io/p/a:1", "--region", "us-west2"]
        self.assertEqual(option_values(args, "--image"), ["gcr.io/p/a:1"])
        self.assertEqual(option_values(args, "--region"), ["us-west2"])

    def test_script_stops_at_any_shell_operator(self) -> None:
        for operator in ("&&", ";", "|"):
            step = {
                "name": "gcr.io/cloud-builders/docker",
                "entrypoint": "bash",
                "args": ["-c", f"docker push gcr.io/p/a:1 {operator} echo done"],
            }
            with self.subTest(operator=operator):
                self.assertEqual(effective_command(step), ["docker", "push", "gcr.io/p/a:1"])

    def test_deploy_target_with_options_before_service(self) -> None:
        step = {
            "name": "gcr.io/google.com/cloudsdktool/cloud-sdk",
            "entrypoint": "gcloud",
            "args": ["run", "deploy", "--region", "us-west2", "rustysnake", "--image", COMMIT_IMAGE],
        }
        self.assertEqual(
            deploy_target(step),
            {"service": "rustysnake", "image": COMMIT_IMAGE, "region": "us-west2"},
        )

    def test_platform_option_before_image(self) -> None:
        pull = {
            "name": "gcr.io/cloud-builders/docker",
            "entrypoint": "bash",
            "args": ["-c", f"docker pull --platform linux/amd64 {LATEST_IMAGE} || exit 0"],
        }
        push = {"name": "gcr.io/cloud-builders/docker", "args": ["push", "--platform", "linux/amd64", COMMIT_IMAGE]}
        self.assertEqual(pulled_image(pull), LATEST_IMAGE)
        self.assertEqual(pushed_image(push), COMMIT_IMAGE)


class ImageReferenceTests(unittest.TestCase):
    def test_splits_repository_and_tag(self) -> None:
        self.assertEqual(image_repository("gcr.io/demo/rustysnake:abc"), "gcr.io/demo/rustysnake")
        self.assertEqual(image_tag("gcr.io/demo/rustysnake:abc"), "abc")

    def test_registry_port_is_not_a_tag(self) -> None:
        self.assertEqual(image_tag("localhost:5000/rustysnake"), "")
        self.assertEqual(image_repository("localhost:5000/rustysnake"), "localhost:5000/rustysnake")


if __name__ == "__main__":
    unittest.main()
