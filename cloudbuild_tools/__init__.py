"""
Script: cloudbuild_tools package
What: Holds Python helpers for the rustysnake Cloud Build pipeline.
Doing: Groups CLI entrypoints, pipeline readers, and shared utility code in one importable package.
Why: Keeps pipeline rules readable and testable instead of leaving them as YAML conventions.
Goal: Provide a clear, maintainable home for image build and deploy pipeline logic.
"""
