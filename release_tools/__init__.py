"""
Script: release_tools package
What: Holds the Python helpers that publish container images for tagged releases.
Doing: Groups the trigger gate, credential exchange, image publish, and CLI entrypoints in one importable package.
Why: Replaces copy-pasted auth, login, build, and push workflow steps with one tested program.
Goal: Provide a clear, maintainable home for the release-to-registry pipeline.
"""
