"""
Script: release_tools/common.py
What: Shared helper functions and error types used by all `release_tools` modules.
Doing: Wraps env reads, command execution, and GitHub output/summary writes.
Why: Avoids duplicated helper code between the trigger, credential, and publish steps.
Goal: Keep behavior and error reporting consistent across all helper modules.
"""

from __future__ import annotations

import os
import subprocess
from typing import Mapping, Sequence


class ReleaseToolError(RuntimeError):
    """Raised when a release helper hits a known error condition."""


class ConfigurationError(ReleaseToolError):
    """Operator input is missing or malformed. Never retried."""


class AuthenticationError(ReleaseToolError):
    """The identity federation exchange or registry login was rejected."""


class BuildError(ReleaseToolError):
    """The container build step failed."""


class PushError(ReleaseToolError):
    """The registry rejected one tag push."""

    def __init__(self, tag: str, cause: str) -> None:
        super().__init__(f"Push of tag {tag} failed: {cause}")
        self.tag = tag
        self.cause = cause


class RunCancelled(ReleaseToolError):
    """The CI system cancelled the job while the run was in flight."""

    # Set by the publisher when some tags already reached the registry.
    partial_result = None


def require_env(name: str) -> str:
    """Return a required environment variable or raise a clear error."""
    value = os.environ.get(name)
    if value is None or value == "":
        raise ConfigurationError(f"Missing required environment variable: {name}")
    return value


def optional_env(name: str, default: str = "") -> str:
    """Return an environment variable with a fallback default."""
    return os.environ.get(name, default)


def run_cmd(
    args: Sequence[str],
    *,
    capture_output: bool = True,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> str:
    """
    Run a command and return stdout, raising a readable error on failure.

    `input_text` is fed on stdin. Secrets must go there, never into `args`,
    because `args` is echoed in the error message.
    """
    try:
        result = subprocess.run(
            list(args),
            check=True,
            text=True,
            capture_output=capture_output,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            input=input_text,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        details = stderr or stdout or str(exc)
        raise ReleaseToolError(f"Command failed: {' '.join(args)}\n{details}") from exc
    except FileNotFoundError as exc:
        raise ReleaseToolError(f"Command not found: {args[0]}") from exc

    if not capture_output:
        return ""
    return result.stdout


def write_github_outputs(values: Mapping[str, str]) -> None:
    """
    Write step outputs for GitHub Actions.

    GitHub provides a file path in `GITHUB_OUTPUT`; writing `name=value` lines
    there makes that value available to later steps in the same job.
    """
    output_file = require_env("GITHUB_OUTPUT")
    with open(output_file, "a", encoding="utf-8") as handle:
        for key, value in values.items():
            handle.write(f"{key}={value}\n")


def write_step_summary(markdown: str) -> None:
    """Append markdown to the job summary page when GitHub provides one."""
    summary_file = optional_env("GITHUB_STEP_SUMMARY")
    if not summary_file:
        return
    with open(summary_file, "a", encoding="utf-8") as handle:
        handle.write(markdown.rstrip("\n") + "\n")


def env_flag(name: str, default: bool = False) -> bool:
    """Read a `true`/`false` style environment flag."""
    raw = optional_env(name).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def split_list(raw: str) -> list[str]:
    """Split a comma or whitespace separated list, dropping empty items."""
    return [item for item in raw.replace(",", " ").split() if item]
