"""
Script: release_tools/image_publisher.py
What: Builds the release image once and pushes it under every release tag.
Doing: Logs in to the registry with the access token, runs one `docker build`, then tags and pushes each tag in order.
Why: One build with many tag pushes keeps every tag on the same digest.
Goal: Report exactly which tags reached the registry, including partial failures.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from typing import Callable, Mapping

from release_tools.common import (
    AuthenticationError,
    BuildError,
    ConfigurationError,
    PushError,
    ReleaseToolError,
    RunCancelled,
    optional_env,
    require_env,
    run_cmd,
)
from release_tools.models import (
    LATEST_TAG,
    AccessToken,
    ImageCoordinate,
    ImageTagSet,
    PublishResult,
    RunState,
)


# Artifact Registry and GCR accept an OAuth access token as the password for this user.
REGISTRY_USERNAME = "oauth2accesstoken"
DOCKER = "docker"
PUSH_RETRY_BACKOFF_SECONDS = 5.0
DIGEST_RE = re.compile(r"digest: (sha256:[0-9a-f]{64})")
REGISTRY_HOST_RE = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?(:[0-9]+)?$")
PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+([._-][a-z0-9]+)*$")

# Lowercased fragments of docker/registry errors worth one more attempt.
TRANSIENT_PUSH_ERRORS = (
    "i/o timeout",
    "tls handshake timeout",
    "connection reset",
    "connection refused",
    "broken pipe",
    "unexpected eof",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "temporary failure in name resolution",
)

Runner = Callable[..., str]


def validate_coordinate(coordinate: ImageCoordinate) -> None:
    if not REGISTRY_HOST_RE.fullmatch(coordinate.registry_host):
        raise ConfigurationError(f"Invalid registry host {coordinate.registry_host!r}")
    for name, value in (
        ("project", coordinate.project),
        ("repository", coordinate.repository),
        ("image name", coordinate.image_name),
    ):
        # Repository paths may be nested (`team/service`).
        if not value or not all(PATH_COMPONENT_RE.fullmatch(part) for part in value.split("/")):
            raise ConfigurationError(f"Invalid image {name} {value!r}")


def is_transient_push_error(message: str) -> bool:
    lowered = message.lower()
    return any(fragment in lowered for fragment in TRANSIENT_PUSH_ERRORS)


def extract_digest(push_output: str) -> str:
    """Return the manifest digest printed by `docker push`, or empty string."""
    match = DIGEST_RE.search(push_output)
    return match.group(1) if match else ""


def registry_login(
    coordinate: ImageCoordinate,
    token: AccessToken,
    *,
    env: Mapping[str, str],
    runner: Runner = run_cmd,
) -> None:
    # The token goes over stdin so it never shows up in the process list.
    try:
        runner(
            [DOCKER, "login", "--username", REGISTRY_USERNAME, "--password-stdin", coordinate.registry_host],
            env=env,
            input_text=token.value,
        )
    except RunCancelled:
        raise
    except ReleaseToolError as exc:
        raise AuthenticationError(f"Registry login to {coordinate.registry_host} was rejected") from exc


def build_image(
    build_ref: str,
    build_context: str,
    *,
    env: Mapping[str, str],
    dockerfile: str = "",
    platform: str = "",
    runner: Runner = run_cmd,
) -> None:
    command = [DOCKER, "build", "--tag", build_ref]
    if dockerfile:
        command.extend(["--file", dockerfile])
    if platform:
        command.extend(["--platform", platform])
    command.append(build_context)
    try:
        runner(command, env=env, capture_output=False)
    except RunCancelled:
        raise
    except ReleaseToolError as exc:
        raise BuildError(f"Image build failed for context {build_context}: {exc}") from exc


def push_ref(
    image_ref: str,
    *,
    env: Mapping[str, str],
    runner: Runner = run_cmd,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Push one image ref and return the push output.

    Transient network failures get exactly one more attempt after a backoff.
    """
    try:
        return runner([DOCKER, "push", image_ref], env=env)
    except RunCancelled:
        raise
    except ReleaseToolError as exc:
        if not is_transient_push_error(str(exc)):
            raise
        print(f"Transient push failure for {image_ref}; retrying in {PUSH_RETRY_BACKOFF_SECONDS:g}s")
        sleep(PUSH_RETRY_BACKOFF_SECONDS)
    return runner([DOCKER, "push", image_ref], env=env)


def lookup_repo_digest(
    coordinate: ImageCoordinate,
    build_ref: str,
    *,
    env: Mapping[str, str],
    runner: Runner = run_cmd,
) -> str:
    """Read the pushed digest from the local image when `docker push` did not print it."""
    try:
        output = runner([DOCKER, "image", "inspect", "--format", "{{json .RepoDigests}}", build_ref], env=env)
        repo_digests = json.loads(output or "[]") or []
    except RunCancelled:
        raise
    except (ReleaseToolError, ValueError):
        return ""
    prefix = f"{coordinate.repository_path}@"
    for repo_digest in repo_digests:
        if str(repo_digest).startswith(prefix):
            return str(repo_digest)[len(prefix):]
    return ""


def publish(
    coordinate: ImageCoordinate,
    build_context: str,
    tag_set: ImageTagSet,
    token: AccessToken,
    *,
    dockerfile: str = "",
    platform: str = "",
    runner: Runner = run_cmd,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] | None = None,
    on_state: Callable[[RunState], object] | None = None,
) -> PublishResult:
    """
    Build the image once and push it under every tag in `tag_set`.

    Tags are pushed in tag-set order. `latest` is only pushed after the version
    tag (the first tag) made it to the registry. Per-tag failures are collected
    into the result instead of stopping the loop.

    `on_state` is told when the build finished and when pushing starts. A
    cancellation during the push loop re-raises `RunCancelled` with the tags
    pushed so far attached as `partial_result`.
    """
    validate_coordinate(coordinate)
    clock = now or (lambda: datetime.now(timezone.utc))
    advance = on_state or (lambda _state: None)
    build_ref = coordinate.ref(tag_set.primary)

    # Private Docker config so the login token is deleted with the temp dir
    # instead of staying in ~/.docker/config.json.
    with tempfile.TemporaryDirectory(prefix="release-docker-") as docker_config:
        env = {**os.environ, "DOCKER_CONFIG": docker_config}

        registry_login(coordinate, token, env=env, runner=runner)
        print(f"Logged in to {coordinate.registry_host} as {REGISTRY_USERNAME}")

        build_image(build_ref, build_context, env=env, dockerfile=dockerfile, platform=platform, runner=runner)
        print(f"Built {build_ref}")
        advance(RunState.BUILT)

        advance(RunState.PUSHING)
        digest = ""
        pushed: list[str] = []
        failed: dict[str, PushError] = {}
        tags = tag_set.as_list()
        for index, tag in enumerate(tags):
            if tag == LATEST_TAG and tag_set.primary not in pushed:
                failed[tag] = PushError(tag, f"skipped because version tag {tag_set.primary} was not pushed")
                print(str(failed[tag]))
                continue

            if token.expired(clock()):
                failed[tag] = PushError(tag, "access token expired before push")
                print(str(failed[tag]))
                continue

            image_ref = coordinate.ref(tag)
            try:
                if image_ref != build_ref:
                    runner([DOCKER, "tag", build_ref, image_ref], env=env)
                push_output = push_ref(image_ref, env=env, runner=runner, sleep=sleep)
            except RunCancelled as exc:
                for remaining in tags[index:]:
                    failed[remaining] = PushError(remaining, "run cancelled before push completed")
                exc.partial_result = PublishResult(digest=digest, pushed_tags=tuple(pushed), failed_tags=failed)
                raise
            except ReleaseToolError as exc:
                failed[tag] = PushError(tag, str(exc))
                print(str(failed[tag]))
                continue

            pushed.append(tag)
            digest = digest or extract_digest(push_output)
            print(f"Pushed {image_ref}")

        if pushed and not digest:
            digest = lookup_repo_digest(coordinate, build_ref, env=env, runner=runner)

    return PublishResult(digest=digest, pushed_tags=tuple(pushed), failed_tags=failed)


def image_coordinate_from_env() -> ImageCoordinate:
    # Image project defaults to the federation project, the common single-project setup.
    project = optional_env("IMAGE_PROJECT") or require_env("GCP_PROJECT_ID")
    return ImageCoordinate(
        registry_host=require_env("REGISTRY_HOST"),
        project=project,
        repository=require_env("REGISTRY_REPOSITORY"),
        image_name=require_env("IMAGE_NAME"),
    )
