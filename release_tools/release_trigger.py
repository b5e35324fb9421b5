"""
Script: release_tools/release_trigger.py
What: Decides whether the current repository event is a tagged release.
Doing: Reads the event from the GitHub env, checks it against the trigger mode, and derives image tags from the ref.
Why: Keeps the release gate in code instead of repeating `if:` expressions in workflow YAML.
Goal: Only tagged releases reach the credential and publish steps.
"""

from __future__ import annotations

import re
from typing import Iterable

from release_tools.common import (
    ConfigurationError,
    env_flag,
    optional_env,
    require_env,
    split_list,
    write_github_outputs,
)
from release_tools.models import LATEST_TAG, EventKind, ImageTagSet, ReleaseEvent, TriggerMode


TAG_REF_PREFIX = "refs/tags/"
TAG_REF_RE = re.compile(r"^refs/tags/.+$")
# Docker/OCI tag grammar.
IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
# Plain releases only: `1.2.3` or `v1.2.3`, no pre-release or build suffix.
SEMVER_RELEASE_RE = re.compile(r"^v?(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)$")

# GitHub events that count as tag pushes when their ref is a tag.
TAG_EVENT_NAMES = {"release", "create"}


def qualifies(event: ReleaseEvent, mode: TriggerMode) -> bool:
    """
    Return True when `event` is a release for the given trigger mode.

    Malformed refs never raise; they just do not qualify.
    """
    ref = event.ref if isinstance(event.ref, str) else ""
    if mode == TriggerMode.ANY_TAG_PUSH:
        return bool(TAG_REF_RE.fullmatch(ref))
    if mode == TriggerMode.FILTERED_PUSH:
        return event.event_kind == EventKind.PUSH and ref.startswith(TAG_REF_PREFIX)
    return False


def event_kind_for(event_name: str, ref: str) -> EventKind:
    """
    Map a CI event name to an event kind.

    GitHub reports tag pushes as plain `push` events, so `push` stays `push`.
    Anything that is neither a push nor a tag event (dispatch, schedule,
    pull request) counts as a manual run and never passes `filtered_push`.
    """
    name = event_name.strip().lower()
    if name == "push":
        return EventKind.PUSH
    if name == EventKind.TAG_PUSH.value or (name in TAG_EVENT_NAMES and ref.startswith(TAG_REF_PREFIX)):
        return EventKind.TAG_PUSH
    return EventKind.MANUAL


def release_event_from_env() -> ReleaseEvent:
    # `RELEASE_EVENT_KIND` lets non-GitHub CI systems pass the kind directly.
    ref = require_env("GITHUB_REF")
    event_name = optional_env("RELEASE_EVENT_KIND") or require_env("GITHUB_EVENT_NAME")
    ref_type = optional_env("GITHUB_REF_TYPE")
    is_tag = ref_type == "tag" if ref_type else ref.startswith(TAG_REF_PREFIX)
    return ReleaseEvent(event_kind=event_kind_for(event_name, ref), ref=ref, is_tag=is_tag)


def trigger_mode_from_env() -> TriggerMode:
    raw = optional_env("TRIGGER_MODE", TriggerMode.FILTERED_PUSH.value).strip().lower()
    try:
        return TriggerMode(raw)
    except ValueError as exc:
        choices = ", ".join(mode.value for mode in TriggerMode)
        raise ConfigurationError(f"Unknown TRIGGER_MODE {raw!r}; expected one of: {choices}") from exc


def version_tag_from_ref(ref: str) -> str:
    """
    Return the image tag for a release ref.

    Example: `refs/tags/1.2.3` becomes `1.2.3`.
    """
    if not ref.startswith(TAG_REF_PREFIX):
        raise ConfigurationError(f"Ref {ref} is not a tag ref")
    version = ref[len(TAG_REF_PREFIX):]
    if not IMAGE_TAG_RE.fullmatch(version):
        raise ConfigurationError(f"Release tag {version!r} is not a valid image tag")
    if version == LATEST_TAG:
        # The version tag must stay distinct from the moving alias.
        raise ConfigurationError(f"Release tag {version!r} collides with the {LATEST_TAG} alias")
    return version


def semver_alias_tags(version: str) -> list[str]:
    """
    Return `MAJOR.MINOR` and `MAJOR` aliases for a plain release version.

    A leading `v` is kept on the aliases (`v1.2.3` gives `v1.2` and `v1`).
    Pre-releases get no aliases.
    """
    match = SEMVER_RELEASE_RE.fullmatch(version)
    if not match:
        return []
    prefix = "v" if version.startswith("v") else ""
    major, minor, _patch = match.groups()
    return [f"{prefix}{major}.{minor}", f"{prefix}{major}"]


def build_tag_set(
    ref: str,
    *,
    extra_tags: Iterable[str] = (),
    semver_aliases: bool = False,
) -> ImageTagSet:
    """
    Build the ordered tag set for a release ref.

    Order is version tag, optional semver aliases, extra tags, then `latest`,
    so the version tag is always pushed before the moving alias.
    """
    version = version_tag_from_ref(ref)
    tags = [version]
    if semver_aliases:
        tags.extend(semver_alias_tags(version))
    for extra_tag in extra_tags:
        if extra_tag == LATEST_TAG:
            continue
        if not IMAGE_TAG_RE.fullmatch(extra_tag):
            raise ConfigurationError(f"Extra tag {extra_tag!r} is not a valid image tag")
        tags.append(extra_tag)
    tags.append(LATEST_TAG)
    return ImageTagSet(tags)


def tag_set_from_env(ref: str) -> ImageTagSet:
    return build_tag_set(
        ref,
        extra_tags=split_list(optional_env("EXTRA_TAGS")),
        semver_aliases=env_flag("SEMVER_ALIASES"),
    )


def main() -> None:
    event = release_event_from_env()
    mode = trigger_mode_from_env()

    if not qualifies(event, mode):
        write_github_outputs({"qualifies": "false", "version": "", "tags": ""})
        print(f"Event {event.event_kind.value} on {event.ref} is not a release ({mode.value}).")
        return

    # Validate tag derivation here so bad tags fail before any credential step.
    tag_set = tag_set_from_env(event.ref)
    write_github_outputs(
        {
            "qualifies": "true",
            "version": tag_set.primary,
            "tags": " ".join(tag_set),
        }
    )
    print(f"Release {event.ref} qualifies ({mode.value}); tags: {' '.join(tag_set)}")


if __name__ == "__main__":
    main()
