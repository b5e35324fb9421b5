"""
Script: release_tools/models.py
What: Value types passed between the trigger, credential, and publish steps.
Doing: Defines frozen dataclasses and enums for events, configs, tokens, tags, and results.
Why: Each step receives its inputs explicitly instead of reading shared shell variables.
Goal: Make every run input immutable once it is built.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, Mapping

from release_tools.common import ConfigurationError, PushError, ReleaseToolError


LATEST_TAG = "latest"
MAX_TOKEN_LIFETIME_SECONDS = 3600


class EventKind(str, enum.Enum):
    PUSH = "push"
    TAG_PUSH = "tag_push"
    MANUAL = "manual"


class TriggerMode(str, enum.Enum):
    ANY_TAG_PUSH = "any_tag_push"
    FILTERED_PUSH = "filtered_push"


class RunState(str, enum.Enum):
    PENDING = "pending"
    FILTERED_OUT = "filtered_out"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    BUILDING = "building"
    BUILT = "built"
    PUSHING = "pushing"
    PUSHED = "pushed"
    PARTIAL_PUSH = "partial_push"
    FAILED = "failed"


@dataclass(frozen=True)
class ReleaseEvent:
    event_kind: EventKind
    ref: str
    is_tag: bool


@dataclass(frozen=True)
class FederatedIdentityConfig:
    """
    Workload identity federation settings for one run.

    `provider_id` is the full resource name of the workload identity pool
    provider, for example
    `projects/123456789/locations/global/workloadIdentityPools/ci/providers/github`.
    """

    provider_id: str
    service_account_id: str
    project_id: str
    token_lifetime_seconds: int = 300


@dataclass(frozen=True)
class AccessToken:
    """Short-lived cloud access token. The value is kept out of `repr`."""

    value: str = field(repr=False)
    expires_at: datetime

    def seconds_remaining(self, now: datetime | None = None) -> float:
        current = now or datetime.now(timezone.utc)
        return (self.expires_at - current).total_seconds()

    def expired(self, now: datetime | None = None) -> bool:
        return self.seconds_remaining(now) <= 0


@dataclass(frozen=True)
class ImageCoordinate:
    """
    Fully-qualified image address without a tag.

    Example: `us-docker.pkg.dev/my-project/containers/api`.
    """

    registry_host: str
    project: str
    repository: str
    image_name: str

    @property
    def repository_path(self) -> str:
        return f"{self.registry_host}/{self.project}/{self.repository}/{self.image_name}"

    def ref(self, tag: str) -> str:
        return f"{self.repository_path}:{tag}"


class ImageTagSet:
    """
    Ordered, duplicate-free, non-empty sequence of image tags.

    Duplicates in the input are dropped, keeping the first occurrence, so the
    caller controls push order.
    """

    def __init__(self, tags: Iterable[str]) -> None:
        ordered: list[str] = []
        for tag in tags:
            if tag and tag not in ordered:
                ordered.append(tag)
        if not ordered:
            raise ConfigurationError("Image tag set must contain at least one tag")
        self._tags = tuple(ordered)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __getitem__(self, index: int) -> str:
        return self._tags[index]

    def __contains__(self, tag: object) -> bool:
        return tag in self._tags

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ImageTagSet):
            return self._tags == other._tags
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._tags)

    def __repr__(self) -> str:
        return f"ImageTagSet({list(self._tags)!r})"

    @property
    def primary(self) -> str:
        return self._tags[0]

    def as_list(self) -> list[str]:
        return list(self._tags)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish: digest plus per-tag success and failure."""

    digest: str
    pushed_tags: tuple[str, ...]
    failed_tags: Mapping[str, PushError] = field(default_factory=dict)

    @property
    def state(self) -> RunState:
        if not self.failed_tags:
            return RunState.PUSHED
        if self.pushed_tags:
            return RunState.PARTIAL_PUSH
        return RunState.FAILED


@dataclass(frozen=True)
class RunReport:
    state: RunState
    event: ReleaseEvent
    result: PublishResult | None = None
    error: ReleaseToolError | None = None

    @property
    def error_kind(self) -> str:
        return type(self.error).__name__ if self.error else ""
