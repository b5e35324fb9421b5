"""
Script: release_tools/release_run.py
What: Runs the full release pipeline: trigger gate, credential exchange, build, and push.
Doing: Walks the run state machine, records the outcome, and writes step outputs and the job summary.
Why: One command replaces the manual auth/login/build/push steps of the release workflow.
Goal: Exit with a distinct status per outcome so the workflow can branch on it.
"""

from __future__ import annotations

import json
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from release_tools.common import (
    ReleaseToolError,
    RunCancelled,
    optional_env,
    write_github_outputs,
    write_step_summary,
)
from release_tools.credential_exchange import (
    identity_config_from_env,
    obtain_token,
    validate_identity_config,
)
from release_tools.image_publisher import image_coordinate_from_env, publish, validate_coordinate
from release_tools.models import (
    AccessToken,
    FederatedIdentityConfig,
    ImageCoordinate,
    ImageTagSet,
    PublishResult,
    ReleaseEvent,
    RunReport,
    RunState,
    TriggerMode,
)
from release_tools.release_trigger import (
    qualifies,
    release_event_from_env,
    tag_set_from_env,
    trigger_mode_from_env,
)


EXIT_CODES = {
    RunState.PUSHED: 0,
    RunState.FAILED: 1,
    RunState.PARTIAL_PUSH: 2,
    RunState.FILTERED_OUT: 3,
}


def exit_code_for(state: RunState) -> int:
    """Map a terminal state to the process exit status."""
    try:
        return EXIT_CODES[state]
    except KeyError as exc:
        raise ValueError(f"{state.value} is not a terminal run state") from exc


def _enter(state: RunState) -> RunState:
    print(f"Run state: {state.value}")
    return state


def filtered_report(event: ReleaseEvent, mode: TriggerMode) -> RunReport:
    print(f"{event.event_kind.value} on {event.ref} does not qualify as a release ({mode.value})")
    return RunReport(state=_enter(RunState.FILTERED_OUT), event=event)


def _failed_report(event: ReleaseEvent, state: RunState, exc: ReleaseToolError) -> RunReport:
    print(f"Run failed while {state.value}: {type(exc).__name__}: {exc}")
    # A cancelled push loop still reports the tags that reached the registry.
    partial = exc.partial_result if isinstance(exc, RunCancelled) else None
    return RunReport(state=_enter(RunState.FAILED), event=event, result=partial, error=exc)


def run_release(
    event: ReleaseEvent,
    mode: TriggerMode,
    identity: FederatedIdentityConfig,
    coordinate: ImageCoordinate,
    build_context: str,
    tag_set_factory: Callable[[str], ImageTagSet],
    *,
    obtain: Callable[[FederatedIdentityConfig], AccessToken] = obtain_token,
    publisher: Callable[..., PublishResult] = publish,
    dockerfile: str = "",
    platform: str = "",
) -> RunReport:
    """
    Run one release from an already-built event and config.

    `obtain` and `publisher` are passed in to keep this function easy to test.
    The credential step only runs after the trigger gate passed and the tag
    set was derived.
    """
    _enter(RunState.PENDING)
    if not qualifies(event, mode):
        return filtered_report(event, mode)

    state = RunState.PENDING

    def advance(next_state: RunState) -> None:
        nonlocal state
        state = _enter(next_state)

    try:
        tag_set = tag_set_factory(event.ref)
        validate_coordinate(coordinate)

        advance(RunState.AUTHENTICATING)
        token = obtain(identity)
        advance(RunState.AUTHENTICATED)

        # `publish` reports BUILT and PUSHING back through `on_state`.
        advance(RunState.BUILDING)
        result = publisher(
            coordinate,
            build_context,
            tag_set,
            token,
            dockerfile=dockerfile,
            platform=platform,
            on_state=advance,
        )
    except KeyboardInterrupt:
        return _failed_report(event, state, RunCancelled("Run cancelled by SIGINT"))
    except ReleaseToolError as exc:
        return _failed_report(event, state, exc)

    return RunReport(state=_enter(result.state), event=event, result=result)


def report_outputs(report: RunReport) -> dict[str, str]:
    """Build the `GITHUB_OUTPUT` values for one run. Never contains secrets."""
    result = report.result
    return {
        "state": report.state.value,
        "digest": result.digest if result else "",
        "pushed_tags": " ".join(result.pushed_tags) if result else "",
        "failed_tags": " ".join(result.failed_tags) if result else "",
        "error_kind": report.error_kind,
    }


def report_summary(report: RunReport, coordinate: ImageCoordinate | None) -> str:
    """Render a short markdown summary for the job page."""
    lines = [f"### Release image publish: `{report.state.value}`", ""]
    lines.append(f"- Event: `{report.event.event_kind.value}` on `{report.event.ref}`")
    if report.error is not None:
        lines.append(f"- Error: `{report.error_kind}`: {report.error}")
    result = report.result
    if result is not None:
        if result.digest:
            lines.append(f"- Digest: `{result.digest}`")
        lines.extend(["", "| Tag | Result |", "| --- | --- |"])
        for tag in result.pushed_tags:
            ref = coordinate.ref(tag) if coordinate else tag
            lines.append(f"| `{ref}` | pushed |")
        for tag, error in result.failed_tags.items():
            ref = coordinate.ref(tag) if coordinate else tag
            lines.append(f"| `{ref}` | failed: {error.cause} |")
    return "\n".join(lines) + "\n"


def report_document(report: RunReport) -> dict:
    result = report.result
    return {
        "schema_version": 1,
        "state": report.state.value,
        "event": {
            "kind": report.event.event_kind.value,
            "ref": report.event.ref,
            "is_tag": report.event.is_tag,
        },
        "digest": result.digest if result else "",
        "pushed_tags": list(result.pushed_tags) if result else [],
        "failed_tags": {tag: error.cause for tag, error in result.failed_tags.items()} if result else {},
        "error": {"kind": report.error_kind, "message": str(report.error)} if report.error else None,
    }


def write_report(report: RunReport, coordinate: ImageCoordinate | None) -> None:
    if optional_env("GITHUB_OUTPUT"):
        write_github_outputs(report_outputs(report))
    write_step_summary(report_summary(report, coordinate))

    result_path = optional_env("RELEASE_RESULT_PATH")
    if result_path:
        path = Path(result_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report_document(report), indent=2) + "\n", encoding="utf-8")


def _raise_cancelled(signum: int, _frame: object) -> None:
    raise RunCancelled(f"Run cancelled by signal {signal.Signals(signum).name}")


CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def cancel_on_signals() -> Iterator[None]:
    """
    Turn SIGINT and SIGTERM (CI job cancel) into `RunCancelled`.

    The GitHub runner sends SIGINT first and SIGTERM a few seconds later.
    `subprocess.run` kills its child when an exception interrupts it, so an
    in-flight build or push stops with the run.
    """
    previous = {signum: signal.signal(signum, _raise_cancelled) for signum in CANCEL_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def check_config_main() -> None:
    # Offline preflight: validate operator config without touching the network.
    identity = identity_config_from_env()
    validate_identity_config(identity)
    coordinate = image_coordinate_from_env()
    validate_coordinate(coordinate)
    mode = trigger_mode_from_env()

    print(f"Trigger mode: {mode.value}")
    print(f"Identity provider: {identity.provider_id}")
    print(f"Service account: {identity.service_account_id}")
    print(f"Token lifetime: {identity.token_lifetime_seconds}s")
    print(f"Image: {coordinate.repository_path}")


def main() -> None:
    event = release_event_from_env()
    mode = trigger_mode_from_env()

    coordinate: ImageCoordinate | None = None
    with cancel_on_signals():
        if not qualifies(event, mode):
            # A filtered run needs no identity or image config.
            report = filtered_report(event, mode)
        else:
            try:
                identity = identity_config_from_env()
                coordinate = image_coordinate_from_env()
            except ReleaseToolError as exc:
                print(f"Run failed while pending: {type(exc).__name__}: {exc}")
                report = RunReport(state=RunState.FAILED, event=event, error=exc)
            else:
                # Non-GitHub CI systems can inject the identity token directly.
                assertion = optional_env("CI_ID_TOKEN") or None
                report = run_release(
                    event,
                    mode,
                    identity,
                    coordinate,
                    optional_env("BUILD_CONTEXT", "."),
                    tag_set_from_env,
                    obtain=lambda config: obtain_token(config, assertion=assertion),
                    publisher=publish,
                    dockerfile=optional_env("DOCKERFILE"),
                    platform=optional_env("BUILD_PLATFORM"),
                )

    write_report(report, coordinate)
    if report.result is not None and report.result.failed_tags:
        print(f"Failed tags: {' '.join(report.result.failed_tags)}")
    raise SystemExit(exit_code_for(report.state))


if __name__ == "__main__":
    main()
