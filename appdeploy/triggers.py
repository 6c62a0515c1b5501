"""
Trigger events and the filters each workflow applies to them.

An event is one of ``push``, ``pull_request``, ``workflow_dispatch`` or
``workflow_run``. Workflows declare which events start them; jobs inside a
workflow then decide for themselves whether to do anything.
"""

import fnmatch
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from appdeploy.errors import ConfigError

PUSH = "push"
PULL_REQUEST = "pull_request"
DISPATCH = "workflow_dispatch"
WORKFLOW_RUN = "workflow_run"

TRUE_STRINGS = {"true", "1", "yes"}
FALSE_STRINGS = {"false", "0", "no", ""}


@dataclass
class UpstreamRun:
    workflow: str
    conclusion: str
    action: str = "completed"


@dataclass
class TriggerEvent:
    name: str
    ref: Optional[str] = None
    changed_paths: List[str] = field(default_factory=list)
    inputs: Dict[str, Any] = field(default_factory=dict)
    workflow_run: Optional[UpstreamRun] = None

    @classmethod
    def push(cls, branch: str, paths: Sequence[str] = ()) -> "TriggerEvent":
        return cls(PUSH, ref=f"refs/heads/{branch}", changed_paths=list(paths))

    @classmethod
    def pull_request(cls, base_branch: str, paths: Sequence[str] = ()) -> "TriggerEvent":
        # The ref of a pull request run is the merge ref, never the base branch
        event = cls(PULL_REQUEST, ref="refs/pull/merge", changed_paths=list(paths))
        event.inputs["base_ref"] = base_branch
        return event

    @classmethod
    def dispatch(cls, branch: str = "main", **inputs) -> "TriggerEvent":
        return cls(DISPATCH, ref=f"refs/heads/{branch}", inputs=dict(inputs))

    @classmethod
    def upstream(cls, workflow: str, conclusion: str) -> "TriggerEvent":
        return cls(WORKFLOW_RUN, workflow_run=UpstreamRun(workflow, conclusion))

    @classmethod
    def from_github_env(cls, environ: Mapping[str, str]) -> "TriggerEvent":
        """Build the event of the current GitHub Actions run."""
        name = environ.get("GITHUB_EVENT_NAME")
        if not name:
            raise ConfigError("GITHUB_EVENT_NAME is not set")

        payload: Dict[str, Any] = {}
        event_path = environ.get("GITHUB_EVENT_PATH")
        if event_path:
            with open(event_path, "r") as file:
                payload = json.load(file)

        ref = environ.get("GITHUB_REF")
        changed = [p for p in environ.get("APPDEPLOY_CHANGED_PATHS", "").split(",") if p]

        if name == PUSH:
            return cls(PUSH, ref=ref, changed_paths=changed)
        if name == PULL_REQUEST:
            event = cls(PULL_REQUEST, ref=ref, changed_paths=changed)
            event.inputs["base_ref"] = payload.get("pull_request", {}).get("base", {}).get("ref")
            return event
        if name == DISPATCH:
            return cls(DISPATCH, ref=ref, inputs=dict(payload.get("inputs") or {}))
        if name == WORKFLOW_RUN:
            run = payload.get("workflow_run") or {}
            return cls(
                WORKFLOW_RUN,
                ref=ref,
                workflow_run=UpstreamRun(
                    run.get("name", ""),
                    run.get("conclusion") or "",
                    payload.get("action", "completed"),
                ),
            )
        return cls(name, ref=ref)

    @property
    def branch(self) -> Optional[str]:
        if self.name == PULL_REQUEST:
            return self.inputs.get("base_ref")
        if self.ref and self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return None


@dataclass
class DispatchInput:
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    options: List[str] = field(default_factory=list)
    description: str = ""

    def coerce(self, value: Any) -> Any:
        if value is None:
            if self.required and self.default is None:
                raise ConfigError(f"Input '{self.name}' is required")
            value = self.default

        if self.type == "boolean":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in TRUE_STRINGS:
                return True
            if text in FALSE_STRINGS:
                return False
            raise ConfigError(f"Input '{self.name}' must be a boolean, got {value!r}")

        if self.type == "choice":
            if value not in self.options:
                raise ConfigError(
                    f"Input '{self.name}' must be one of {', '.join(self.options)}, got {value!r}"
                )
        return value


def resolve_inputs(declared: Sequence[DispatchInput], given: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(given) - {i.name for i in declared}
    if unknown:
        raise ConfigError(f"Unexpected inputs: {', '.join(sorted(unknown))}")
    return {i.name: i.coerce(given.get(i.name)) for i in declared}


def path_matches(pattern: str, path: str) -> bool:
    """Match like workflow path filters: ``*`` stays inside one segment, ``**`` spans any number."""
    return _match_segments(pattern.strip("/").split("/"), path.strip("/").split("/"))


def _match_segments(pattern: List[str], parts: List[str]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    return bool(parts) and fnmatch.fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])


@dataclass
class TriggerFilter:
    branches: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    upstream: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=lambda: [PUSH, DISPATCH])

    def matches_paths(self, changed: Sequence[str]) -> bool:
        if not self.paths:
            return True
        return any(path_matches(pattern, path) for path in changed for pattern in self.paths)

    def matches(self, event: TriggerEvent) -> bool:
        if event.name not in self.events:
            return False
        if event.name in (PUSH, PULL_REQUEST):
            if self.branches and event.branch not in self.branches:
                return False
            return self.matches_paths(event.changed_paths)
        if event.name == WORKFLOW_RUN:
            run = event.workflow_run
            return run is not None and run.action == "completed" and run.workflow in self.upstream
        return True


def is_main_push(event: TriggerEvent, main_branch: str) -> bool:
    return event.name == PUSH and event.ref == f"refs/heads/{main_branch}"


def should_apply(event: TriggerEvent, main_branch: str) -> bool:
    """Apply on a push to the main branch, or a dispatch that asked for it."""
    if is_main_push(event, main_branch):
        return True
    return event.name == DISPATCH and event.inputs.get("apply_changes") is True
