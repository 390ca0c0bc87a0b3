# model.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class Toolchain(str, Enum):
    """Toolchain channel a build matrix can be expanded over."""
    STABLE = "stable"
    BETA = "beta"
    NIGHTLY = "nightly"


class Stage(str, Enum):
    """What a step does; decides the job state while it runs and the error raised on failure."""
    FETCH = "fetch"
    TOOLCHAIN = "toolchain"
    BUILD = "build"
    TEST = "test"
    INSTALL_TOOL = "install_tool"
    DEPLOY = "deploy"


class JobKind(str, Enum):
    BUILD = "build"
    DEPLOY = "deploy"


# Every job walks all stages of its kind, in this order.
LIFECYCLES: Dict[JobKind, Tuple[Stage, ...]] = {
    JobKind.BUILD: (Stage.FETCH, Stage.TOOLCHAIN, Stage.BUILD, Stage.TEST),
    JobKind.DEPLOY: (Stage.FETCH, Stage.INSTALL_TOOL, Stage.DEPLOY),
}


class DependencyPolicy(str, Enum):
    """
    How a gated job reacts to the outcome of the jobs it needs.

      - BLOCK: any needed job that did not succeed skips this job
      - COMPLETION: run once every needed job is terminal, whatever the outcome
    """
    BLOCK = "block"
    COMPLETION = "completion"


# ----------------------------------------------------------------------
# Trigger
# ----------------------------------------------------------------------

BRANCH_PREFIX = "refs/heads/"


def normalize_ref(ref: str) -> str:
    """`master` -> `refs/heads/master`; fully qualified refs pass through."""
    ref = ref.strip()
    if not ref:
        raise ValueError("ref must not be empty")
    if ref.startswith("refs/"):
        return ref
    return BRANCH_PREFIX + ref


@dataclass(frozen=True)
class Trigger:
    """The event that starts one pipeline run. Immutable."""
    ref: str
    event: EventKind = EventKind.PUSH
    sha: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref", normalize_ref(self.ref))
        object.__setattr__(self, "event", EventKind(self.event))

    @property
    def ref_name(self) -> str:
        if self.ref.startswith(BRANCH_PREFIX):
            return self.ref[len(BRANCH_PREFIX):]
        return self.ref.split("/", 2)[-1]

    @property
    def is_branch(self) -> bool:
        return self.ref.startswith(BRANCH_PREFIX)

    def on_branch(self, branch: str) -> bool:
        return self.ref == normalize_ref(branch)

    @classmethod
    def for_branch(cls, branch: str, event: EventKind | str = EventKind.PUSH) -> Trigger:
        return cls(ref=normalize_ref(branch), event=EventKind(event))

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> Trigger:
        """
        Build a trigger from CI_REF / CI_EVENT / CI_SHA, falling back to the
        GITHUB_* variables a hosted runner exports.
        """
        env = os.environ if environ is None else environ
        ref = env.get("CI_REF") or env.get("GITHUB_REF")
        if not ref:
            raise ValueError("No ref in environment (set CI_REF or GITHUB_REF)")
        event = env.get("CI_EVENT") or env.get("GITHUB_EVENT_NAME") or EventKind.PUSH.value
        sha = env.get("CI_SHA") or env.get("GITHUB_SHA") or None
        return cls(ref=ref, event=EventKind(event), sha=sha)


# ----------------------------------------------------------------------
# Pipeline definition
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single shell command inside a job."""
    name: str
    run: str
    stage: Stage
    cwd: str | None = None


@dataclass(frozen=True)
class Matrix:
    """One axis a job is expanded over."""
    key: str
    values: Tuple[Any, ...]
    fail_fast: bool = False

    @property
    def env_var(self) -> str:
        return "MATRIX_" + "".join(c if c.isalnum() else "_" for c in self.key).upper()


@dataclass
class Job:
    """
    A CI job: ordered steps plus the metadata the scheduler and gates need.

    `needs` may name a plain job or a matrix job's base name; the latter
    stands for every expansion of it.
    """
    name: str
    steps: list[Step]
    kind: JobKind = JobKind.BUILD

    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    # env var name -> secret name in the SecretStore
    secrets: Dict[str, str] = field(default_factory=dict)

    # gate predicate: only eligible when the trigger is on this branch
    branch: Optional[str] = None

    matrix: Optional[Matrix] = None
    matrix_value: Any = None
    group: Optional[str] = None

    @property
    def group_name(self) -> str:
        return self.group or self.name


@dataclass
class Pipeline:
    name: str
    jobs: List[Job]
    on: Tuple[EventKind, ...] = (EventKind.PUSH, EventKind.PULL_REQUEST)

    def triggered_by(self, trigger: Trigger) -> bool:
        return trigger.event in self.on


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class JobState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    SETTING_UP_TOOLCHAIN = "setting_up_toolchain"
    BUILDING = "building"
    TESTING = "testing"
    INSTALLING_TOOL = "installing_tool"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ELIGIBLE = "not_eligible"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.NOT_ELIGIBLE,
    JobState.SKIPPED,
    JobState.CANCELLED,
})

STAGE_STATES: Dict[Stage, JobState] = {
    Stage.FETCH: JobState.FETCHING,
    Stage.TOOLCHAIN: JobState.SETTING_UP_TOOLCHAIN,
    Stage.BUILD: JobState.BUILDING,
    Stage.TEST: JobState.TESTING,
    Stage.INSTALL_TOOL: JobState.INSTALLING_TOOL,
    Stage.DEPLOY: JobState.DEPLOYING,
}


@dataclass
class StepResult:
    name: str
    stage: Stage
    outcome: str  # "ok" | "failed" | "skipped"
    exit_code: Optional[int] = None
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage.value,
            "outcome": self.outcome,
            "exit_code": self.exit_code,
        }


@dataclass
class JobResult:
    name: str
    kind: JobKind
    state: JobState
    history: List[JobState] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[Exception] = None
    reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def outcomes(self) -> List[Tuple[str, str]]:
        return [(s.name, s.outcome) for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "steps": [s.to_dict() for s in self.steps],
            "error": str(self.error) if self.error else None,
            "reason": self.reason,
            "duration": self.duration,
        }


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_TRIGGERED = "not_triggered"


@dataclass
class PipelineResult:
    pipeline: str
    trigger: Trigger
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    status: RunStatus = RunStatus.SUCCEEDED
    run_id: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status is not RunStatus.FAILED

    def states(self) -> Dict[str, JobState]:
        return {name: r.state for name, r in self.jobs.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "run_id": self.run_id,
            "trigger": {
                "ref": self.trigger.ref,
                "event": self.trigger.event.value,
                "sha": self.trigger.sha,
            },
            "status": self.status.value,
            "jobs": [r.to_dict() for r in self.jobs.values()],
        }
