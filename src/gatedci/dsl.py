# src/gatedci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import EventKind, Job, JobKind, LIFECYCLES, Matrix, Pipeline, Stage, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, stage: Stage | str, cwd: str | None = None) -> Step:
    """Create a shell step for a given stage."""
    return Step(name=name, run=cmd, stage=Stage(stage), cwd=cwd)


def checkout(name: str = "Checkout", cmd: Optional[str] = None) -> Step:
    """
    Clone $CI_REPO_URL into the job workspace and check out the trigger's commit.

    Refs a plain clone does not carry (refs/pull/N/merge) are fetched
    explicitly and checked out detached.
    """
    cmd = cmd or (
        'git clone --quiet "$CI_REPO_URL" . && '
        '{ git checkout --quiet "$CI_CHECKOUT" 2>/dev/null || '
        '{ git fetch --quiet origin "$CI_CHECKOUT" && git checkout --quiet FETCH_HEAD; }; }'
    )
    return sh(name, cmd, stage=Stage.FETCH)


def setup_toolchain(name: str = "Setup toolchain", cmd: str = "", **kw) -> Step:
    return sh(name, cmd, stage=Stage.TOOLCHAIN, **kw)


def build_step(name: str = "Build", cmd: str = "", **kw) -> Step:
    return sh(name, cmd, stage=Stage.BUILD, **kw)


def run_tests(name: str = "Run tests", cmd: str = "", **kw) -> Step:
    return sh(name, cmd, stage=Stage.TEST, **kw)


def install_tool(name: str = "Install tool", cmd: str = "", **kw) -> Step:
    return sh(name, cmd, stage=Stage.INSTALL_TOOL, **kw)


def deploy_step(name: str = "Deploy", cmd: str = "", **kw) -> Step:
    return sh(name, cmd, stage=Stage.DEPLOY, **kw)


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def validate_job(j: Job) -> Job:
    """
    A job must pass through every stage of its kind, in order.
    Consecutive steps may share a stage.
    """
    if not j.steps:
        raise ValueError(f"job({j.name!r}) must have at least one step")

    expected = LIFECYCLES[j.kind]
    seen: List[Stage] = []
    for s in j.steps:
        if not seen or seen[-1] is not s.stage:
            seen.append(s.stage)
    if tuple(seen) != expected:
        raise ValueError(
            f"job({j.name!r}) stages {[s.value for s in seen]} do not match "
            f"{j.kind.value} lifecycle {[s.value for s in expected]}"
        )

    for s in j.steps:
        if not s.run.strip():
            raise ValueError(f"job({j.name!r}) step {s.name!r} has an empty command")
    if j.kind is JobKind.DEPLOY and j.matrix is not None:
        raise ValueError(f"deploy job({j.name!r}) cannot have a matrix: a trigger deploys at most once")
    return j


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", checkout(), build_step(...))
    steps_list: Optional[List[Step]] = None,
    kind: JobKind | str = JobKind.BUILD,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[Dict[str, str]] = None,
    branch: Optional[str] = None,
    matrix: Optional[Matrix] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    j = Job(
        name=name,
        steps=steps_final,
        kind=JobKind(kind),
        needs=list(needs or []),
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=dict(secrets or {}),
        branch=branch,
        matrix=matrix,
    )
    return validate_job(j)


def deploy_job(name: str, *steps: Step, branch: str, needs: Optional[List[str]] = None, **kw) -> Job:
    """A deploy job gated on `branch`."""
    return job(name, *steps, kind=JobKind.DEPLOY, branch=branch, needs=needs, **kw)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str, kind: JobKind | str = JobKind.BUILD):
        self.name = name
        self._kind = JobKind(kind)
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._secrets: dict[str, str] = {}
        self._branch: Optional[str] = None
        self._matrix: Optional[Matrix] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, stage: Stage | str, cwd: str | None = None):
        self._steps.append(sh(name, run, stage=stage, cwd=cwd))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_secret(self, env_var: str, secret_name: Optional[str] = None):
        self._secrets[env_var] = secret_name or env_var
        return self

    def only_on(self, branch: str):
        self._branch = branch
        return self

    def over(self, key: str, values: Iterable[Any], *, fail_fast: bool = False):
        self._matrix = matrix(key, values, fail_fast=fail_fast)
        return self

    def build(self) -> Job:
        return job(
            self.name,
            steps_list=self._steps,
            kind=self._kind,
            needs=self._needs,
            env=self._env,
            secrets=self._secrets,
            branch=self._branch,
            matrix=self._matrix,
        )


def builder(name: str, kind: JobKind | str = JobKind.BUILD) -> JobBuilder:
    """Convenience: builder('test').define_step(...).build()"""
    return JobBuilder(name, kind)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(key: str, values: Iterable[Any], *, fail_fast: bool = False) -> Matrix:
    """
    Example:
        job("build", ..., matrix=matrix("rust", ["stable", "beta"]))

    expands into `build (stable)` and `build (beta)`, each with
    MATRIX_RUST set in its environment.
    """
    vals = tuple(v.value if hasattr(v, "value") else v for v in values)
    if not vals:
        raise ValueError(f"matrix({key!r}) needs at least one value")
    if len(set(vals)) != len(vals):
        raise ValueError(f"matrix({key!r}) has duplicate values: {list(vals)}")
    return Matrix(key=key, values=vals, fail_fast=fail_fast)


def expand_matrix(jobs: Sequence[Job]) -> List[Job]:
    """Replace every matrix job by one concrete job per value. Other jobs pass through."""
    out: List[Job] = []
    for j in jobs:
        if j.matrix is None:
            out.append(j)
            continue
        for value in j.matrix.values:
            env = dict(j.env)
            env[j.matrix.env_var] = str(value)
            out.append(
                replace(
                    j,
                    name=f"{j.name} ({value})",
                    env=env,
                    matrix_value=value,
                    group=j.name,
                )
            )
    return out


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper:

        from gatedci import wf, job, sh

        def workflow():
            return wf(job(...), job(...))
    """
    return list(jobs)


def pipeline(
    *jobs: Job,
    name: str = "pipeline",
    on: Iterable[EventKind | str] = (EventKind.PUSH, EventKind.PULL_REQUEST),
) -> Pipeline:
    jobs_l = list(jobs)
    names = [j.name for j in jobs_l]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")
    deploys = [j.name for j in jobs_l if j.kind is JobKind.DEPLOY]
    if len(deploys) > 1:
        raise ValueError(f"A pipeline has at most one deploy job, got {deploys}")
    return Pipeline(name=name, jobs=jobs_l, on=tuple(EventKind(e) for e in on))


def retarget(p: Pipeline, branch: str) -> Pipeline:
    """Copy of `p` with every branch-gated job gated on `branch` instead."""
    jobs = [replace(j, branch=branch) if j.branch is not None else j for j in p.jobs]
    return replace(p, jobs=jobs)


def secret_names(p: Pipeline) -> List[str]:
    """Every secret name some job of `p` asks for."""
    return sorted({name for j in p.jobs for name in j.secrets.values()})
