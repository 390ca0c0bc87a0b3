# runner.py
from __future__ import annotations

import os
import re
import runpy
import shutil
import subprocess
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .config import Settings
from .dag import build_dag, slug, topo_levels
from .dsl import expand_matrix
from .errors import CIError, SecretExposureError, StepFailure, step_failure
from .gate import GateDecision, branch_allows, evaluate
from .model import (
    DependencyPolicy,
    Job,
    JobResult,
    JobState,
    Pipeline,
    PipelineResult,
    RunStatus,
    STAGE_STATES,
    Step,
    StepResult,
    Trigger,
)
from .secretstore import SecretStore
from .state import JobStateMachine
from .ui.console import get_console

# stdout+stderr kept per step (tail)
OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain with rustup or fix PATH.",
    "flyctl": "Install flyctl in an install_tool step and append its bin dir to $CI_PATH.",
    "curl": "Install curl or fix PATH.",
}


@dataclass
class RunContext:
    """Everything a job needs from the run that is not part of its definition."""
    trigger: Trigger
    run_id: str
    work_dir: Path
    secrets: SecretStore = field(default_factory=SecretStore)
    repo_url: str = ""
    keep_workspaces: bool = False

    @property
    def run_dir(self) -> Path:
        return self.work_dir / self.run_id

    def base_env(self) -> Dict[str, str]:
        """Process env with every secret source variable removed."""
        hidden = set(self.secrets.names())
        return {k: v for k, v in os.environ.items() if k not in hidden}

    def ci_env(self, job: Job, workspace: Path, path_file: Path) -> Dict[str, str]:
        t = self.trigger
        return {
            "CI": "true",
            "CI_RUN_ID": self.run_id,
            "CI_REF": t.ref,
            "CI_REF_NAME": t.ref_name,
            "CI_EVENT": t.event.value,
            "CI_SHA": t.sha or "",
            "CI_CHECKOUT": t.sha or (t.ref_name if t.is_branch else t.ref),
            "CI_REPO_URL": self.repo_url,
            "CI_JOB": job.name,
            "CI_WORKSPACE": str(workspace),
            "CI_PATH": str(path_file),
        }


def _hint_for(cmd: str, exit_code: int) -> Optional[str]:
    # 127: command not found (sh)
    if exit_code != 127:
        return None
    for tool, hint in TOOL_HINTS.items():
        if re.search(rf"(^|[\s;&|(]){re.escape(tool)}\b", cmd):
            return hint
    return None


def _read_path_file(path_file: Path) -> List[str]:
    if not path_file.exists():
        return []
    entries = [line.strip() for line in path_file.read_text().splitlines() if line.strip()]
    # last appended wins, like GITHUB_PATH
    return list(reversed(entries))


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"gatedci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        loaded = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        return Pipeline(name=wf_path.stem, jobs=loaded)
    if isinstance(loaded, Pipeline):
        return loaded

    raise TypeError(
        "Workflow must return/define a Pipeline or a List[Job]. "
        "Define workflow(), PIPELINE = pipeline(...) or JOBS = [Job, ...]."
    )


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def check_secret_exposure(jobs: List[Job], secrets: SecretStore) -> None:
    """Secrets travel through the environment only, never on a command line."""
    for j in jobs:
        for s in j.steps:
            leaked = secrets.find_in(s.run)
            if leaked:
                raise SecretExposureError(j.name, s.name, leaked)


def _run_step(job: Job, step: Step, workspace: Path, env: Dict[str, str], secrets: SecretStore) -> StepResult:
    cwd = (workspace / (step.cwd or ".")).resolve()

    try:
        if not cwd.is_dir():
            raise FileNotFoundError(f"step cwd not found: {cwd}")
        proc = subprocess.run(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
        )
    except OSError as e:
        raise step_failure(step.stage, job=job.name, step=step.name, exit_code=126, output=secrets.redact(str(e)))

    output = secrets.redact((proc.stdout or "") + (proc.stderr or ""))[-OUTPUT_TAIL:]

    if proc.returncode != 0:
        raise step_failure(
            step.stage,
            job=job.name,
            step=step.name,
            exit_code=proc.returncode,
            output=output,
            hint=_hint_for(step.run, proc.returncode),
        )
    return StepResult(name=step.name, stage=step.stage, outcome="ok", exit_code=0, output=output)


def run_job(job: Job, ctx: RunContext, cancelled: Optional[threading.Event] = None) -> JobResult:
    """
    Run one job in its own workspace.

    Steps run strictly in order; the first failing step fails the job and
    the remaining steps are recorded as skipped without running.
    Step failures are reported on the result, never raised.
    """
    console = get_console()
    machine = JobStateMachine(job.name, job.kind)
    result = JobResult(name=job.name, kind=job.kind, state=machine.state)

    if cancelled is not None and cancelled.is_set():
        machine.transition(JobState.CANCELLED)
        result.reason = "a matrix sibling failed (fail-fast)"
        result.state, result.history = machine.state, machine.history
        console.print_gate(job.name, result.state, result.reason)
        return result

    name = slug(job.name)
    workspace = ctx.run_dir / name
    path_file = ctx.run_dir / "_meta" / f"{name}.path"
    workspace.mkdir(parents=True, exist_ok=False)
    path_file.parent.mkdir(parents=True, exist_ok=True)

    env = ctx.base_env()
    env.update(job.env)
    env.update(ctx.ci_env(job, workspace, path_file))
    # secrets last: only this job's, only through env
    env.update(ctx.secrets.resolve(job.secrets))
    base_path = env.get("PATH", os.defpath)

    console.print_job_start(job.name)
    result.started_at = time.monotonic()

    try:
        for idx, step in enumerate(job.steps):
            target = STAGE_STATES[step.stage]
            if machine.state is not target:
                machine.transition(target)

            env["PATH"] = os.pathsep.join(_read_path_file(path_file) + [base_path])
            console.print_step(job.name, step.name)

            try:
                step_result = _run_step(job, step, workspace, env, ctx.secrets)
            except StepFailure as e:
                result.steps.append(
                    StepResult(step.name, step.stage, "failed", exit_code=e.exit_code, output=e.output)
                )
                result.steps.extend(
                    StepResult(s.name, s.stage, "skipped") for s in job.steps[idx + 1:]
                )
                result.error = e
                machine.transition(JobState.FAILED)
                console.print_failure(
                    f"[{job.name}] {step.name}",
                    e.message,
                    exit_code=e.exit_code,
                    hint=e.details.get("hint"),
                    output=e.output,
                )
                break

            result.steps.append(step_result)
            console.print_step_output(job.name, step_result.output)
        else:
            machine.transition(JobState.SUCCEEDED)
    finally:
        result.finished_at = time.monotonic()
        if not ctx.keep_workspaces:
            shutil.rmtree(workspace, ignore_errors=True)
            path_file.unlink(missing_ok=True)

    result.state, result.history = machine.state, machine.history
    console.print_job_finished(job.name, result.state, result.duration)
    return result


def _run_and_signal(job: Job, ctx: RunContext, cancelled: Optional[threading.Event]) -> JobResult:
    res = run_job(job, ctx, cancelled)
    # set from the worker so queued siblings see it before they start
    if cancelled is not None and res.state is JobState.FAILED:
        cancelled.set()
    return res


def _resolved(job: Job, decision: GateDecision) -> JobResult:
    """Result for a job the gate refused; it never ran."""
    machine = JobStateMachine(job.name, job.kind)
    machine.transition(decision.state)
    return JobResult(
        name=job.name,
        kind=job.kind,
        state=machine.state,
        history=machine.history,
        reason=decision.reason,
    )


def _crashed(job: Job, exc: Exception) -> JobResult:
    err = exc if isinstance(exc, CIError) else CIError(
        kind=type(exc).__name__, job=job.name, step=None, message=str(exc)
    )
    return JobResult(
        name=job.name,
        kind=job.kind,
        state=JobState.FAILED,
        history=[JobState.PENDING, JobState.FAILED],
        error=err,
    )


def overall_status(results: Dict[str, JobResult]) -> RunStatus:
    """Succeeded only if every required job did; not-eligible jobs are not required."""
    required = [r for r in results.values() if r.state is not JobState.NOT_ELIGIBLE]
    if all(r.state is JobState.SUCCEEDED for r in required):
        return RunStatus.SUCCEEDED
    return RunStatus.FAILED


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan_pipeline(pipeline: Union[Pipeline, List[Job]], trigger: Trigger) -> List[Tuple[str, bool, str]]:
    """
    Decide, without running anything, which jobs a trigger would start.

    Returns (job name, would run, reason) in topological order. A job with
    needs "would run" subject to the dependency policy at run time.
    """
    if isinstance(pipeline, list):
        pipeline = Pipeline(name="pipeline", jobs=pipeline)

    jobs = expand_matrix(pipeline.jobs)
    deps, adj, indeg = build_dag(jobs)
    by_name = {j.name: j for j in jobs}

    plan: List[Tuple[str, bool, str]] = []
    for level in topo_levels(adj, indeg):
        for name in level:
            j = by_name[name]
            if not pipeline.triggered_by(trigger):
                plan.append((name, False, f"pipeline does not run on {trigger.event.value}"))
            elif not branch_allows(j, trigger):
                plan.append((name, False, f"not eligible: only on {j.branch}"))
            elif deps[name]:
                plan.append((name, True, f"after {', '.join(deps[name])}"))
            else:
                plan.append((name, True, "runs immediately"))
    return plan


def run_pipeline(
    pipeline: Union[Pipeline, List[Job]],
    trigger: Trigger,
    *,
    secrets: Optional[SecretStore] = None,
    settings: Optional[Settings] = None,
    policy: Optional[DependencyPolicy] = None,
    repo_url: str = "",
    max_workers: Optional[int] = None,
    keep_workspaces: Optional[bool] = None,
    run_id: Optional[str] = None,
) -> PipelineResult:
    """
    Run a pipeline for one trigger.

    - Matrix jobs are expanded and scheduled concurrently.
    - A job is started only once every job it needs is terminal; its gate
      (branch predicate, then dependency policy) decides whether it runs.
    - A failed job never cancels a sibling unless its matrix is fail_fast.
    """
    console = get_console()
    settings = settings or Settings.from_env()
    policy = DependencyPolicy(policy or settings.dependency_policy)
    secrets = secrets or SecretStore()

    if isinstance(pipeline, list):
        pipeline = Pipeline(name="pipeline", jobs=pipeline)

    result = PipelineResult(
        pipeline=pipeline.name,
        trigger=trigger,
        run_id=run_id or uuid.uuid4().hex[:12],
    )

    if not pipeline.triggered_by(trigger):
        result.status = RunStatus.NOT_TRIGGERED
        console.print_not_triggered(pipeline.name, trigger)
        return result

    jobs = expand_matrix(pipeline.jobs)
    by_name = {j.name: j for j in jobs}
    deps, adj, indeg = build_dag(jobs)
    check_secret_exposure(jobs, secrets)

    ctx = RunContext(
        trigger=trigger,
        run_id=result.run_id,
        work_dir=Path(settings.work_dir).resolve(),
        secrets=secrets,
        repo_url=repo_url,
        keep_workspaces=settings.keep_workspaces if keep_workspaces is None else keep_workspaces,
    )

    if max_workers is None:
        max_workers = settings.max_workers or max(2, len(jobs))

    console.print_run_started(pipeline.name, trigger, len(jobs))

    results: Dict[str, JobResult] = {}
    cancel_events: Dict[str, threading.Event] = {
        j.group_name: threading.Event() for j in jobs if j.matrix is not None and j.matrix.fail_fast
    }
    ready: List[str] = []

    def finish(name: str, res: JobResult) -> None:
        results[name] = res
        for nxt in adj[name]:
            indeg[nxt] -= 1
            if indeg[nxt] == 0 and nxt not in results:
                ready.append(nxt)

    # branch predicate first: an ineligible job is never scheduled
    for j in jobs:
        if not branch_allows(j, trigger):
            decision = evaluate(j, trigger, [], policy)
            console.print_gate(j.name, decision.state, decision.reason)
            finish(j.name, _resolved(j, decision))

    ready.extend(n for n in by_name if indeg[n] == 0 and n not in results and n not in ready)
    in_flight: Dict[Future, str] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            while ready:
                name = ready.pop(0)
                if name in results or name in in_flight.values():
                    continue
                j = by_name[name]
                decision = evaluate(j, trigger, [results[d] for d in deps[name]], policy)
                if not decision.run:
                    console.print_gate(name, decision.state, decision.reason)
                    finish(name, _resolved(j, decision))
                    continue
                fut = pool.submit(_run_and_signal, j, ctx, cancel_events.get(j.group_name))
                in_flight[fut] = name

            if not in_flight:
                break

            # wait for a completion, then loop to schedule newly-ready jobs
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                name = in_flight.pop(fut)
                j = by_name[name]
                try:
                    res = fut.result()
                except Exception as e:
                    console.print_exception(e)
                    res = _crashed(j, e)

                finish(name, res)

    # report in declaration order
    result.jobs = {name: results[name] for name in by_name}
    result.status = overall_status(result.jobs)

    if not ctx.keep_workspaces:
        shutil.rmtree(ctx.run_dir, ignore_errors=True)

    return result
