# gate.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .model import DependencyPolicy, Job, JobResult, JobState, Trigger


@dataclass(frozen=True)
class GateDecision:
    """What to do with a job whose needs are all terminal."""
    state: Optional[JobState]  # None -> run it
    reason: str

    @property
    def run(self) -> bool:
        return self.state is None


def branch_allows(job: Job, trigger: Trigger) -> bool:
    """Branch predicate. A job without `branch` is eligible for every trigger."""
    if job.branch is None:
        return True
    return trigger.on_branch(job.branch)


def evaluate(
    job: Job,
    trigger: Trigger,
    needed: Iterable[JobResult],
    policy: DependencyPolicy = DependencyPolicy.BLOCK,
) -> GateDecision:
    # the branch predicate wins over everything; an ineligible job never runs
    if not branch_allows(job, trigger):
        return GateDecision(
            JobState.NOT_ELIGIBLE,
            f"ref {trigger.ref} is not refs/heads/{job.branch}",
        )

    needed = list(needed)
    unfinished = [r.name for r in needed if not r.state.terminal]
    if unfinished:
        raise RuntimeError(f"[{job.name}] gate evaluated before needs finished: {unfinished}")

    if policy is DependencyPolicy.BLOCK:
        blocking = [r.name for r in needed if r.state is not JobState.SUCCEEDED]
        if blocking:
            return GateDecision(JobState.SKIPPED, f"needs did not succeed: {', '.join(blocking)}")

    return GateDecision(None, "ok")
