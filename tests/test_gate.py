"""Tests for the branch predicate and the dependency policy."""
from __future__ import annotations

import pytest

from gatedci.gate import branch_allows, evaluate
from gatedci.model import DependencyPolicy, EventKind, JobKind, JobResult, JobState, Trigger


def _done(name: str, state: JobState) -> JobResult:
    return JobResult(name=name, kind=JobKind.BUILD, state=state)


@pytest.fixture
def deploy(make_deploy):
    return make_deploy()


class TestBranchPredicate:
    def test_main_branch_is_eligible(self, deploy):
        assert branch_allows(deploy, Trigger("master"))

    def test_other_branch_is_not(self, deploy):
        assert not branch_allows(deploy, Trigger("feature-x"))

    def test_pull_request_ref_is_not(self, deploy):
        assert not branch_allows(deploy, Trigger("refs/pull/3/merge", EventKind.PULL_REQUEST))

    def test_ungated_job_is_always_eligible(self, make_build):
        assert branch_allows(make_build(values=None), Trigger("anything"))


class TestEvaluate:
    def test_not_eligible_wins_over_everything(self, deploy):
        d = evaluate(deploy, Trigger("feature-x"), [_done("build (stable)", JobState.FAILED)])
        assert d.state is JobState.NOT_ELIGIBLE
        assert not d.run

    def test_all_needs_succeeded(self, deploy):
        needed = [_done("build (stable)", JobState.SUCCEEDED), _done("build (beta)", JobState.SUCCEEDED)]
        assert evaluate(deploy, Trigger("master"), needed).run

    def test_block_policy_skips_on_any_failure(self, deploy):
        needed = [_done("build (stable)", JobState.FAILED), _done("build (beta)", JobState.SUCCEEDED)]
        d = evaluate(deploy, Trigger("master"), needed, DependencyPolicy.BLOCK)
        assert d.state is JobState.SKIPPED
        assert "build (stable)" in d.reason
        assert "build (beta)" not in d.reason

    def test_completion_policy_runs_anyway(self, deploy):
        needed = [_done("build (stable)", JobState.FAILED), _done("build (beta)", JobState.CANCELLED)]
        assert evaluate(deploy, Trigger("master"), needed, DependencyPolicy.COMPLETION).run

    def test_refuses_to_decide_before_needs_are_terminal(self, deploy):
        with pytest.raises(RuntimeError, match="before needs finished"):
            evaluate(deploy, Trigger("master"), [_done("build (stable)", JobState.TESTING)])
