"""Tests for running a single job: ordering, fail-fast, errors, env and workspaces."""
from __future__ import annotations

import threading

import pytest

from gatedci.errors import BuildError, DeployError, FetchError, TestError, ToolchainSetupError
from gatedci.model import JobState as S
from gatedci.model import Trigger
from gatedci.runner import RunContext, _hint_for, load_workflow, plan_pipeline, run_job, run_pipeline
from gatedci.secretstore import SecretStore
from gatedci.ui.console import Console, set_console


@pytest.fixture
def ctx(tmp_path):
    return RunContext(trigger=Trigger("master", sha=None), run_id="r1", work_dir=tmp_path / "work")


class TestOrdering:
    def test_success_walks_every_state(self, make_build, ctx):
        r = run_job(make_build(values=None), ctx)
        assert r.state is S.SUCCEEDED
        assert r.history == [S.PENDING, S.FETCHING, S.SETTING_UP_TOOLCHAIN, S.BUILDING, S.TESTING, S.SUCCEEDED]
        assert r.outcomes() == [
            ("Checkout", "ok"), ("Setup toolchain", "ok"), ("Build", "ok"), ("Run tests", "ok"),
        ]
        assert r.duration is not None and r.duration >= 0

    def test_failure_jumps_to_failed_and_skips_the_rest(self, make_build, ctx, tmp_path):
        marker = tmp_path / "tests-ran"
        r = run_job(make_build(values=None, build="exit 3", test=f"touch {marker}"), ctx)
        assert r.state is S.FAILED
        assert r.history == [S.PENDING, S.FETCHING, S.SETTING_UP_TOOLCHAIN, S.BUILDING, S.FAILED]
        assert r.outcomes()[-2:] == [("Build", "failed"), ("Run tests", "skipped")]
        assert r.steps[2].exit_code == 3
        assert not marker.exists()

    def test_steps_share_the_job_workspace(self, make_build, ctx):
        r = run_job(make_build(values=None, build="touch target.bin", test="test -f target.bin"), ctx)
        assert r.state is S.SUCCEEDED

    def test_deploy_lifecycle(self, make_deploy, ctx):
        r = run_job(make_deploy(), ctx)
        assert r.history == [S.PENDING, S.FETCHING, S.INSTALLING_TOOL, S.DEPLOYING, S.SUCCEEDED]


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "stage, error",
        [
            ("fetch", FetchError),
            ("toolchain", ToolchainSetupError),
            ("build", BuildError),
            ("test", TestError),
        ],
    )
    def test_stage_failure_maps_to_error(self, make_build, ctx, stage, error):
        r = run_job(make_build(values=None, **{stage: "false"}), ctx)
        assert isinstance(r.error, error)
        assert r.error.job == "build"
        assert r.error.exit_code == 1

    def test_deploy_failure(self, make_deploy, ctx):
        r = run_job(make_deploy(deploy="echo 'app not found' >&2; exit 2"), ctx)
        assert r.state is S.FAILED
        assert isinstance(r.error, DeployError)
        assert "app not found" in r.error.output
        assert "deploy command failed" in str(r.error)

    def test_build_output_is_the_diagnostic(self, make_build, ctx):
        r = run_job(make_build(values=None, build="echo 'error[E0308]: mismatched types'; exit 101"), ctx)
        assert "E0308" in r.error.output
        assert r.error.details["exit_code"] == 101

    def test_missing_cwd_fails_the_step(self, ctx):
        from gatedci.dsl import build_step, checkout, job, run_tests, setup_toolchain

        j = job(
            "b",
            checkout("Checkout", "true"),
            setup_toolchain("s", "true"),
            build_step("Build", "true"),
            run_tests("t", "true"),
            cwd="does-not-exist",
        )
        r = run_job(j, ctx)
        assert isinstance(r.error, FetchError)
        assert r.error.exit_code == 126

    def test_tool_hint(self):
        assert "flyctl" in _hint_for("flyctl deploy --remote-only", 127)
        assert "rustup" in _hint_for('rustup toolchain install "$MATRIX_RUST"', 127)
        assert _hint_for("flyctl deploy --remote-only", 1) is None
        assert _hint_for("mystery-tool", 127) is None


class TestEnvironment:
    def test_ci_context_variables(self, make_build, tmp_path):
        ctx = RunContext(
            trigger=Trigger("feature-x", "pull_request", sha="abc123"),
            run_id="r2",
            work_dir=tmp_path / "work",
            repo_url="/srv/repo.git",
        )
        check = (
            'test "$CI_REF" = refs/heads/feature-x && test "$CI_REF_NAME" = feature-x '
            '&& test "$CI_EVENT" = pull_request && test "$CI_CHECKOUT" = abc123 '
            '&& test "$CI_REPO_URL" = /srv/repo.git && test "$CI_JOB" = build '
            '&& test "$(pwd -P)" = "$(cd "$CI_WORKSPACE" && pwd -P)"'
        )
        assert run_job(make_build(values=None, fetch=check), ctx).state is S.SUCCEEDED

    def test_checkout_uses_branch_name_without_sha(self, make_build, ctx):
        assert run_job(make_build(values=None, fetch='test "$CI_CHECKOUT" = master'), ctx).succeeded

    def test_workspace_starts_empty(self, make_build, ctx):
        assert run_job(make_build(values=None, fetch='test -z "$(ls -A)"'), ctx).succeeded

    def test_job_env(self, make_build, ctx):
        j = make_build(values=None, env={"RUSTFLAGS": "-D warnings"}, build='test "$RUSTFLAGS" = "-D warnings"')
        assert run_job(j, ctx).succeeded

    def test_ci_path_extends_path_for_later_steps(self, make_deploy, ctx):
        install = (
            'mkdir -p "$CI_WORKSPACE/.tools" '
            '&& printf "#!/bin/sh\\necho hello-from-tool\\n" > "$CI_WORKSPACE/.tools/fakectl" '
            '&& chmod +x "$CI_WORKSPACE/.tools/fakectl" '
            '&& echo "$CI_WORKSPACE/.tools" >> "$CI_PATH"'
        )
        r = run_job(make_deploy(install=install, deploy="fakectl"), ctx)
        assert r.state is S.SUCCEEDED
        assert "hello-from-tool" in r.steps[-1].output


class TestSecrets:
    def test_secret_reaches_only_the_declaring_job(self, make_build, make_deploy, tmp_path, monkeypatch):
        monkeypatch.setenv("FLY_API_TOKEN", "tok-123")
        ctx = RunContext(
            trigger=Trigger("master"),
            run_id="r3",
            work_dir=tmp_path / "work",
            secrets=SecretStore.from_env(["FLY_API_TOKEN"]),
        )
        build = run_job(make_build(values=None, build='test -z "$FLY_API_TOKEN"'), ctx)
        deploy = run_job(
            make_deploy(
                deploy='test -n "$FLY_API_TOKEN" && echo "token=$FLY_API_TOKEN"',
                secrets={"FLY_API_TOKEN": "FLY_API_TOKEN"},
            ),
            ctx,
        )
        assert build.succeeded
        assert deploy.succeeded
        assert deploy.steps[-1].output.strip() == "token=***"

    def test_secret_is_redacted_from_failure_output(self, make_deploy, tmp_path, capsys):
        set_console(Console(debug=True))
        ctx = RunContext(
            trigger=Trigger("master"),
            run_id="r4",
            work_dir=tmp_path / "work",
            secrets=SecretStore({"fly": "tok-456"}),
        )
        r = run_job(
            make_deploy(deploy='echo "auth failed for $TOKEN" >&2; exit 1', secrets={"TOKEN": "fly"}),
            ctx,
        )
        out = capsys.readouterr()
        assert r.state is S.FAILED
        assert "tok-456" not in r.error.output
        assert "tok-456" not in str(r.error)
        assert "tok-456" not in out.out + out.err
        assert "auth failed for ***" in out.out


class TestWorkspaces:
    def test_workspace_is_removed(self, make_build, ctx):
        run_job(make_build(values=None), ctx)
        assert not (ctx.run_dir / "build").exists()

    def test_keep_workspaces(self, make_build, ctx):
        ctx.keep_workspaces = True
        run_job(make_build(values=None, build="touch out.txt"), ctx)
        assert (ctx.run_dir / "build" / "out.txt").exists()

    def test_cancelled_before_start(self, make_build, ctx):
        cancelled = threading.Event()
        cancelled.set()
        r = run_job(make_build(values=None, fetch="exit 9"), ctx, cancelled)
        assert r.state is S.CANCELLED
        assert r.history == [S.PENDING, S.CANCELLED]
        assert r.steps == []
        assert not ctx.run_dir.exists()


class TestLoadWorkflow:
    def test_workflow_function_returning_pipeline(self, tmp_path):
        path = tmp_path / "ci_workflow.py"
        path.write_text(
            "from gatedci import rust_fly_pipeline\n"
            "def workflow():\n"
            "    return rust_fly_pipeline()\n"
        )
        p = load_workflow(path)
        assert [j.name for j in p.jobs] == ["build", "deploy"]

    def test_jobs_list_is_wrapped(self, tmp_path):
        path = tmp_path / "lint_workflow.py"
        path.write_text(
            "from gatedci import job, checkout, setup_toolchain, build_step, run_tests\n"
            "JOBS = [job('lint', checkout('c', 'true'), setup_toolchain('s', 'true'),\n"
            "            build_step('b', 'true'), run_tests('t', 'true'))]\n"
        )
        p = load_workflow(path)
        assert p.name == "lint_workflow"
        assert [j.name for j in p.jobs] == ["lint"]

    def test_jobs_list_with_two_deploys_is_refused(self, tmp_path, settings):
        path = tmp_path / "two_workflow.py"
        path.write_text(
            "from gatedci import deploy_job, checkout, install_tool, deploy_step\n"
            "def d(name):\n"
            "    return deploy_job(name, checkout('c', 'true'), install_tool('i', 'true'),\n"
            "                      deploy_step('d', 'true'), branch='master')\n"
            "JOBS = [d('deploy1'), d('deploy2')]\n"
        )
        p = load_workflow(path)
        with pytest.raises(ValueError, match="at most one deploy job"):
            plan_pipeline(p, Trigger("master"))
        with pytest.raises(ValueError, match="at most one deploy job"):
            run_pipeline(p, Trigger("master"), settings=settings)
        assert not (tmp_path / "work").exists()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.py")

    def test_not_python(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text("jobs: {}\n")
        with pytest.raises(ValueError):
            load_workflow(path)

    def test_wrong_type(self, tmp_path):
        path = tmp_path / "bad_workflow.py"
        path.write_text("JOBS = ['build']\n")
        with pytest.raises(TypeError):
            load_workflow(path)
