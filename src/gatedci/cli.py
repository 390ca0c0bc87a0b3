# cli.py
from __future__ import annotations

import json
import os
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from gatedci.config import Settings
from gatedci.dsl import retarget, secret_names
from gatedci.errors import CIError
from gatedci.git_facts.git import current_ref, head_sha, remote_url, repo_root
from gatedci.model import DependencyPolicy, EventKind, Pipeline, Trigger
from gatedci.runner import load_workflow, plan_pipeline, run_pipeline
from gatedci.secretstore import SecretStore
from gatedci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "gatedci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gatedci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  gatedci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  gatedci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def resolve_trigger(ref: str | None, event: str | None, sha: str | None) -> Trigger:
    """
    --ref, then CI_REF/GITHUB_REF, then the checked out branch.

    Event and sha come from the same place as the ref unless given
    explicitly; --event and --sha always win.
    """
    console = get_console()
    env = os.environ
    if not ref:
        ref = env.get("CI_REF") or env.get("GITHUB_REF")
        if ref:
            console.print_debug(f"Using ref from environment: {ref}")
            event = event or env.get("CI_EVENT") or env.get("GITHUB_EVENT_NAME")
            sha = sha or env.get("CI_SHA") or env.get("GITHUB_SHA")
    if not ref:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref given, CI_REF is unset and HEAD is not on a branch.",
                suggestion="Specify the ref explicitly:\n  gatedci run --ref refs/heads/master",
            )
            sys.exit(1)
        if not sha:
            try:
                sha = head_sha()
            except (subprocess.CalledProcessError, FileNotFoundError):
                sha = None

    event = event or EventKind.PUSH.value
    if event not in {e.value for e in EventKind}:
        console.print_error(
            "Unsupported event",
            f"Event kind {event!r} is not one of: {', '.join(e.value for e in EventKind)}",
            suggestion="Pass the event explicitly:\n  gatedci run --event push",
        )
        sys.exit(1)
    return Trigger(ref=ref, event=EventKind(event), sha=sha)


def resolve_repo(repo: str | None) -> str:
    """--repo, then the origin remote, then the enclosing checkout, then cwd."""
    if repo:
        return repo
    try:
        return remote_url()
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass
    try:
        return str(repo_root())
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass
    return str(Path(".").resolve())


def _prepare(workflow: str | None, main_branch: str | None) -> Pipeline:
    workflow_path = discover_workflow(workflow)
    p = load_workflow(workflow_path)
    if main_branch:
        p = retarget(p, main_branch)
    return p


def trigger_options(f):
    f = click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")(f)
    f = click.option("--ref", default=None, help="Ref or branch of the trigger (defaults to CI_REF or the current branch)")(f)
    f = click.option(
        "--event",
        type=click.Choice([e.value for e in EventKind]),
        default=None,
        help="Trigger event kind (defaults to CI_EVENT, then push)",
    )(f)
    f = click.option("--sha", default=None, help="Commit to check out (defaults to the ref)")(f)
    f = click.option("--main-branch", default=None, help="Branch deploy jobs are gated on (overrides the workflow)")(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show full step output and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """gatedci: matrix builds with a gated deploy."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@trigger_options
@click.option("--repo", default=None, help="Repository URL to clone (defaults to the enclosing git repo)")
@click.option(
    "--policy",
    type=click.Choice([p.value for p in DependencyPolicy]),
    default=None,
    help="block: skip deploy if any needed job failed; completion: deploy once needs finish",
)
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--work-dir", default=None, help="Directory for job workspaces")
@click.option("--secret", "secrets", multiple=True, help="Environment variable to expose as a secret (repeatable)")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON")
@click.pass_context
def run(ctx, workflow, ref, event, sha, main_branch, repo, policy, workers, work_dir, secrets, keep_workspaces, as_json):
    """Run a pipeline for one trigger."""
    console = get_console()

    try:
        settings = Settings.from_env()
        if work_dir:
            settings = replace(settings, work_dir=Path(work_dir))
        if keep_workspaces:
            settings = replace(settings, keep_workspaces=True)

        p = _prepare(workflow, main_branch)
        trigger = resolve_trigger(ref, event, sha)
        store = SecretStore.from_env(sorted(set(secrets) | set(secret_names(p))))
        console.print_debug(f"Secrets available: {store.names()}")

        result = run_pipeline(
            p,
            trigger,
            secrets=store,
            settings=settings,
            policy=DependencyPolicy(policy) if policy else None,
            repo_url=resolve_repo(repo),
            max_workers=workers,
        )

        console.print_results(result)
        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))

        if not result.succeeded:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_error(e.kind, e.message, details=[f"job={e.job}", f"step={e.step}"])
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@trigger_options
@click.pass_context
def plan(ctx, workflow, ref, event, sha, main_branch):
    """Show which jobs a trigger would run, without running them."""
    console = get_console()

    try:
        p = _prepare(workflow, main_branch)
        trigger = resolve_trigger(ref, event, sha)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_header(f"PLAN: {p.name} on {trigger.ref} ({trigger.event.value})")
    for name, runs, reason in plan_pipeline(p, trigger):
        if runs:
            console.print_plan_job(name, reason)
        else:
            console.print_plan_job_skipped(name, reason)


if __name__ == "__main__":
    cli()
