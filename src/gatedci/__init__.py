from .dsl import (
    build_step,
    builder,
    checkout,
    deploy_job,
    deploy_step,
    install_tool,
    job,
    matrix,
    pipeline,
    run_tests,
    setup_toolchain,
    sh,
    wf,
)
from .model import DependencyPolicy, EventKind, Job, JobKind, JobState, Pipeline, Stage, Step, Toolchain, Trigger
from .presets import rust_fly_pipeline
from .runner import plan_pipeline, run_pipeline
from .secretstore import SecretStore

__all__ = [
    "sh", "checkout", "setup_toolchain", "build_step", "run_tests", "install_tool", "deploy_step",
    "job", "deploy_job", "builder", "matrix", "pipeline", "wf",
    "Job", "JobKind", "JobState", "Pipeline", "Stage", "Step", "Toolchain", "Trigger", "EventKind",
    "DependencyPolicy", "SecretStore", "rust_fly_pipeline", "run_pipeline", "plan_pipeline",
]
