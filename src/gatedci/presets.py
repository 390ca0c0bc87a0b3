# presets.py
# Ready-made pipelines.
from __future__ import annotations

from typing import Iterable

from .dsl import (
    build_step,
    checkout,
    deploy_job,
    deploy_step,
    install_tool,
    job,
    matrix,
    pipeline,
    run_tests,
    setup_toolchain,
)
from .model import EventKind, Pipeline, Toolchain

FLY_TOKEN = "FLY_API_TOKEN"


def rust_fly_pipeline(
    main_branch: str = "master",
    toolchains: Iterable[Toolchain | str] = (Toolchain.STABLE, Toolchain.BETA),
    *,
    fail_fast: bool = False,
) -> Pipeline:
    """
    Build and test a cargo project on each toolchain, then deploy it to
    Fly.io from `main_branch`.

    The deploy token is read from the `FLY_API_TOKEN` secret and only
    reaches the deploy job, as an environment variable.
    """
    build = job(
        "build",
        checkout(),
        setup_toolchain(
            "Setup toolchain",
            'rustup toolchain install "$MATRIX_RUST" --profile minimal && rustup override set "$MATRIX_RUST"',
        ),
        build_step("Build", "cargo build --verbose"),
        run_tests("Run tests", "cargo test --verbose"),
        matrix=matrix("rust", [Toolchain(t) for t in toolchains], fail_fast=fail_fast),
    )

    deploy = deploy_job(
        "deploy",
        checkout(),
        install_tool(
            "Setup flyctl",
            'curl -fsSL https://fly.io/install.sh | sh && echo "$HOME/.fly/bin" >> "$CI_PATH"',
        ),
        deploy_step("Deploy to Fly", "flyctl deploy --remote-only"),
        branch=main_branch,
        needs=["build"],
        secrets={FLY_TOKEN: FLY_TOKEN},
    )

    return pipeline(build, deploy, name="rust", on=(EventKind.PUSH, EventKind.PULL_REQUEST))
