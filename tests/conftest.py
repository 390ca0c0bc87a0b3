"""Shared fixtures for the gatedci test suite.

Steps are real shell commands (`true`, `false`, `exit N`, `echo ...`), so
every test exercises the actual subprocess path.
"""
from __future__ import annotations

from typing import Sequence

import pytest

from gatedci.config import Settings
from gatedci.dsl import (
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
from gatedci.model import Job, Pipeline
from gatedci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def _fresh_console():
    set_console(Console())
    yield
    set_console(Console())


@pytest.fixture(autouse=True)
def _no_ci_env(monkeypatch):
    for var in ("CI_REF", "CI_EVENT", "CI_SHA", "GITHUB_REF", "GITHUB_EVENT_NAME", "GITHUB_SHA",
                "GATEDCI_MAIN_BRANCH", "GATEDCI_WORK_DIR", "GATEDCI_DEPENDENCY_POLICY",
                "GATEDCI_MAX_WORKERS", "GATEDCI_KEEP_WORKSPACES", "FLY_API_TOKEN"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(work_dir=tmp_path / "work")


@pytest.fixture
def make_build():
    """Factory for a build job; every stage command defaults to `true`."""

    def _make(
        name: str = "build",
        *,
        fetch: str = "true",
        toolchain: str = "true",
        build: str = "true",
        test: str = "true",
        values: Sequence[str] | None = ("stable", "beta"),
        fail_fast: bool = False,
        **kw,
    ) -> Job:
        return job(
            name,
            checkout("Checkout", fetch),
            setup_toolchain("Setup toolchain", toolchain),
            build_step("Build", build),
            run_tests("Run tests", test),
            matrix=matrix("rust", values, fail_fast=fail_fast) if values else None,
            **kw,
        )

    return _make


@pytest.fixture
def make_deploy():
    """Factory for a deploy job gated on master that needs `build`."""

    def _make(
        name: str = "deploy",
        *,
        fetch: str = "true",
        install: str = "true",
        deploy: str = "true",
        branch: str = "master",
        needs: Sequence[str] = ("build",),
        **kw,
    ) -> Job:
        return deploy_job(
            name,
            checkout("Checkout", fetch),
            install_tool("Setup tool", install),
            deploy_step("Deploy", deploy),
            branch=branch,
            needs=list(needs),
            **kw,
        )

    return _make


@pytest.fixture
def make_pipeline(make_build, make_deploy):
    """build matrix (stable, beta) + gated deploy, with per-stage overrides."""

    def _make(*, build_kw: dict | None = None, deploy_kw: dict | None = None, **kw) -> Pipeline:
        return pipeline(make_build(**(build_kw or {})), make_deploy(**(deploy_kw or {})), name="demo", **kw)

    return _make
