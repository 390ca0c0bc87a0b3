# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Type

from .model import Stage


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class StepFailure(CIError):
    """A step exited non-zero. `output` is the redacted tail of stdout+stderr."""
    exit_code: int = 1
    output: str = ""


class FetchError(StepFailure):
    pass


class ToolchainSetupError(StepFailure):
    pass


class BuildError(StepFailure):
    pass


class TestError(StepFailure):
    __test__ = False  # not a pytest class


class ToolInstallError(StepFailure):
    pass


class DeployError(StepFailure):
    """External state may already be partially updated; nothing is rolled back."""


STAGE_ERRORS: Dict[Stage, Type[StepFailure]] = {
    Stage.FETCH: FetchError,
    Stage.TOOLCHAIN: ToolchainSetupError,
    Stage.BUILD: BuildError,
    Stage.TEST: TestError,
    Stage.INSTALL_TOOL: ToolInstallError,
    Stage.DEPLOY: DeployError,
}

STAGE_MESSAGES: Dict[Stage, str] = {
    Stage.FETCH: "source checkout failed",
    Stage.TOOLCHAIN: "toolchain setup failed",
    Stage.BUILD: "build failed",
    Stage.TEST: "tests failed",
    Stage.INSTALL_TOOL: "tool installation failed",
    Stage.DEPLOY: "deploy command failed",
}


def step_failure(
    stage: Stage,
    *,
    job: str,
    step: str,
    exit_code: int,
    output: str = "",
    hint: Optional[str] = None,
) -> StepFailure:
    cls = STAGE_ERRORS[stage]
    details: dict = {"exit_code": exit_code}
    if hint:
        details["hint"] = hint
    return cls(
        kind=cls.__name__,
        job=job,
        step=step,
        message=STAGE_MESSAGES[stage],
        details=details,
        exit_code=exit_code,
        output=output,
    )


class SecretExposureError(CIError):
    """A secret value would end up in a command line."""

    def __init__(self, job: str, step: str, secret: str):
        super().__init__(
            kind="SecretExposureError",
            job=job,
            step=step,
            message="secret value appears in a step command; pass it through `secrets=` instead",
            details={"secret": secret},
        )


class InvalidTransition(Exception):
    def __init__(self, job: str, current, target):
        self.job = job
        self.current = current
        self.target = target
        super().__init__(f"[{job}] illegal state transition {current.value} -> {target.value}")
