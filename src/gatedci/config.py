# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .model import DependencyPolicy

DEFAULT_MAIN_BRANCH = "master"
DEFAULT_WORK_DIR = ".gatedci/work"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    main_branch: str = DEFAULT_MAIN_BRANCH
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    dependency_policy: DependencyPolicy = DependencyPolicy.BLOCK
    max_workers: Optional[int] = None
    keep_workspaces: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("GATEDCI_MAX_WORKERS")
        return cls(
            main_branch=env.get("GATEDCI_MAIN_BRANCH", DEFAULT_MAIN_BRANCH),
            work_dir=Path(env.get("GATEDCI_WORK_DIR", DEFAULT_WORK_DIR)),
            dependency_policy=DependencyPolicy(env.get("GATEDCI_DEPENDENCY_POLICY", DependencyPolicy.BLOCK.value)),
            max_workers=int(workers) if workers else None,
            keep_workspaces=_flag(env.get("GATEDCI_KEEP_WORKSPACES")),
        )
