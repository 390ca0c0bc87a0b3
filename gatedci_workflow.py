# gatedci_workflow.py
# Build and test on stable and beta, deploy to Fly.io from the main branch.
from __future__ import annotations

from gatedci import rust_fly_pipeline
from gatedci.config import Settings


def workflow():
    return rust_fly_pipeline(main_branch=Settings.from_env().main_branch)
