# dag.py
from __future__ import annotations

import re
from collections import deque
from typing import Dict, List, Set, Tuple

from .model import Job, JobKind


def slug(name: str) -> str:
    """Filesystem-safe form of a job name, used for its workspace directory."""
    return re.sub(r"[^A-Za-z0-9_.]+", "-", name).strip("-") or "job"


def check_jobs(jobs: List[Job]) -> None:
    """
    Checks on the expanded job list that no single job definition can make:
    at most one deploy job, and one workspace directory per job.
    """
    deploys = [j.name for j in jobs if j.kind is JobKind.DEPLOY]
    if len(deploys) > 1:
        raise ValueError(f"A pipeline has at most one deploy job, got {deploys}")

    seen: Dict[str, str] = {}
    for j in jobs:
        s = slug(j.name)
        if s in seen and seen[s] != j.name:
            raise ValueError(f"Jobs '{seen[s]}' and '{j.name}' would share the workspace '{s}'")
        seen.setdefault(s, j.name)


def resolve_needs(jobs: List[Job]) -> Dict[str, List[str]]:
    """
    Map every (already expanded) job to the concrete jobs it waits on.

    A need may be an exact job name or a matrix base name; the latter
    resolves to every expansion of that matrix, in declaration order.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")

    groups: Dict[str, List[str]] = {}
    for j in jobs:
        if j.group is not None:
            groups.setdefault(j.group, []).append(j.name)

    name_set = set(names)
    deps: Dict[str, List[str]] = {}
    for j in jobs:
        resolved: List[str] = []
        for need in j.needs:
            if need in groups:
                targets = groups[need]
            elif need in name_set:
                targets = [need]
            else:
                known = sorted(name_set | set(groups))
                raise ValueError(
                    f"Job '{j.name}' needs missing job '{need}'. Known jobs: {known}"
                )
            for t in targets:
                if t == j.name:
                    raise ValueError(f"Job '{j.name}' needs itself")
                if t not in resolved:
                    resolved.append(t)
        deps[j.name] = resolved
    return deps


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, List[str]], Dict[str, Set[str]], Dict[str, int]]:
    """
    Returns (deps, adj, indeg):
      deps:  job -> jobs it needs
      adj:   job -> jobs that need it
      indeg: job -> number of unfinished needs
    """
    deps = resolve_needs(jobs)
    check_jobs(jobs)
    adj: Dict[str, Set[str]] = {j.name: set() for j in jobs}
    indeg: Dict[str, int] = {j.name: 0 for j in jobs}

    for name, needs in deps.items():
        for need in needs:
            # Edge need -> name (need must finish before name)
            adj[need].add(name)
            indeg[name] += 1

    topo_levels(adj, indeg)  # raises on cycles
    return deps, adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValueError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels
