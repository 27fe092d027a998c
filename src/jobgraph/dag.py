# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import CIError, CycleError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)

    Returns (adj, indeg) where adj maps need -> dependents.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise CIError(
            kind="invalid_graph",
            job=dupes[0],
            step=None,
            message=f"Duplicate job names found: {dupes}",
        )

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise CIError(
                    kind="invalid_graph",
                    job=job.name,
                    step=None,
                    message=f"Job '{job.name}' needs missing job '{need}'",
                    details={"known_jobs": sorted(name_set)},
                )
            # edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def _find_cycle(adj: Dict[str, Set[str]], stuck: Set[str]) -> List[str]:
    """Return the members of one cycle among the nodes Kahn's algorithm could not drain."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in stuck}

    for start in sorted(stuck):
        if color[start] != WHITE:
            continue
        path: List[str] = []
        stack = [(start, iter(sorted(adj[start] & stuck)))]
        color[start] = GREY
        path.append(start)
        while stack:
            node, children = stack[-1]
            nxt = next(children, None)
            if nxt is None:
                stack.pop()
                path.pop()
                color[node] = BLACK
            elif color[nxt] == GREY:
                return path[path.index(nxt):]
            elif color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append((nxt, iter(sorted(adj[nxt] & stuck))))

    # every stuck node sits on or behind a cycle, so the loop always returns
    return sorted(stuck)


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (ready batches).
    Every job in a level can run concurrently; levels are sorted by name
    so the result is identical across invocations.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

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

        levels.append(sorted(level))

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CycleError(_find_cycle(adj, stuck))

    return levels


class DependencyResolver:
    """Validated view over the `needs` graph of a set of jobs."""

    def __init__(self, jobs: List[Job]):
        self.jobs: Dict[str, Job] = {j.name: j for j in jobs}
        self.adj, self.indeg = build_dag(list(jobs))
        # raises CycleError before anything can be scheduled
        self._levels = topo_levels(self.adj, self.indeg)

    def ready_batches(self) -> List[List[str]]:
        return [list(level) for level in self._levels]

    def order(self) -> List[str]:
        return [name for level in self._levels for name in level]

    def roots(self) -> List[str]:
        return list(self._levels[0]) if self._levels else []

    def needs(self, name: str) -> List[str]:
        return list(dict.fromkeys(self.jobs[name].needs))

    def dependents(self, name: str) -> List[str]:
        return sorted(self.adj[name])
