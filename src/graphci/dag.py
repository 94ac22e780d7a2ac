# dag.py
from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .errors import CycleDetected, DuplicateJobId, UnknownDependency
from .model import JobInstance


@dataclass
class DAG:
    """
    Dependency graph over job instances.

    Edges point from a predecessor to the instances that require it.
    `order` is one valid topological order (ties broken by declaration
    order); callers should only rely on the partial order.
    """
    nodes: List[str]
    preds: Dict[str, Tuple[str, ...]]
    succs: Dict[str, List[str]]
    order: List[str] = field(default_factory=list)

    def predecessors(self, node: str) -> Tuple[str, ...]:
        return self.preds[node]

    def successors(self, node: str) -> List[str]:
        return self.succs[node]

    def ancestors(self, node: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.preds[node])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.preds[n])
        return seen

    def roots(self) -> List[str]:
        return [n for n in self.nodes if not self.preds[n]]

    def levels(self) -> List[List[str]]:
        indeg = {n: len(self.preds[n]) for n in self.nodes}
        return topo_levels(self.succs, indeg, self.nodes)


def build_dag(instances: Sequence[JobInstance]) -> DAG:
    """
    Build a DAG from job instances.

    Requires:
      - instance.id: str (unique)
      - instance.requires: ids of instances that must finish BEFORE it
    """
    names = [i.id for i in instances]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobId(f"Duplicate job ids found: {dupes}", details={"duplicates": dupes})

    name_set = set(names)
    preds: Dict[str, Tuple[str, ...]] = {}
    succs: Dict[str, List[str]] = {n: [] for n in names}

    for inst in instances:
        seen: List[str] = []
        for dep in inst.requires:
            if dep not in name_set:
                raise UnknownDependency(
                    f"Job '{inst.id}' requires missing job '{dep}'",
                    job=inst.id,
                    details={"known": sorted(name_set)},
                )
            if dep in seen:
                continue
            seen.append(dep)
            succs[dep].append(inst.id)
        preds[inst.id] = tuple(seen)

    order = topo_order(names, preds, succs)
    return DAG(nodes=names, preds=preds, succs=succs, order=order)


def topo_order(
    nodes: List[str],
    preds: Dict[str, Tuple[str, ...]],
    succs: Dict[str, List[str]],
) -> List[str]:
    """Kahn's algorithm, always releasing the earliest-declared ready node."""
    position = {n: i for i, n in enumerate(nodes)}
    indeg = {n: len(preds[n]) for n in nodes}
    heap = [(position[n], n) for n in nodes if indeg[n] == 0]
    heapq.heapify(heap)

    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in succs[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (position[child], child))

    if len(order) != len(nodes):
        stuck = [n for n in nodes if indeg[n] > 0]
        cycle = find_cycle(stuck, preds) or stuck
        raise CycleDetected(
            f"Dependency cycle: {' -> '.join(cycle)}",
            job=cycle[0],
            details={"cycle": cycle},
        )
    return order


def find_cycle(nodes: List[str], preds: Dict[str, Tuple[str, ...]]) -> Optional[List[str]]:
    """Return one cycle as a path `a -> b -> ... -> a` (following requires edges)."""
    visited: Set[str] = set()

    for start in nodes:
        if start in visited:
            continue
        path: List[str] = []
        on_path: Set[str] = set()
        stack: List[Tuple[str, int]] = [(start, 0)]

        while stack:
            node, i = stack.pop()
            if i == 0:
                visited.add(node)
                path.append(node)
                on_path.add(node)
            deps = preds[node]
            if i < len(deps):
                stack.append((node, i + 1))
                nxt = deps[i]
                if nxt in on_path:
                    return path[path.index(nxt):] + [nxt]
                if nxt not in visited:
                    stack.append((nxt, 0))
            else:
                path.pop()
                on_path.discard(node)
    return None


def topo_levels(succs: Dict[str, List[str]], indeg: Dict[str, int], nodes: List[str]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage only depends on earlier stages.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    position = {n: i for i, n in enumerate(nodes)}
    q = deque(n for n in nodes if indeg[n] == 0)

    levels: List[List[str]] = []
    while q:
        level = list(q)
        q.clear()
        nxt: List[str] = []
        for node in level:
            for child in succs.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=position.__getitem__))
        levels.append(level)

    return levels
