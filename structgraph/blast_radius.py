"""Blast-radius analysis: who is affected, transitively, when a node changes."""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set

from . import config
from .models import SEVERITIES, BlastRadius

_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITIES)}


def reverse_graph(graph: Mapping[str, Iterable[str]]) -> Dict[str, List[str]]:
    """Turn ``node -> dependencies`` into ``dependency -> direct dependents``."""
    reverse: Dict[str, List[str]] = {}
    for node, dependencies in graph.items():
        for dependency in dependencies:
            dependents = reverse.setdefault(dependency, [])
            if node not in dependents:
                dependents.append(node)
    return reverse


def classify_severity(affected_count: int) -> str:
    if affected_count <= config.SEVERITY_LOW_MAX:
        return "low"
    if affected_count <= config.SEVERITY_MEDIUM_MAX:
        return "medium"
    return "high"


def affected_by(reverse: Mapping[str, List[str]], target: str) -> Set[str]:
    """Every node reachable from *target*'s direct dependents in the reverse graph."""
    visited: Set[str] = set()
    queue = deque(reverse.get(target, []))
    visited.update(queue)
    while queue:
        current = queue.popleft()
        for dependent in reverse.get(current, []):
            if dependent not in visited:
                visited.add(dependent)
                queue.append(dependent)
    return visited


def analyze_blast_radius(graph: Mapping[str, Iterable[str]]) -> List[BlastRadius]:
    """One :class:`BlastRadius` per node that has at least one direct dependent.

    Sorted by severity (high first), then by affected count, then by id.
    """
    reverse = reverse_graph(graph)
    results = []
    for target, dependents in reverse.items():
        if not dependents:
            continue
        affected = affected_by(reverse, target)
        results.append(BlastRadius(
            target=target,
            affected_resources=sorted(affected),
            severity=classify_severity(len(affected)),
        ))
    results.sort(key=lambda r: (_SEVERITY_RANK[r.severity], -len(r.affected_resources), r.target))
    return results


def top_blast_radius(results: List[BlastRadius], limit: int = config.DISPLAY_LIMIT) -> List[BlastRadius]:
    """Display helper: the first *limit* entries of an already sorted list."""
    return results[:limit]
