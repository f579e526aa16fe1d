"""Tests for blast-radius analysis."""

import pytest

from structgraph.blast_radius import (
    affected_by,
    analyze_blast_radius,
    classify_severity,
    reverse_graph,
    top_blast_radius,
)


def _star(hub: str, count: int) -> dict:
    """``count`` resources that all depend on ``hub``."""
    return {f"{hub}_dep.r{i}": [hub] for i in range(count)}


@pytest.mark.parametrize(
    "count, severity",
    [(1, "low"), (5, "low"), (6, "medium"), (20, "medium"), (21, "high")],
)
def test_classify_severity_boundaries(count, severity):
    assert classify_severity(count) == severity


def test_reverse_graph():
    graph = {"a": ["c"], "b": ["c", "d"]}
    assert reverse_graph(graph) == {"c": ["a", "b"], "d": ["b"]}


def test_transitive_dependents():
    graph = {"b": ["a"], "c": ["b"], "d": ["c"]}
    reverse = reverse_graph(graph)

    assert affected_by(reverse, "a") == {"b", "c", "d"}
    assert affected_by(reverse, "c") == {"d"}
    assert affected_by(reverse, "d") == set()


def test_cycle_terminates_and_includes_target():
    graph = {"a": ["b"], "b": ["a"]}
    results = {r.target: r for r in analyze_blast_radius(graph)}

    assert results["a"].affected_resources == ["a", "b"]
    assert results["b"].affected_resources == ["a", "b"]


def test_diamond_counts_each_node_once():
    graph = {"b": ["a"], "c": ["a"], "d": ["b", "c"]}
    results = {r.target: r for r in analyze_blast_radius(graph)}

    assert results["a"].affected_resources == ["b", "c", "d"]
    assert results["a"].severity == "low"


def test_only_nodes_with_dependents_are_reported():
    graph = {"b": ["a"]}
    assert [r.target for r in analyze_blast_radius(graph)] == ["a"]


def test_severity_from_star_size():
    graph = {}
    graph.update(_star("big", 21))
    graph.update(_star("mid", 6))
    graph.update(_star("small", 2))

    results = analyze_blast_radius(graph)
    by_target = {r.target: r.severity for r in results}

    assert by_target == {"big": "high", "mid": "medium", "small": "low"}
    assert [r.target for r in results] == ["big", "mid", "small"]


def test_sorted_by_severity_then_count_then_target():
    graph = {}
    graph.update(_star("zeta", 3))
    graph.update(_star("alpha", 3))
    graph.update(_star("mid", 4))

    targets = [r.target for r in analyze_blast_radius(graph)]
    assert targets == ["mid", "alpha", "zeta"]


def test_empty_graph():
    assert analyze_blast_radius({}) == []


def test_top_blast_radius_truncates():
    graph = {}
    for hub in ("a", "b", "c"):
        graph.update(_star(hub, 2))

    results = analyze_blast_radius(graph)
    assert [r.target for r in top_blast_radius(results, limit=2)] == ["a", "b"]
    assert len(top_blast_radius(results)) == 3


def test_result_serializes():
    result = analyze_blast_radius({"b": ["a"]})[0]
    assert result.to_dict() == {"target": "a", "affected_resources": ["b"], "severity": "low"}
