"""Call, import and infrastructure dependency graphs derived from merged indexes.

All functions here read a finished index and never mutate it, except
:func:`compute_variable_usage` which fills ``Variable.used_by``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set, Tuple

from .models import REFERENCE_KINDS, InfraIndex, Reference, StructureIndex, Symbol

logger = logging.getLogger(__name__)

# Reference prefixes that never become dependency edges
NON_DEPENDENCY_PREFIXES = ("var.", "local.")


class SymbolResolver:
    """Resolve reference keys (``name``, ``Owner.name``, ``*.method``) to symbols.

    Exact names prefer a symbol declared in the referencing file.  Wildcards
    match every method with that short name; two unrelated classes sharing
    a method name both match.
    """

    def __init__(self, index: StructureIndex) -> None:
        self._by_name: Dict[str, List[Symbol]] = {}
        self._methods_by_short_name: Dict[str, List[Symbol]] = {}
        for symbol in sorted(index.symbols.values(), key=lambda s: s.id):
            self._by_name.setdefault(symbol.name, []).append(symbol)
            if symbol.kind == "method":
                self._methods_by_short_name.setdefault(symbol.short_name, []).append(symbol)

    def resolve(self, ref: Reference) -> List[Symbol]:
        if ref.is_wildcard:
            return list(self._methods_by_short_name.get(ref.symbol_id[2:], []))
        candidates = self._by_name.get(ref.symbol_id, [])
        if not candidates:
            return []
        local = [s for s in candidates if s.file == ref.file]
        return [local[0]] if local else [candidates[0]]


def build_call_graph(index: StructureIndex) -> Dict[str, List[str]]:
    """``{caller name: [callee names]}``; callers with no resolved callee are omitted."""
    resolver = SymbolResolver(index)
    graph: Dict[str, List[str]] = {}

    for ref in sorted(index.iter_references(), key=lambda r: (r.file, r.line)):
        if ref.kind not in REFERENCE_KINDS or ref.caller is None:
            continue
        caller = index.symbols.get(ref.caller)
        if caller is None:
            continue
        for target in resolver.resolve(ref):
            callees = graph.setdefault(caller.name, [])
            if target.name not in callees:
                callees.append(target.name)
    logger.debug("Call graph: %d callers", len(graph))
    return graph


def unresolved_references(index: StructureIndex) -> List[Reference]:
    """References that match no known symbol (external or dynamic calls)."""
    resolver = SymbolResolver(index)
    return [ref for ref in index.iter_references() if not resolver.resolve(ref)]


def build_import_graph(index: StructureIndex) -> Dict[str, List[str]]:
    """``{file: [import sources]}`` with specifiers kept verbatim."""
    graph: Dict[str, List[str]] = {}
    for path, info in sorted(index.files.items()):
        sources: List[str] = []
        for imp in info.imports:
            if imp.source not in sources:
                sources.append(imp.source)
        if sources:
            graph[path] = sources
    return graph


def normalize_dependency(reference: str) -> Optional[str]:
    """Map a reference to a graph node id, or None if it is not a dependency.

    ``aws_subnet.main.id`` -> ``aws_subnet.main``; ``module.vpc.id`` ->
    ``module.vpc``; ``data.aws_ami.ubuntu.id`` -> ``data.aws_ami.ubuntu``.
    """
    if "." not in reference or reference.startswith(NON_DEPENDENCY_PREFIXES):
        return None
    parts = reference.split(".")
    if parts[0] == "data":
        return ".".join(parts[:3]) if len(parts) >= 3 else None
    return ".".join(parts[:2])


def build_dependency_graph(infra: InfraIndex) -> Dict[str, List[str]]:
    """``{node id: [ids it depends on]}`` for resources, data sources and modules.

    Edges point from dependent to dependency.  Nodes without edges are left out.
    """
    graph: Dict[str, List[str]] = {}

    def add(node_id: str, explicit: List[str], references: List[str]) -> None:
        edges: Set[str] = set()
        for raw in list(explicit) + list(references):
            target = normalize_dependency(raw)
            if target and target != node_id:
                edges.add(target)
        if edges:
            graph[node_id] = sorted(edges)

    for resource_id, resource in sorted(infra.resources.items()):
        add(resource_id, resource.dependencies, resource.references)
    for data_id, data in sorted(infra.data_sources.items()):
        add(data_id, [], data.references)
    for module_id, module in sorted(infra.modules.items()):
        add(module_id, [], module.references)
    return graph


def compute_variable_usage(infra: InfraIndex) -> Dict[str, List[str]]:
    """Fill ``Variable.used_by`` from literal ``var.<name>`` references."""
    users: List[Tuple[str, List[str]]] = [(rid, r.references) for rid, r in sorted(infra.resources.items())]
    users.extend((mid, m.references) for mid, m in sorted(infra.modules.items()))

    usage: Dict[str, List[str]] = {}
    for name, variable in sorted(infra.variables.items()):
        token = f"var.{name}"
        variable.used_by = [owner for owner, references in users if token in references]
        usage[name] = list(variable.used_by)
    return usage
