"""Core data models produced by extraction and consumed by the graph layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

SYMBOL_KINDS = ("function", "method", "class", "interface", "type")
REFERENCE_KINDS = ("call", "callback")
SEVERITIES = ("high", "medium", "low")


def make_symbol_id(file: str, name: str, line: int) -> str:
    """Deterministic symbol id; embeds the file path so ids never collide across files."""
    return f"{file}:{name}:{line}"


def source_lines(text: str) -> List[str]:
    """Split on line feeds only, so line numbers agree with tree-sitter rows and LSP positions.

    Unlike :meth:`str.splitlines`, form feeds and Unicode separators stay
    inside their line. A trailing newline does not open an extra line.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


# ===================================================================
# Source code
# ===================================================================

@dataclass
class Symbol:
    id: str
    name: str
    kind: str
    file: str
    line: int
    end_line: int
    exported: bool = False
    signature: str = ""
    docstring: Optional[str] = None

    @property
    def short_name(self) -> str:
        """Name without the ``Owner.`` qualifier."""
        return self.name.rsplit(".", 1)[-1]

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if self.docstring is None:
            result.pop("docstring")
        return result


@dataclass
class Reference:
    """A call or callback site.

    ``symbol_id`` is the callee as written: a bare name, ``Owner.name`` or a
    wildcard ``*.method`` when the receiver type is unknown.  ``caller`` is
    the id of the enclosing function symbol, ``None`` at module scope.
    """

    symbol_id: str
    file: str
    line: int
    kind: str = "call"
    caller: Optional[str] = None

    @property
    def is_wildcard(self) -> bool:
        return self.symbol_id.startswith("*.")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImportedSymbol:
    name: str
    alias: Optional[str] = None


@dataclass
class Import:
    source: str
    symbols: List[ImportedSymbol] = field(default_factory=list)
    module_alias: Optional[str] = None
    is_wildcard: bool = False
    line: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ParseResult:
    """Extraction output for one file.

    A non-empty ``errors`` list means the other lists may be partial; the
    result is still merged into the index.
    """

    file: str
    language: str
    symbols: List[Symbol] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    imports: List[Import] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    line_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def failed(cls, file: str, language: str, error: str) -> "ParseResult":
        return cls(file=file, language=language, errors=[error])


@dataclass
class FileInfo:
    path: str
    language: str
    symbols: List[str] = field(default_factory=list)
    imports: List[Import] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    line_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "language": self.language,
            "symbols": list(self.symbols),
            "imports": [i.to_dict() for i in self.imports],
            "errors": list(self.errors),
            "line_count": self.line_count,
        }


@dataclass
class ModuleInfo:
    """An import specifier seen anywhere in the repository."""

    name: str
    imported_by: List[str] = field(default_factory=list)
    is_relative: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StructureIndex:
    """Repository-wide merge of every :class:`ParseResult`."""

    root: str = ""
    files: Dict[str, FileInfo] = field(default_factory=dict)
    symbols: Dict[str, Symbol] = field(default_factory=dict)
    references: Dict[str, List[Reference]] = field(default_factory=dict)
    modules: Dict[str, ModuleInfo] = field(default_factory=dict)

    def add_result(self, result: ParseResult) -> None:
        info = FileInfo(
            path=result.file,
            language=result.language,
            imports=list(result.imports),
            errors=list(result.errors),
            line_count=result.line_count,
        )
        for symbol in result.symbols:
            self.symbols[symbol.id] = symbol
            info.symbols.append(symbol.id)
        for ref in result.references:
            self.references.setdefault(ref.symbol_id, []).append(ref)
        for imp in result.imports:
            module = self.modules.get(imp.source)
            if module is None:
                module = ModuleInfo(name=imp.source, is_relative=imp.source.startswith("."))
                self.modules[imp.source] = module
            if result.file not in module.imported_by:
                module.imported_by.append(result.file)
        self.files[result.file] = info

    def iter_references(self):
        for refs in self.references.values():
            yield from refs

    def validate(self) -> List[str]:
        """Return a description of every invariant violation (empty when consistent)."""
        problems: List[str] = []
        for path, info in self.files.items():
            for symbol_id in info.symbols:
                if symbol_id not in self.symbols:
                    problems.append(f"{path}: symbol {symbol_id} missing from index")
        for symbol in self.symbols.values():
            if symbol.kind not in SYMBOL_KINDS:
                problems.append(f"{symbol.file}: symbol {symbol.id} has unknown kind {symbol.kind!r}")
        for refs in self.references.values():
            for ref in refs:
                if ref.kind not in REFERENCE_KINDS:
                    problems.append(f"{ref.file}:{ref.line}: reference {ref.symbol_id} has unknown kind {ref.kind!r}")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "files": {path: info.to_dict() for path, info in sorted(self.files.items())},
            "symbols": {sid: s.to_dict() for sid, s in sorted(self.symbols.items())},
            "references": {
                key: [r.to_dict() for r in refs] for key, refs in sorted(self.references.items())
            },
            "modules": {name: m.to_dict() for name, m in sorted(self.modules.items())},
        }


@dataclass
class AnalysisGaps:
    """Places where the static approximation is known to be incomplete.

    Filled by an external gap detector that reads a :class:`StructureIndex`.
    """

    uncalled_exports: List[str] = field(default_factory=list)
    unused_imports: List[str] = field(default_factory=list)
    orphan_modules: List[str] = field(default_factory=list)


# ===================================================================
# Infrastructure
# ===================================================================

@dataclass
class Resource:
    type: str
    name: str
    provider: str
    file: str
    line: int
    dependencies: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.type}.{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **asdict(self)}


@dataclass
class DataSource:
    type: str
    name: str
    file: str
    line: int
    references: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"data.{self.type}.{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **asdict(self)}


@dataclass
class Module:
    name: str
    source: str
    file: str
    line: int
    variables: Dict[str, str] = field(default_factory=dict)
    references: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"module.{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **asdict(self)}


@dataclass
class Variable:
    name: str
    file: str
    line: int
    type: Optional[str] = None
    default: Optional[str] = None
    description: Optional[str] = None
    used_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Output:
    name: str
    value: str
    file: str
    line: int
    description: Optional[str] = None
    references: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Provider:
    name: str
    file: str
    line: int
    alias: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Local:
    name: str
    value: str
    file: str
    line: int
    references: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InfraParseResult:
    file: str
    resources: List[Resource] = field(default_factory=list)
    data_sources: List[DataSource] = field(default_factory=list)
    modules: List[Module] = field(default_factory=list)
    variables: List[Variable] = field(default_factory=list)
    outputs: List[Output] = field(default_factory=list)
    providers: List[Provider] = field(default_factory=list)
    locals: List[Local] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    language: str = "terraform"

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def failed(cls, file: str, error: str) -> "InfraParseResult":
        return cls(file=file, errors=[error])


@dataclass
class InfraIndex:
    """Repository-wide merge of every :class:`InfraParseResult`."""

    resources: Dict[str, Resource] = field(default_factory=dict)
    data_sources: Dict[str, DataSource] = field(default_factory=dict)
    modules: Dict[str, Module] = field(default_factory=dict)
    variables: Dict[str, Variable] = field(default_factory=dict)
    outputs: Dict[str, Output] = field(default_factory=dict)
    providers: List[Provider] = field(default_factory=list)
    locals: Dict[str, Local] = field(default_factory=dict)
    errors: Dict[str, List[str]] = field(default_factory=dict)

    def add_result(self, result: InfraParseResult) -> None:
        for resource in result.resources:
            self.resources[resource.id] = resource
        for data in result.data_sources:
            self.data_sources[data.id] = data
        for module in result.modules:
            self.modules[module.id] = module
        for variable in result.variables:
            self.variables[variable.name] = variable
        for output in result.outputs:
            self.outputs[output.name] = output
        for local in result.locals:
            self.locals[local.name] = local
        self.providers.extend(result.providers)
        if result.errors:
            self.errors.setdefault(result.file, []).extend(result.errors)

    def is_empty(self) -> bool:
        return not (self.resources or self.data_sources or self.modules or self.variables or self.outputs)

    def resource_ids(self) -> List[str]:
        return sorted(self.resources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": {k: v.to_dict() for k, v in sorted(self.resources.items())},
            "data_sources": {k: v.to_dict() for k, v in sorted(self.data_sources.items())},
            "modules": {k: v.to_dict() for k, v in sorted(self.modules.items())},
            "variables": {k: v.to_dict() for k, v in sorted(self.variables.items())},
            "outputs": {k: v.to_dict() for k, v in sorted(self.outputs.items())},
            "providers": [p.to_dict() for p in self.providers],
            "locals": {k: v.to_dict() for k, v in sorted(self.locals.items())},
            "errors": dict(self.errors),
        }


@dataclass
class BlastRadius:
    target: str
    affected_resources: List[str]
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
