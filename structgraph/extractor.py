"""Per-file extraction with ordered fallback strategies, merged into an index.

For every file the orchestrator tries a language server first (when one
is configured and installed for the file's language) and falls back to the
tree-sitter walker or the textual HCL parser.  A strategy that fails never
aborts the run: the next one is tried, and a file where every strategy
fails still contributes an error-annotated result.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .config_manager import ServerConfig, load_server_configs
from .errors import ExtractionError
from .hcl_parser import HclParser
from .lsp_client import (
    DocumentSymbol,
    LanguageServerClient,
    LspError,
    LspStartError,
    command_exists,
    path_to_uri,
)
from .models import (
    InfraIndex,
    InfraParseResult,
    ParseResult,
    Reference,
    StructureIndex,
    Symbol,
    make_symbol_id,
    source_lines,
)
from .parser import SyntaxTreeParser

logger = logging.getLogger(__name__)

AnyResult = Union[ParseResult, InfraParseResult]

LANGUAGE_EXTENSIONS: Dict[str, Tuple[str, ...]] = {
    "javascript": (".js", ".jsx", ".mjs", ".cjs"),
    "typescript": (".ts", ".mts", ".cts"),
    "tsx": (".tsx",),
    "terraform": (".tf",),
}

# Languages implied by a requested language identifier
LANGUAGE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "typescript": ("typescript", "tsx"),
    "hcl": ("terraform",),
}

INFRA_LANGUAGES = frozenset({"terraform"})

# LSP languageId per file extension
LSP_LANGUAGE_IDS: Dict[str, str] = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascriptreact",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "typescriptreact",
    ".tf": "terraform",
}

SKIP_DIRS: Set[str] = {
    ".venv", "venv", "__pycache__", "node_modules", ".git",
    "site-packages", ".tox", ".pytest_cache", "build", "dist",
    ".mypy_cache", ".ruff_cache", "htmlcov", ".eggs",
    ".terraform", ".next", "coverage",
}

# LSP SymbolKind -> Symbol.kind
LSP_SYMBOL_KINDS: Dict[int, str] = {
    5: "class",
    6: "method",
    9: "method",
    11: "interface",
    12: "function",
    26: "type",
}
# Kinds the server uses for `const f = () => ...` and `onClick = () => ...`;
# they count only when the walker recorded a callable of the same name
_LSP_VARIABLE_KINDS = (13, 14)
_LSP_MEMBER_KINDS = (7, 8)


def expand_languages(languages: Optional[Iterable[str]]) -> List[str]:
    if not languages:
        return list(LANGUAGE_EXTENSIONS)
    expanded: List[str] = []
    for language in languages:
        for name in LANGUAGE_ALIASES.get(language.lower(), (language.lower(),)):
            if name in LANGUAGE_EXTENSIONS and name not in expanded:
                expanded.append(name)
            elif name not in LANGUAGE_EXTENSIONS:
                logger.warning("Unsupported language '%s' ignored", language)
    return expanded


def language_for_path(path: Path) -> Optional[str]:
    suffix = path.suffix.lower()
    for language, extensions in LANGUAGE_EXTENSIONS.items():
        if suffix in extensions:
            return language
    return None


def discover_files(root: Path, languages: Optional[Iterable[str]] = None) -> List[Path]:
    wanted = set(expand_languages(languages))
    extensions = {ext for lang in wanted for ext in LANGUAGE_EXTENSIONS[lang]}
    files = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in extensions:
            continue
        if any(part in SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        files.append(path)
    return files


# ===================================================================
# Strategies
# ===================================================================

class ExtractionStrategy(ABC):
    """One way of producing a result for a file.

    Implementations raise :class:`ExtractionError` (or an LSP error) when
    they cannot handle the file, letting the chain try the next strategy.
    """

    name = "strategy"

    @abstractmethod
    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> AnyResult:
        ...


class SyntaxTreeStrategy(ExtractionStrategy):
    name = "tree-sitter"

    def __init__(self, parser: SyntaxTreeParser) -> None:
        self.parser = parser

    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> ParseResult:
        if not self.parser.supports_language(language):
            raise ExtractionError(rel_path, f"no tree-sitter grammar for {language}")
        return self.parser.parse_source(source, rel_path, language)


class HclTextStrategy(ExtractionStrategy):
    name = "hcl-text"

    def __init__(self, parser: HclParser) -> None:
        self.parser = parser

    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> InfraParseResult:
        return self.parser.parse_text(source, rel_path)


async def fetch_document_symbols(
    client: LanguageServerClient, path: Path, source: str
) -> List[DocumentSymbol]:
    """Open, query and close one document; close happens even if the query fails."""
    uri = path_to_uri(path)
    await client.open_document(uri, source, LSP_LANGUAGE_IDS.get(path.suffix.lower()))
    try:
        return await client.document_symbols(uri)
    finally:
        try:
            await client.close_document(uri)
        except LspError as exc:
            logger.debug("didClose for %s failed: %s", uri, exc)


class LspSymbolStrategy(ExtractionStrategy):
    """Symbols from a language server, references and imports from the walker.

    The server gives reliable declaration ranges; it has no notion of call
    sites, so references come from the syntax tree and are re-attributed to
    the innermost server-reported function containing them.
    """

    name = "lsp"

    def __init__(self, client: LanguageServerClient, syntax: SyntaxTreeParser) -> None:
        self.client = client
        self.syntax = syntax

    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> ParseResult:
        document_symbols = await fetch_document_symbols(self.client, path, source)
        if not document_symbols:
            raise ExtractionError(rel_path, "language server reported no symbols")

        lines = source_lines(source)
        if self.syntax.supports_language(language):
            walked = self.syntax.parse_source(source, rel_path, language)
        else:
            walked = ParseResult(file=rel_path, language=language, line_count=len(lines))

        symbols = _symbols_from_lsp(document_symbols, walked, rel_path, lines)
        return ParseResult(
            file=rel_path,
            language=language,
            symbols=symbols,
            references=_reattribute(walked.references, symbols),
            imports=walked.imports,
            errors=walked.errors,
            line_count=walked.line_count,
        )


def _symbols_from_lsp(
    document_symbols: Sequence[DocumentSymbol],
    walked: ParseResult,
    rel_path: str,
    lines: List[str],
) -> List[Symbol]:
    by_name = {s.name: s for s in walked.symbols}
    symbols: List[Symbol] = []
    seen: Set[str] = set()

    stack: List[Tuple[DocumentSymbol, Optional[str]]] = [(s, s.container) for s in reversed(document_symbols)]
    while stack:
        doc, container = stack.pop()
        kind = LSP_SYMBOL_KINDS.get(doc.kind)
        member = kind == "method" or doc.kind in _LSP_MEMBER_KINDS
        name = f"{container}.{doc.name}" if member and container else doc.name
        known = by_name.get(name)
        if kind is None and known is not None and doc.kind in _LSP_VARIABLE_KINDS + _LSP_MEMBER_KINDS:
            kind = known.kind
        if kind is not None:
            symbol_id = make_symbol_id(rel_path, name, doc.line)
            if symbol_id not in seen:
                seen.add(symbol_id)
                signature = lines[doc.line - 1].strip() if 0 < doc.line <= len(lines) else doc.name
                symbols.append(Symbol(
                    id=symbol_id,
                    name=name,
                    kind=kind,
                    file=rel_path,
                    line=doc.line,
                    end_line=doc.end_line,
                    exported=known.exported if known else False,
                    signature=known.signature if known else signature,
                    docstring=known.docstring if known else None,
                ))
        child_container = doc.name if kind in ("class", "interface") else container
        stack.extend((child, child_container) for child in reversed(doc.children))
    return symbols


def _reattribute(references: List[Reference], symbols: List[Symbol]) -> List[Reference]:
    callables = [s for s in symbols if s.kind in ("function", "method")]
    result = []
    for ref in references:
        enclosing = [s for s in callables if s.line <= ref.line <= s.end_line]
        caller = min(enclosing, key=lambda s: s.end_line - s.line).id if enclosing else None
        result.append(Reference(symbol_id=ref.symbol_id, file=ref.file, line=ref.line, kind=ref.kind, caller=caller))
    return result


def normalize_infra_symbol(name: str) -> str:
    """``resource "aws_instance" "web"`` -> ``resource.aws_instance.web``."""
    parts = [p.strip('"') for p in name.replace(".", " ").split()]
    return ".".join(p for p in parts if p)


class TerraformLspStrategy(ExtractionStrategy):
    """Block positions from terraform-ls, attribute extraction stays textual."""

    name = "terraform-ls"

    def __init__(self, client: LanguageServerClient, parser: HclParser) -> None:
        self.client = client
        self.parser = parser

    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> InfraParseResult:
        document_symbols = await fetch_document_symbols(self.client, path, source)
        if not document_symbols:
            raise ExtractionError(rel_path, "language server reported no blocks")
        anchors = [(normalize_infra_symbol(s.name), s.line) for s in document_symbols]
        return self.parser.parse_with_symbols(source, rel_path, anchors)


class StrategyChain:
    """Try strategies in order and return the first success."""

    def __init__(self, strategies: Sequence[ExtractionStrategy]) -> None:
        self.strategies = list(strategies)

    async def extract(self, path: Path, rel_path: str, source: str, language: str) -> AnyResult:
        failures: List[str] = []
        for strategy in self.strategies:
            try:
                return await strategy.extract(path, rel_path, source, language)
            except (ExtractionError, LspError) as exc:
                logger.debug("%s failed for %s: %s", strategy.name, rel_path, exc)
                failures.append(f"{strategy.name}: {exc}")

        error = "; ".join(failures) or "no extraction strategy available"
        if language in INFRA_LANGUAGES:
            return InfraParseResult.failed(rel_path, error)
        return ParseResult.failed(rel_path, language, error)


# ===================================================================
# Orchestrator
# ===================================================================

@dataclass
class ExtractionResult:
    index: StructureIndex
    infra: InfraIndex


class Extractor:
    """Extract every supported file under *root* into a merged index."""

    def __init__(
        self,
        root: Path,
        languages: Optional[Iterable[str]] = None,
        server_configs: Optional[Dict[str, ServerConfig]] = None,
        use_lsp: bool = True,
        syntax_parser: Optional[SyntaxTreeParser] = None,
        hcl_parser: Optional[HclParser] = None,
    ) -> None:
        self.root = root.resolve()
        self.languages = expand_languages(languages)
        self.server_configs = server_configs if server_configs is not None else load_server_configs()
        self.use_lsp = use_lsp
        self.syntax = syntax_parser or SyntaxTreeParser()
        self.hcl = hcl_parser or HclParser()
        # One client per server command; None marks a server that is unavailable this run
        self._clients: Dict[Tuple[str, ...], Optional[LanguageServerClient]] = {}

    def run(self) -> ExtractionResult:
        return asyncio.run(self.extract())

    async def extract(self) -> ExtractionResult:
        result = ExtractionResult(index=StructureIndex(root=str(self.root)), infra=InfraIndex())
        files = discover_files(self.root, self.languages)
        logger.info("Extracting %d files under %s", len(files), self.root)
        try:
            for path in files:
                language = language_for_path(path)
                if language is None:
                    continue
                file_result = await self.extract_file(path, language)
                if isinstance(file_result, InfraParseResult):
                    result.infra.add_result(file_result)
                else:
                    result.index.add_result(file_result)
                if file_result.errors:
                    logger.warning("%s: %s", file_result.file, "; ".join(file_result.errors))
        finally:
            await self.close()
        return result

    async def extract_file(self, path: Path, language: str) -> AnyResult:
        rel_path = path.relative_to(self.root).as_posix() if path.is_absolute() else path.as_posix()
        try:
            source = (path if path.is_absolute() else self.root / path).read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            logger.warning("Could not read %s: %s", path, exc)
            if language in INFRA_LANGUAGES:
                return InfraParseResult.failed(rel_path, f"unreadable file: {exc}")
            return ParseResult.failed(rel_path, language, f"unreadable file: {exc}")

        chain = await self._chain_for(language)
        return await chain.extract(path, rel_path, source, language)

    async def _chain_for(self, language: str) -> StrategyChain:
        client = await self._client_for(language) if self.use_lsp else None
        strategies: List[ExtractionStrategy] = []
        if language in INFRA_LANGUAGES:
            if client is not None:
                strategies.append(TerraformLspStrategy(client, self.hcl))
            strategies.append(HclTextStrategy(self.hcl))
        else:
            if client is not None:
                strategies.append(LspSymbolStrategy(client, self.syntax))
            strategies.append(SyntaxTreeStrategy(self.syntax))
        return StrategyChain(strategies)

    async def _client_for(self, language: str) -> Optional[LanguageServerClient]:
        server = self.server_configs.get(language)
        if server is None or not server.enabled:
            return None
        key = tuple(server.argv)
        if key in self._clients:
            client = self._clients[key]
            return client if client is not None and client.is_ready else None

        if not command_exists(server.command):
            logger.info("Language server '%s' not found; using built-in parsers for %s", server.command, language)
            self._clients[key] = None
            return None

        client = LanguageServerClient(server.argv, self.root, language_id=language)
        try:
            await client.start()
        except LspStartError as exc:
            logger.warning("Could not start %s: %s", server.command, exc)
            self._clients[key] = None
            return None
        self._clients[key] = client
        return client

    async def close(self) -> None:
        for client in self._clients.values():
            if client is not None:
                await client.stop()
        self._clients.clear()

