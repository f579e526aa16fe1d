"""Tree-sitter syntax walker for JavaScript / TypeScript sources.

Turns one concrete syntax tree into symbol, reference and import records.
Tree-sitter produces an error-tolerant *concrete syntax tree*, so a file
with syntax errors still yields partial results alongside an entry in
``ParseResult.errors``.

The walk is a single depth-first pass.  Each node type maps to one
:class:`NodeCategory`; each category has one handler, and anything
uninteresting falls through to a plain "visit the children" handler.
Enclosing-class and enclosing-function information travels down the
recursion as an immutable :class:`WalkContext`, so a walker carries no
state between files.
"""

from __future__ import annotations

import enum
import importlib
import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import Import, ImportedSymbol, ParseResult, Reference, Symbol, make_symbol_id, source_lines

logger = logging.getLogger(__name__)

# Prefix added to the signature of functions that render markup
COMPONENT_PREFIX = "[component] "

# Depth limit when looking for an enclosing ``export`` statement
EXPORT_SEARCH_DEPTH = 3

# Argument texts that are never recorded as callbacks
CALLBACK_EXCLUDED = frozenset({"null", "undefined", "true", "false"})
_ALL_CAPS = re.compile(r"^[A-Z][A-Z0-9_]*$")
_WHITESPACE = re.compile(r"\s+")

MARKUP_NODE_TYPES = frozenset({"jsx_element", "jsx_self_closing_element", "jsx_fragment"})

# Statements that wrap a declaration: used to find the doc comment anchor
_WRAPPER_TYPES = frozenset({
    "variable_declarator",
    "lexical_declaration",
    "variable_declaration",
    "export_statement",
    "field_definition",
    "public_field_definition",
})


# ===================================================================
# Grammar loading
# ===================================================================

class GrammarRegistry:
    """Lazily loads one tree-sitter parser per language.

    Uses the per-language grammar packages (``tree-sitter >= 0.22``), whose
    modules expose a function returning the ``Language`` capsule.
    """

    # language -> (module, function returning the language capsule)
    GRAMMAR_MODULES: Dict[str, Tuple[str, str]] = {
        "javascript": ("tree_sitter_javascript", "language"),
        "typescript": ("tree_sitter_typescript", "language_typescript"),
        "tsx": ("tree_sitter_typescript", "language_tsx"),
    }

    def __init__(self) -> None:
        self._parsers: Dict[str, Any] = {}
        self._failed: Dict[str, str] = {}

    def supports_language(self, language: str) -> bool:
        return self.get_parser(language) is not None

    def load_error(self, language: str) -> Optional[str]:
        return self._failed.get(language)

    def get_parser(self, language: str) -> Optional[Any]:
        if language in self._parsers:
            return self._parsers[language]
        if language in self._failed:
            return None

        entry = self.GRAMMAR_MODULES.get(language)
        if entry is None:
            self._failed[language] = f"no grammar mapped for language '{language}'"
            return None

        from tree_sitter import Language, Parser as TSParser

        mod_name, func_name = entry
        try:
            mod = importlib.import_module(mod_name)
            parser = TSParser(Language(getattr(mod, func_name)()))
        except ImportError:
            self._failed[language] = f"grammar package '{mod_name}' is not installed"
            logger.warning(
                "Grammar package '%s' not installed for language '%s'. Install with: pip install %s",
                mod_name, language, mod_name.replace("_", "-"),
            )
            return None
        except (AttributeError, TypeError, ValueError) as exc:
            self._failed[language] = f"could not load grammar for {language}: {exc}"
            logger.warning("Could not load tree-sitter grammar for %s: %s", language, exc)
            return None

        logger.debug("Loaded tree-sitter parser for %s", language)
        self._parsers[language] = parser
        return parser


# ===================================================================
# Node categories and walk context
# ===================================================================

class NodeCategory(enum.Enum):
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE_ALIAS = "type_alias"
    CALL = "call"
    IMPORT = "import"
    EXPORT = "export"
    OTHER = "other"


_CATEGORY_BY_TYPE: Dict[str, NodeCategory] = {
    "function_declaration": NodeCategory.FUNCTION,
    "generator_function_declaration": NodeCategory.FUNCTION,
    "function_expression": NodeCategory.FUNCTION,
    "function": NodeCategory.FUNCTION,
    "generator_function": NodeCategory.FUNCTION,
    "arrow_function": NodeCategory.FUNCTION,
    "method_definition": NodeCategory.FUNCTION,
    "class_declaration": NodeCategory.CLASS,
    "abstract_class_declaration": NodeCategory.CLASS,
    "class": NodeCategory.CLASS,
    "interface_declaration": NodeCategory.INTERFACE,
    "type_alias_declaration": NodeCategory.TYPE_ALIAS,
    "call_expression": NodeCategory.CALL,
    "import_statement": NodeCategory.IMPORT,
    "export_statement": NodeCategory.EXPORT,
}


def categorize(node_type: str) -> NodeCategory:
    return _CATEGORY_BY_TYPE.get(node_type, NodeCategory.OTHER)


@dataclass(frozen=True)
class WalkContext:
    """Where the walker currently is: enclosing classes and enclosing function."""

    class_stack: Tuple[str, ...] = ()
    caller: Optional[str] = None

    @property
    def current_class(self) -> Optional[str]:
        return self.class_stack[-1] if self.class_stack else None

    def push_class(self, name: str) -> "WalkContext":
        return WalkContext(class_stack=self.class_stack + (name,), caller=None)

    def enter(self, symbol_id: str) -> "WalkContext":
        return replace(self, caller=symbol_id)


# ===================================================================
# Helpers
# ===================================================================

def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace")


def _line(node: Any) -> int:
    return node.start_point[0] + 1


def _end_line(node: Any) -> int:
    return node.end_point[0] + 1


def _normalize_access(text: str) -> str:
    """``a?.b\\n .c`` -> ``a.b.c``."""
    return _WHITESPACE.sub("", text).replace("?.", ".")


def _string_value(node: Any) -> str:
    return _text(node).strip().strip("'\"`")


def clean_doc_comment(raw: str) -> str:
    """Strip ``/** */`` delimiters and leading ``*`` gutters."""
    body = raw.strip()
    if body.startswith("/**"):
        body = body[3:]
    if body.endswith("*/"):
        body = body[:-2]
    lines = []
    for line in body.splitlines():
        line = line.strip()
        if line.startswith("*"):
            line = line[1:].strip()
        lines.append(line)
    return "\n".join(lines).strip()


def is_excluded_callback(text: str) -> bool:
    if text in CALLBACK_EXCLUDED:
        return True
    return bool(_ALL_CAPS.match(text.rsplit(".", 1)[-1]))


# ===================================================================
# Walker
# ===================================================================

class SyntaxWalker:
    """Extract symbols, references and imports from one parsed file.

    A walker instance is bound to one file; :meth:`walk` is a pure function
    of the tree and the source text.
    """

    def __init__(self, file_path: str, source: str, language: str = "javascript") -> None:
        self.file_path = file_path
        self.language = language
        self._lines = source_lines(source)
        self._symbols: List[Symbol] = []
        self._symbols_by_id: Dict[str, Symbol] = {}
        self._references: List[Reference] = []
        self._imports: List[Import] = []
        self._errors: List[str] = []
        self._handlers: Dict[NodeCategory, Callable[[Any, WalkContext], None]] = {
            NodeCategory.FUNCTION: self._handle_function,
            NodeCategory.CLASS: self._handle_class,
            NodeCategory.INTERFACE: self._handle_interface,
            NodeCategory.TYPE_ALIAS: self._handle_type_alias,
            NodeCategory.CALL: self._handle_call,
            NodeCategory.IMPORT: self._handle_import,
            NodeCategory.EXPORT: self._handle_export,
            NodeCategory.OTHER: self._visit_children,
        }

    def walk(self, tree: Any) -> ParseResult:
        root = tree.root_node
        if root.has_error:
            self._errors.append(f"syntax error near line {_first_error_line(root)}")
        self._visit(root, WalkContext())
        return ParseResult(
            file=self.file_path,
            language=self.language,
            symbols=self._symbols,
            references=self._references,
            imports=self._imports,
            errors=self._errors,
            line_count=len(self._lines),
        )

    # -- dispatch ------------------------------------------------------

    def _visit(self, node: Any, ctx: WalkContext) -> None:
        self._handlers[categorize(node.type)](node, ctx)

    def _visit_children(self, node: Any, ctx: WalkContext) -> None:
        for child in node.named_children:
            self._visit(child, ctx)

    # -- declarations --------------------------------------------------

    def _handle_function(self, node: Any, ctx: WalkContext) -> None:
        name, kind = self._function_name(node, ctx)
        if name is None:
            # Anonymous function: its calls belong to the enclosing symbol
            self._visit_children(node, ctx)
            return

        signature = self._signature(node)
        if self._contains_markup(node.child_by_field_name("body")):
            signature = COMPONENT_PREFIX + signature

        symbol = self._add_symbol(node, name, kind, signature)
        self._visit_children(node, ctx.enter(symbol.id))

    def _handle_class(self, node: Any, ctx: WalkContext) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None and node.parent is not None and node.parent.type == "variable_declarator":
            name_node = node.parent.child_by_field_name("name")
        if name_node is None:
            logger.debug("%s:%d: skipping class without a name", self.file_path, _line(node))
            self._errors.append(f"line {_line(node)}: class without a name skipped")
            return

        name = _text(name_node)
        self._add_symbol(node, name, "class", self._signature(node))

        body = node.child_by_field_name("body")
        class_ctx = ctx.push_class(name)
        for child in node.named_children:
            self._visit(child, class_ctx if child == body else ctx)

    def _handle_interface(self, node: Any, ctx: WalkContext) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is not None:
            self._add_symbol(node, _text(name_node), "interface", self._signature(node))

    def _handle_type_alias(self, node: Any, ctx: WalkContext) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is not None:
            self._add_symbol(node, _text(name_node), "type", self._signature(node))

    def _function_name(self, node: Any, ctx: WalkContext) -> Tuple[Optional[str], str]:
        parent = node.parent

        if node.type == "method_definition":
            name_node = node.child_by_field_name("name")
            if name_node is None or parent is None or parent.type != "class_body" or not ctx.class_stack:
                # Object-literal methods are not class members
                return None, "function"
            return f"{ctx.current_class}.{_text(name_node)}", "method"

        if node.type in ("function_declaration", "generator_function_declaration"):
            name_node = node.child_by_field_name("name")
            return (_text(name_node) if name_node is not None else None), "function"

        # Function / arrow expressions take the name they are bound to
        if parent is not None and parent.type == "variable_declarator":
            name_node = parent.child_by_field_name("name")
            if name_node is not None and name_node.type == "identifier":
                return _text(name_node), "function"
        if parent is not None and parent.type in ("field_definition", "public_field_definition") and ctx.class_stack:
            name_node = parent.child_by_field_name("property") or parent.child_by_field_name("name")
            if name_node is not None:
                return f"{ctx.current_class}.{_text(name_node)}", "method"

        name_node = node.child_by_field_name("name")
        if name_node is not None:
            return _text(name_node), "function"
        return None, "function"

    def _add_symbol(self, node: Any, name: str, kind: str, signature: str) -> Symbol:
        line = _line(node)
        symbol_id = make_symbol_id(self.file_path, name, line)
        if symbol_id in self._symbols_by_id:
            # `get x() {} set x(v) {}` on one line: both accessors share a symbol
            return self._symbols_by_id[symbol_id]
        symbol = Symbol(
            id=symbol_id,
            name=name,
            kind=kind,
            file=self.file_path,
            line=line,
            end_line=_end_line(node),
            exported=self._is_exported(node),
            signature=signature,
            docstring=self._docstring(node),
        )
        self._symbols.append(symbol)
        self._symbols_by_id[symbol_id] = symbol
        return symbol

    def _signature(self, node: Any) -> str:
        line = _line(node)
        if 0 < line <= len(self._lines):
            return self._lines[line - 1].strip()
        return ""

    @staticmethod
    def _contains_markup(node: Any) -> bool:
        if node is None:
            return False
        stack = [node]
        while stack:
            current = stack.pop()
            if current.type in MARKUP_NODE_TYPES:
                return True
            stack.extend(current.named_children)
        return False

    @staticmethod
    def _is_exported(node: Any) -> bool:
        # Only the nearest three ancestors are checked
        parent = node.parent
        for _ in range(EXPORT_SEARCH_DEPTH):
            if parent is None:
                return False
            if parent.type == "export_statement":
                return True
            parent = parent.parent
        return False

    @staticmethod
    def _docstring(node: Any) -> Optional[str]:
        anchor = node
        for _ in range(EXPORT_SEARCH_DEPTH):
            if anchor.parent is None or anchor.parent.type not in _WRAPPER_TYPES:
                break
            anchor = anchor.parent

        sibling = anchor.prev_sibling
        while sibling is not None and sibling.type == "comment":
            raw = _text(sibling)
            if raw.startswith("/**"):
                return clean_doc_comment(raw) or None
            sibling = sibling.prev_sibling
        return None

    # -- references ----------------------------------------------------

    def _handle_call(self, node: Any, ctx: WalkContext) -> None:
        function = node.child_by_field_name("function")
        arguments = node.child_by_field_name("arguments")
        line = _line(node)

        if function is not None and self._record_require(function, arguments, line):
            self._visit_children(node, ctx)
            return

        if function is not None:
            for key in self._callee_keys(function, ctx):
                self._references.append(
                    Reference(symbol_id=key, file=self.file_path, line=line, kind="call", caller=ctx.caller)
                )

        if arguments is not None and arguments.type == "arguments":
            for arg in arguments.named_children:
                if arg.type not in ("identifier", "member_expression"):
                    continue
                key = self._access_key(arg, ctx)
                if key and not is_excluded_callback(key):
                    self._references.append(
                        Reference(symbol_id=key, file=self.file_path, line=_line(arg), kind="callback", caller=ctx.caller)
                    )

        self._visit_children(node, ctx)

    def _callee_keys(self, function: Any, ctx: WalkContext) -> List[str]:
        if function.type == "identifier":
            return [_text(function)]
        if function.type != "member_expression":
            return []

        receiver = function.child_by_field_name("object")
        prop = function.child_by_field_name("property")
        if prop is None:
            return []
        key = self._access_key(function, ctx)
        if receiver is not None and receiver.type in ("this", "super"):
            return [key]
        return [key, f"*.{_text(prop)}"]

    @staticmethod
    def _access_key(node: Any, ctx: WalkContext) -> str:
        """Callee text; ``this.x`` / ``super.x`` resolve against the enclosing class."""
        if node.type == "identifier":
            return _text(node)
        receiver = node.child_by_field_name("object")
        prop = node.child_by_field_name("property")
        if receiver is not None and prop is not None and receiver.type in ("this", "super"):
            if ctx.current_class:
                return f"{ctx.current_class}.{_text(prop)}"
            return _text(prop)
        return _normalize_access(_text(node))

    def _record_require(self, function: Any, arguments: Any, line: int) -> bool:
        """``require("x")`` and ``import("x")`` count as imports, not calls."""
        if function.type == "identifier" and _text(function) == "require":
            pass
        elif function.type != "import":
            return False
        if arguments is None or arguments.named_child_count != 1:
            return False
        arg = arguments.named_children[0]
        if arg.type != "string":
            return False

        module_alias = None
        parent = arguments.parent.parent if arguments.parent is not None else None
        if parent is not None and parent.type == "variable_declarator":
            name_node = parent.child_by_field_name("name")
            if name_node is not None and name_node.type == "identifier":
                module_alias = _text(name_node)
        self._imports.append(Import(source=_string_value(arg), module_alias=module_alias, line=line))
        return True

    # -- imports -------------------------------------------------------

    def _handle_import(self, node: Any, ctx: WalkContext) -> None:
        source_node = node.child_by_field_name("source")
        imp = Import(source=_string_value(source_node) if source_node is not None else "", line=_line(node))

        for child in node.named_children:
            if child.type == "import_clause":
                for part in child.named_children:
                    if part.type == "identifier":
                        imp.symbols.append(ImportedSymbol(name="default", alias=_text(part)))
                    elif part.type == "namespace_import":
                        alias = next((c for c in part.named_children if c.type == "identifier"), None)
                        imp.module_alias = _text(alias) if alias is not None else None
                        imp.is_wildcard = True
                    elif part.type == "named_imports":
                        imp.symbols.extend(self._specifiers(part, "import_specifier"))
            elif child.type == "import_require_clause":
                # TypeScript: import fs = require("fs")
                alias = child.child_by_field_name("name") or next(
                    (c for c in child.named_children if c.type == "identifier"), None
                )
                source = child.child_by_field_name("source") or next(
                    (c for c in child.named_children if c.type == "string"), None
                )
                if source is not None:
                    imp.source = _string_value(source)
                imp.module_alias = _text(alias) if alias is not None else None

        if imp.source:
            self._imports.append(imp)

    def _handle_export(self, node: Any, ctx: WalkContext) -> None:
        source_node = node.child_by_field_name("source")
        if source_node is not None:
            # Re-export: export { a as b } from "x" / export * from "x"
            imp = Import(source=_string_value(source_node), line=_line(node))
            for child in node.children:
                if child.type == "*":
                    imp.is_wildcard = True
                elif child.type == "namespace_export":
                    imp.is_wildcard = True
                    alias = next((c for c in child.named_children if c.type == "identifier"), None)
                    imp.module_alias = _text(alias) if alias is not None else None
                elif child.type == "export_clause":
                    imp.symbols.extend(self._specifiers(child, "export_specifier"))
            self._imports.append(imp)
        self._visit_children(node, ctx)

    @staticmethod
    def _specifiers(node: Any, specifier_type: str) -> List[ImportedSymbol]:
        symbols: List[ImportedSymbol] = []
        for specifier in node.named_children:
            if specifier.type != specifier_type:
                continue
            name_node = specifier.child_by_field_name("name")
            alias_node = specifier.child_by_field_name("alias")
            if name_node is None:
                continue
            symbols.append(
                ImportedSymbol(name=_text(name_node), alias=_text(alias_node) if alias_node is not None else None)
            )
        return symbols


def _first_error_line(root: Any) -> int:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return _line(node)
        if node.has_error:
            stack.extend(reversed(node.children))
    return _line(root)


# ===================================================================
# File-level entry point
# ===================================================================

class SyntaxTreeParser:
    """Read, parse and walk one file; never raises for per-file problems."""

    def __init__(self, registry: Optional[GrammarRegistry] = None) -> None:
        self.registry = registry or GrammarRegistry()

    def supports_language(self, language: str) -> bool:
        return self.registry.supports_language(language)

    def parse_source(self, source: str, file_path: str, language: str) -> ParseResult:
        parser = self.registry.get_parser(language)
        if parser is None:
            reason = self.registry.load_error(language) or f"no parser for {language}"
            return ParseResult.failed(file_path, language, reason)
        tree = parser.parse(source.encode("utf-8"))
        return SyntaxWalker(file_path, source, language).walk(tree)

    def parse_file(
        self,
        file_path: Path,
        language: str,
        source: Optional[str] = None,
        display_path: Optional[str] = None,
    ) -> ParseResult:
        name = display_path or str(file_path)
        if source is None:
            try:
                source = file_path.read_text(encoding="utf-8", errors="ignore")
            except OSError as exc:
                logger.warning("Could not read %s: %s", file_path, exc)
                return ParseResult.failed(name, language, f"unreadable file: {exc}")
        return self.parse_source(source, name, language)
