"""Line-oriented parser for Terraform / HCL configuration files.

No syntax tree is built.  Blocks are located by their opening line and
closed with a brace-depth counter; attributes and references are then
pulled out of the block text with regular expressions.  The reference
scan is a superset: false positives are tolerated and the
graph builder drops ``var.``/``local.`` references when it builds
dependency edges.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    DataSource,
    InfraParseResult,
    Local,
    Module,
    Output,
    Provider,
    Resource,
    Variable,
    source_lines,
)

logger = logging.getLogger(__name__)

RESOURCE_RE = re.compile(r'^\s*resource\s+"([^"]+)"\s+"([^"]+)"\s*\{')
DATA_RE = re.compile(r'^\s*data\s+"([^"]+)"\s+"([^"]+)"\s*\{')
MODULE_RE = re.compile(r'^\s*module\s+"([^"]+)"\s*\{')
VARIABLE_RE = re.compile(r'^\s*variable\s+"([^"]+)"\s*\{')
OUTPUT_RE = re.compile(r'^\s*output\s+"([^"]+)"\s*\{')
PROVIDER_RE = re.compile(r'^\s*provider\s+"([^"]+)"\s*\{')
LOCALS_RE = re.compile(r"^\s*locals\s*\{")

BLOCK_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("resource", RESOURCE_RE),
    ("data", DATA_RE),
    ("module", MODULE_RE),
    ("variable", VARIABLE_RE),
    ("output", OUTPUT_RE),
    ("provider", PROVIDER_RE),
    ("locals", LOCALS_RE),
)

_IDENT = r"[A-Za-z_][\w-]*"

VAR_REF_RE = re.compile(rf"(?<![\w.])var\.({_IDENT})")
LOCAL_REF_RE = re.compile(rf"(?<![\w.])local\.({_IDENT})")
MODULE_REF_RE = re.compile(rf"(?<![\w.])module\.({_IDENT})")
DATA_REF_RE = re.compile(rf"(?<![\w.])data\.({_IDENT})\.({_IDENT})")
RESOURCE_REF_RE = re.compile(rf"(?<![\w.])([a-z][a-z0-9]*_[a-z0-9_]+)\.({_IDENT})")

DEPENDS_ON_RE = re.compile(r"\bdepends_on\s*=\s*\[([^\]]*)\]", re.DOTALL)
DOTTED_TOKEN_RE = re.compile(rf"{_IDENT}(?:\.{_IDENT})+")

# Module arguments that configure Terraform itself rather than the module
MODULE_META_ARGUMENTS = frozenset({
    "source", "version", "providers", "count", "for_each", "depends_on",
})

_ASSIGNMENT_RE = re.compile(rf"^\s*({_IDENT})\s*=(?!=)\s*")


def brace_delta(line: str) -> int:
    return line.count("{") - line.count("}")


def extract_block(lines: List[str], start: int) -> Tuple[str, int]:
    """Return the block opening at ``lines[start]`` and the index of its last line.

    Lines are accumulated from the opening line (inclusive) until the
    running ``{``/``}`` count returns to zero.  An unterminated block runs
    to the end of the file.
    """
    depth = 0
    seen_open = False
    end = start
    for end in range(start, len(lines)):
        delta = brace_delta(lines[end])
        if "{" in lines[end]:
            seen_open = True
        depth += delta
        if seen_open and depth <= 0:
            break
    return "\n".join(lines[start:end + 1]), end


def _block_body(block: str) -> str:
    """Text between the opening ``{`` and the matching closing ``}``."""
    open_at = block.find("{")
    close_at = block.rfind("}")
    if open_at < 0:
        return ""
    if close_at <= open_at:
        return block[open_at + 1:]
    return block[open_at + 1:close_at]


def _capture_expression(text: str, start: int) -> Tuple[str, int]:
    """Read one attribute value starting at *start*; return it and its end offset.

    Quoted strings end at the closing quote and bracketed values run until
    their brackets balance. Otherwise the value ends at the newline or at a
    `#` or `//` comment outside a string.
    """
    if start >= len(text):
        return "", start
    if text[start] == '"':
        i = start + 1
        while i < len(text):
            if text[i] == "\\":
                i += 2
                continue
            if text[i] == '"':
                return text[start:i + 1], i + 1
            i += 1
        return text[start:], len(text)

    depth = 0
    in_string = False
    i = start
    while i < len(text):
        ch = text[i]
        if ch == "\n" and depth == 0:
            break
        if in_string:
            if ch == "\\":
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif depth == 0 and (ch == "#" or text.startswith("//", i)):
            break
        elif ch in "[{(":
            depth += 1
        elif ch in "]})":
            if depth == 0:
                break
            depth -= 1
        i += 1
    return text[start:i].strip(), i


def _bracket_delta(line: str) -> int:
    return sum(line.count(c) for c in "[{(") - sum(line.count(c) for c in "]})")


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _top_level_assignments(body: str) -> List[Tuple[str, str]]:
    """``name = value`` pairs at nesting depth zero of a block body."""
    pairs: List[Tuple[str, str]] = []
    depth = 0
    pos = 0
    while pos < len(body):
        line_end = body.find("\n", pos)
        if line_end < 0:
            line_end = len(body)
        line = body[pos:line_end]

        match = _ASSIGNMENT_RE.match(line) if depth == 0 else None
        if match:
            value, value_end = _capture_expression(body, pos + match.end())
            pairs.append((match.group(1), value))
            next_line = body.find("\n", value_end)
            pos = len(body) if next_line < 0 else next_line + 1
            continue

        depth = max(depth + _bracket_delta(line), 0)
        pos = line_end + 1
    return pairs


def get_attribute(block: str, name: str) -> Optional[str]:
    """Top-level scalar attribute of a block, surrounding quotes stripped."""
    for key, value in _top_level_assignments(_block_body(block).strip()):
        if key == name:
            return _strip_quotes(value)
    return None


def parse_depends_on(block: str) -> List[str]:
    match = DEPENDS_ON_RE.search(block)
    if not match:
        return []
    return _dedupe(DOTTED_TOKEN_RE.findall(match.group(1)))


def extract_references(block: str) -> List[str]:
    """Every ``var.``, ``local.``, ``module.``, ``data.`` and ``type.name`` token."""
    found: List[str] = []
    found.extend(f"var.{m}" for m in VAR_REF_RE.findall(block))
    found.extend(f"local.{m}" for m in LOCAL_REF_RE.findall(block))
    found.extend(f"module.{m}" for m in MODULE_REF_RE.findall(block))
    found.extend(f"data.{t}.{n}" for t, n in DATA_REF_RE.findall(block))
    found.extend(f"{t}.{n}" for t, n in RESOURCE_REF_RE.findall(block))
    return _dedupe(found)


def parse_module_arguments(block: str) -> Dict[str, str]:
    return {
        key: value
        for key, value in _top_level_assignments(_block_body(block).strip())
        if key not in MODULE_META_ARGUMENTS
    }


def parse_locals(block: str) -> Dict[str, str]:
    return dict(_top_level_assignments(_block_body(block).strip()))


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def resource_provider(resource_type: str, block: str) -> str:
    """Explicit ``provider = aws.west`` wins, otherwise the type prefix (``aws``)."""
    explicit = get_attribute(block, "provider")
    if explicit:
        return explicit
    return resource_type.split("_", 1)[0]


# ===================================================================
# Parser
# ===================================================================

class HclParser:
    """Extract resources, modules, variables, outputs, providers and locals."""

    def parse_file(self, file_path: Path, display_path: Optional[str] = None) -> InfraParseResult:
        name = display_path or str(file_path)
        try:
            text = file_path.read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            logger.warning("Could not read %s: %s", file_path, exc)
            return InfraParseResult.failed(name, f"unreadable file: {exc}")
        return self.parse_text(text, name)

    def parse_text(self, text: str, file_path: str) -> InfraParseResult:
        result = InfraParseResult(file=file_path)
        lines = source_lines(text)
        i = 0
        while i < len(lines):
            matched = self._match_block(lines[i])
            if matched is None:
                i += 1
                continue
            kind, match = matched
            block, end = extract_block(lines, i)
            self._add_block(result, kind, match.groups(), block, file_path, i + 1)
            i = end + 1
        return result

    def parse_with_symbols(self, text: str, file_path: str, symbol_names: Iterable[Tuple[str, int]]) -> InfraParseResult:
        """Hybrid path: block boundaries come from a language server.

        *symbol_names* are ``(name, line)`` pairs such as
        ``("resource.aws_instance.web", 12)`` or ``("locals", 3)``; each one
        re-runs the textual block extraction anchored at its line.
        """
        result = InfraParseResult(file=file_path)
        lines = source_lines(text)
        for name, line in symbol_names:
            index = line - 1
            if not 0 <= index < len(lines):
                result.errors.append(f"symbol {name} points outside the file (line {line})")
                continue
            matched = self._match_block(lines[index])
            if matched is None:
                logger.debug("%s:%d: no block opens at symbol %s", file_path, line, name)
                continue
            kind, match = matched
            block, _ = extract_block(lines, index)
            self._add_block(result, kind, match.groups(), block, file_path, line)
        return result

    @staticmethod
    def _match_block(line: str) -> Optional[Tuple[str, "re.Match[str]"]]:
        for kind, pattern in BLOCK_PATTERNS:
            match = pattern.match(line)
            if match:
                return kind, match
        return None

    def _add_block(
        self,
        result: InfraParseResult,
        kind: str,
        labels: Tuple[str, ...],
        block: str,
        file_path: str,
        line: int,
    ) -> None:
        if brace_delta(block) != 0:
            result.errors.append(f"line {line}: unterminated {kind} block")

        if kind == "resource":
            rtype, rname = labels
            result.resources.append(Resource(
                type=rtype,
                name=rname,
                provider=resource_provider(rtype, block),
                file=file_path,
                line=line,
                dependencies=parse_depends_on(block),
                references=self._references_without_self(block, f"{rtype}.{rname}"),
            ))
        elif kind == "data":
            dtype, dname = labels
            result.data_sources.append(DataSource(
                type=dtype,
                name=dname,
                file=file_path,
                line=line,
                references=self._references_without_self(block, f"data.{dtype}.{dname}"),
            ))
        elif kind == "module":
            (mname,) = labels
            result.modules.append(Module(
                name=mname,
                source=get_attribute(block, "source") or "",
                file=file_path,
                line=line,
                variables=parse_module_arguments(block),
                references=extract_references(block),
            ))
        elif kind == "variable":
            (vname,) = labels
            result.variables.append(Variable(
                name=vname,
                file=file_path,
                line=line,
                type=get_attribute(block, "type"),
                default=get_attribute(block, "default"),
                description=get_attribute(block, "description"),
            ))
        elif kind == "output":
            (oname,) = labels
            result.outputs.append(Output(
                name=oname,
                value=get_attribute(block, "value") or "",
                file=file_path,
                line=line,
                description=get_attribute(block, "description"),
                references=extract_references(block),
            ))
        elif kind == "provider":
            (pname,) = labels
            result.providers.append(Provider(
                name=pname,
                file=file_path,
                line=line,
                alias=get_attribute(block, "alias"),
                region=get_attribute(block, "region"),
            ))
        elif kind == "locals":
            for lname, value in parse_locals(block).items():
                result.locals.append(Local(
                    name=lname,
                    value=value,
                    file=file_path,
                    line=line,
                    references=extract_references(value),
                ))

    @staticmethod
    def _references_without_self(block: str, own_id: str) -> List[str]:
        # The opening line never yields a reference (labels are quoted),
        # but ``self.``-style lookups of the block's own attributes can.
        return [ref for ref in extract_references(block) if ref != own_id]
