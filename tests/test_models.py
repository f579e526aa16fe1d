"""Tests for the index data models."""

import json

from structgraph.models import (
    AnalysisGaps,
    Import,
    InfraIndex,
    InfraParseResult,
    ParseResult,
    Reference,
    Resource,
    StructureIndex,
    Symbol,
    Variable,
    make_symbol_id,
    source_lines,
)


def _symbol(name="a", line=1, file="src/a.js"):
    return Symbol(
        id=make_symbol_id(file, name, line),
        name=name,
        kind="function",
        file=file,
        line=line,
        end_line=line,
    )


def test_symbol_ids_embed_file_and_line():
    assert make_symbol_id("src/a.js", "run", 3) == "src/a.js:run:3"
    assert make_symbol_id("src/a.js", "run", 3) != make_symbol_id("src/b.js", "run", 3)


def test_short_name():
    assert _symbol("Widget.render").short_name == "render"
    assert _symbol("render").short_name == "render"


def test_wildcard_reference():
    assert Reference(symbol_id="*.save", file="a.js", line=1).is_wildcard
    assert not Reference(symbol_id="obj.save", file="a.js", line=1).is_wildcard


def test_add_result_merges_every_part():
    index = StructureIndex(root="/repo")
    index.add_result(ParseResult(
        file="src/a.js",
        language="javascript",
        symbols=[_symbol("a")],
        references=[Reference(symbol_id="b", file="src/a.js", line=1, caller="src/a.js:a:1")],
        imports=[Import(source="./b", line=1), Import(source="react", line=2)],
        line_count=4,
    ))
    index.add_result(ParseResult(file="src/c.js", language="javascript", imports=[Import(source="./b")]))

    assert list(index.symbols) == ["src/a.js:a:1"]
    assert index.files["src/a.js"].symbols == ["src/a.js:a:1"]
    assert index.files["src/a.js"].line_count == 4
    assert [r.caller for r in index.references["b"]] == ["src/a.js:a:1"]
    assert index.modules["./b"].imported_by == ["src/a.js", "src/c.js"]
    assert index.modules["./b"].is_relative
    assert not index.modules["react"].is_relative
    assert index.validate() == []


def test_validate_reports_dangling_symbol():
    index = StructureIndex()
    index.add_result(ParseResult(file="src/a.js", language="javascript", symbols=[_symbol("a")]))
    del index.symbols["src/a.js:a:1"]

    assert index.validate() == ["src/a.js: symbol src/a.js:a:1 missing from index"]


def test_validate_reports_unknown_kinds():
    odd = _symbol("a")
    odd.kind = "variable"
    index = StructureIndex()
    index.add_result(ParseResult(
        file="src/a.js",
        language="javascript",
        symbols=[odd],
        references=[Reference(symbol_id="b", file="src/a.js", line=1, kind="import")],
    ))

    assert index.validate() == [
        "src/a.js: symbol src/a.js:a:1 has unknown kind 'variable'",
        "src/a.js:1: reference b has unknown kind 'import'",
    ]


def test_source_lines_split_on_line_feeds_only():
    assert source_lines("a\u2028b\x0cc\nd\r\ne\n") == ["a\u2028b\x0cc", "d", "e"]
    assert source_lines("") == []
    assert source_lines("x") == ["x"]


def test_index_serializes_to_json():
    index = StructureIndex(root="/repo")
    index.add_result(ParseResult(file="src/a.js", language="javascript", symbols=[_symbol("a")]))

    data = json.loads(json.dumps(index.to_dict()))
    assert data["files"]["src/a.js"]["symbols"] == ["src/a.js:a:1"]
    assert "docstring" not in data["symbols"]["src/a.js:a:1"]


def test_failed_results():
    code = ParseResult.failed("a.js", "javascript", "boom")
    infra = InfraParseResult.failed("main.tf", "boom")

    assert not code.ok and code.errors == ["boom"]
    assert not infra.ok and infra.resources == []


def test_infra_index_merge():
    infra = InfraIndex()
    assert infra.is_empty()

    infra.add_result(InfraParseResult(
        file="main.tf",
        resources=[Resource(type="aws_vpc", name="main", provider="aws", file="main.tf", line=1)],
        variables=[Variable(name="region", file="main.tf", line=5)],
        errors=["line 9: unterminated resource block"],
    ))

    assert not infra.is_empty()
    assert infra.resource_ids() == ["aws_vpc.main"]
    assert infra.errors == {"main.tf": ["line 9: unterminated resource block"]}
    assert infra.to_dict()["resources"]["aws_vpc.main"]["id"] == "aws_vpc.main"


def test_analysis_gaps_defaults():
    gaps = AnalysisGaps(unused_imports=["src/a.js:react"])
    assert gaps.uncalled_exports == []
    assert gaps.unused_imports == ["src/a.js:react"]
