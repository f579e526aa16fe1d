"""Tests for file discovery, strategy fallback and the extraction orchestrator."""

from pathlib import Path

import pytest

from structgraph.config_manager import ServerConfig
from structgraph.errors import ExtractionError
from structgraph.extractor import (
    ExtractionStrategy,
    Extractor,
    StrategyChain,
    _reattribute,
    _symbols_from_lsp,
    discover_files,
    expand_languages,
    language_for_path,
    normalize_infra_symbol,
)
from structgraph.graph import build_call_graph, build_dependency_graph, build_import_graph
from structgraph.lsp_client import DocumentSymbol, LspConnectionClosed
from structgraph.models import ParseResult, Reference, StructureIndex, Symbol, source_lines


class _Failing(ExtractionStrategy):
    def __init__(self, name, error):
        self.name = name
        self.error = error

    async def extract(self, path, rel_path, source, language):
        raise self.error


class _Fixed(ExtractionStrategy):
    name = "fixed"

    async def extract(self, path, rel_path, source, language):
        return ParseResult(file=rel_path, language=language, line_count=1)


def _rel(paths, root: Path):
    return [p.relative_to(root).as_posix() for p in paths]


def _index(result):
    index = StructureIndex()
    index.add_result(result)
    return index


class TestDiscovery:
    def test_expand_languages(self):
        assert expand_languages(None) == ["javascript", "typescript", "tsx", "terraform"]
        assert expand_languages(["typescript"]) == ["typescript", "tsx"]
        assert expand_languages(["HCL", "javascript"]) == ["terraform", "javascript"]
        assert expand_languages(["cobol"]) == []

    def test_language_for_path(self):
        assert language_for_path(Path("a/b.jsx")) == "javascript"
        assert language_for_path(Path("a/b.TS")) == "typescript"
        assert language_for_path(Path("a/b.tsx")) == "tsx"
        assert language_for_path(Path("main.tf")) == "terraform"
        assert language_for_path(Path("README.md")) is None

    def test_skips_vendored_directories(self, sample_project_path: Path):
        files = _rel(discover_files(sample_project_path), sample_project_path)

        assert files == [
            "infra/main.tf",
            "src/UserCard.tsx",
            "src/api.js",
            "src/format.js",
            "src/logger.js",
        ]

    def test_language_filter(self, sample_project_path: Path):
        files = _rel(discover_files(sample_project_path, ["typescript"]), sample_project_path)
        assert files == ["src/UserCard.tsx"]


class TestStrategyChain:
    """Ordered fallback between strategies."""

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self):
        chain = StrategyChain([
            _Failing("lsp", LspConnectionClosed("gone")),
            _Failing("other", ExtractionError("a.js", "nope")),
            _Fixed(),
        ])
        result = await chain.extract(Path("a.js"), "a.js", "", "javascript")

        assert result.ok
        assert result.line_count == 1

    @pytest.mark.asyncio
    async def test_all_failures_produce_error_result(self):
        chain = StrategyChain([
            _Failing("lsp", LspConnectionClosed("gone")),
            _Failing("tree-sitter", ExtractionError("a.js", "no grammar")),
        ])
        result = await chain.extract(Path("a.js"), "a.js", "", "javascript")

        assert isinstance(result, ParseResult)
        assert not result.ok
        assert "lsp: gone" in result.errors[0]
        assert "tree-sitter: a.js: no grammar" in result.errors[0]

    @pytest.mark.asyncio
    async def test_infra_failure_result(self):
        chain = StrategyChain([])
        result = await chain.extract(Path("main.tf"), "main.tf", "", "terraform")

        assert result.resources == []
        assert result.errors == ["no extraction strategy available"]

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        chain = StrategyChain([_Failing("broken", RuntimeError("bug")), _Fixed()])
        with pytest.raises(RuntimeError):
            await chain.extract(Path("a.js"), "a.js", "", "javascript")


class TestLspMerging:
    """Combining server symbols with walker references."""

    def test_symbols_from_lsp_keep_walker_metadata(self, parse_js):
        source = "/** Doc. */\nexport function a() {\n  b();\n}\n"
        walked = parse_js(source)
        docs = [DocumentSymbol(name="a", kind=12, line=2, end_line=4)]

        (symbol,) = _symbols_from_lsp(docs, walked, "src/sample.js", source_lines(source))

        assert symbol.id == "src/sample.js:a:2"
        assert symbol.exported is True
        assert symbol.docstring == "Doc."

    def test_methods_are_qualified_by_container(self, parse_js):
        docs = [
            DocumentSymbol(name="Widget", kind=5, line=1, end_line=5, children=[
                DocumentSymbol(name="render", kind=6, line=2, end_line=4, container="Widget"),
            ]),
            DocumentSymbol(name="handler", kind=13, line=6, end_line=6),
            DocumentSymbol(name="CONFIG", kind=14, line=7, end_line=7),
        ]
        source = "class Widget {\n  render() {\n  }\n\n}\nconst handler = () => {};\nconst CONFIG = 1;\n"
        symbols = _symbols_from_lsp(docs, parse_js(source), "src/sample.js", source_lines(source))

        assert [(s.name, s.kind) for s in symbols] == [
            ("Widget", "class"),
            ("Widget.render", "method"),
            ("handler", "function"),
        ]

    def test_class_field_handlers_keep_their_calls(self, parse_js):
        source = "class W {\n  count = 0;\n  onClick = () => {\n    helper();\n  };\n}\nfunction helper() {}\n"
        walked = parse_js(source)
        docs = [
            DocumentSymbol(name="W", kind=5, line=1, end_line=6, children=[
                DocumentSymbol(name="count", kind=7, line=2, end_line=2, container="W"),
                DocumentSymbol(name="onClick", kind=8, line=3, end_line=5, container="W"),
            ]),
            DocumentSymbol(name="helper", kind=12, line=7, end_line=7),
        ]

        symbols = _symbols_from_lsp(docs, walked, "src/sample.js", source_lines(source))
        assert [(s.name, s.kind) for s in symbols] == [
            ("W", "class"),
            ("W.onClick", "method"),
            ("helper", "function"),
        ]

        merged = ParseResult(
            file="src/sample.js",
            language="javascript",
            symbols=symbols,
            references=_reattribute(walked.references, symbols),
        )
        assert build_call_graph(_index(merged)) == build_call_graph(_index(walked)) == {"W.onClick": ["helper"]}

    def test_reattribute_picks_innermost_function(self):
        outer = Symbol(id="f:outer:1", name="outer", kind="function", file="f", line=1, end_line=10)
        inner = Symbol(id="f:inner:3", name="inner", kind="function", file="f", line=3, end_line=5)
        klass = Symbol(id="f:K:1", name="K", kind="class", file="f", line=1, end_line=20)
        refs = [
            Reference(symbol_id="x", file="f", line=4),
            Reference(symbol_id="y", file="f", line=8),
            Reference(symbol_id="z", file="f", line=15),
        ]

        callers = [r.caller for r in _reattribute(refs, [outer, inner, klass])]
        assert callers == ["f:inner:3", "f:outer:1", None]

    def test_normalize_infra_symbol(self):
        assert normalize_infra_symbol('resource "aws_instance" "web"') == "resource.aws_instance.web"
        assert normalize_infra_symbol('variable "region"') == "variable.region"
        assert normalize_infra_symbol("locals") == "locals"


class TestExtractor:
    """End-to-end extraction of the sample project."""

    def test_extract_without_language_servers(self, sample_project_path: Path, no_servers):
        result = Extractor(sample_project_path, server_configs=no_servers).run()
        index, infra = result.index, result.infra

        assert sorted(index.files) == ["src/UserCard.tsx", "src/api.js", "src/format.js", "src/logger.js"]
        assert index.validate() == []
        assert not any(path.startswith("node_modules") for path in index.files)
        assert len(index.symbols) == 11

        names = {s.name for s in index.symbols.values()}
        assert {"fetchUser", "UserStore.load", "UserCard", "UserCardProps", "Status"} <= names

        graph = build_call_graph(index)
        assert graph["fetchUser"] == ["request", "parseUser"]
        assert graph["parseUser"] == ["formatDate"]
        assert set(graph["UserStore.load"]) == {"fetchUser", "UserStore.remember"}
        assert graph["UserCard"] == ["UserStore.load"]

        assert build_import_graph(index)["src/api.js"] == ["./format", "./logger", "http"]

        assert sorted(infra.resources) == ["aws_instance.web", "aws_subnet.main", "aws_vpc.main"]
        assert build_dependency_graph(infra)["aws_instance.web"] == [
            "aws_subnet.main", "aws_vpc.main", "data.aws_ami.ubuntu",
        ]

    def test_use_lsp_false_ignores_configured_servers(self, sample_project_path: Path, fake_server_configs):
        extractor = Extractor(sample_project_path, server_configs=fake_server_configs, use_lsp=False)
        result = extractor.run()
        assert len(result.index.symbols) == 11

    def test_missing_server_falls_back(self, sample_project_path: Path):
        configs = {"javascript": ServerConfig(language="javascript", command="structgraph-no-such-server")}
        result = Extractor(sample_project_path, languages=["javascript"], server_configs=configs).run()

        assert sorted(result.index.files) == ["src/api.js", "src/format.js", "src/logger.js"]
        assert all(not info.errors for info in result.index.files.values())

    def test_disabled_server_is_not_started(self, sample_project_path: Path, fake_server_command):
        command, *args = fake_server_command
        configs = {"javascript": ServerConfig(language="javascript", command=command, args=args, enabled=False)}
        extractor = Extractor(sample_project_path, languages=["javascript"], server_configs=configs)

        result = extractor.run()
        assert len(result.index.files) == 3

    def test_extract_with_language_server(self, sample_project_path: Path, fake_server_configs, no_servers):
        with_lsp = Extractor(sample_project_path, languages=["javascript"], server_configs=fake_server_configs).run()
        without = Extractor(sample_project_path, languages=["javascript"], server_configs=no_servers).run()

        fetch = next(s for s in with_lsp.index.symbols.values() if s.name == "fetchUser")
        assert fetch.id == "src/api.js:fetchUser:9"
        assert fetch.end_line == 13
        assert fetch.exported is True
        assert fetch.docstring == "Fetch a user record and log the outcome."

        assert build_call_graph(with_lsp.index) == build_call_graph(without.index)
        assert sorted(with_lsp.index.symbols) == sorted(without.index.symbols)

    def test_terraform_with_language_server(self, sample_project_path: Path, fake_server_configs, no_servers):
        with_lsp = Extractor(sample_project_path, languages=["terraform"], server_configs=fake_server_configs).run()
        without = Extractor(sample_project_path, languages=["terraform"], server_configs=no_servers).run()

        assert with_lsp.infra.to_dict() == without.infra.to_dict()
        assert with_lsp.infra.locals["instance_type"].value == '"t3.micro"'

    def test_empty_server_reply_falls_back(self, sample_project_path: Path, fake_server_configs, monkeypatch):
        monkeypatch.setenv("FAKE_LSP_MODE", "empty")
        result = Extractor(sample_project_path, languages=["typescript"], server_configs=fake_server_configs).run()

        names = {s.name for s in result.index.symbols.values()}
        assert names == {"UserCardProps", "Status", "UserStore", "UserStore.load", "UserStore.remember", "UserCard"}

    def test_malformed_server_reply_falls_back(
        self, sample_project_path: Path, fake_server_configs, no_servers, monkeypatch
    ):
        monkeypatch.setenv("FAKE_LSP_MODE", "bad-symbols")
        with_lsp = Extractor(sample_project_path, languages=["javascript"], server_configs=fake_server_configs).run()
        without = Extractor(sample_project_path, languages=["javascript"], server_configs=no_servers).run()

        assert sorted(with_lsp.index.symbols) == sorted(without.index.symbols)
        assert build_call_graph(with_lsp.index) == build_call_graph(without.index)
        assert all(not info.errors for info in with_lsp.index.files.values())

    def test_server_crash_falls_back_for_every_file(self, sample_project_path: Path, fake_server_configs, monkeypatch):
        monkeypatch.setenv("FAKE_LSP_MODE", "exit-on-symbols")
        result = Extractor(sample_project_path, languages=["javascript"], server_configs=fake_server_configs).run()

        assert len(result.index.symbols) == 5
        assert all(not info.errors for info in result.index.files.values())

    @pytest.mark.asyncio
    async def test_unreadable_file(self, temp_dir: Path, no_servers):
        extractor = Extractor(temp_dir, server_configs=no_servers)

        code = await extractor.extract_file(extractor.root / "gone.js", "javascript")
        infra = await extractor.extract_file(extractor.root / "gone.tf", "terraform")

        assert code.file == "gone.js"
        assert code.errors[0].startswith("unreadable file")
        assert infra.errors[0].startswith("unreadable file")

    def test_empty_tree(self, temp_dir: Path, no_servers):
        result = Extractor(temp_dir, server_configs=no_servers).run()
        assert result.index.files == {}
        assert result.infra.is_empty()

    def test_repeated_runs_are_identical(self, sample_project_path: Path, no_servers):
        first = Extractor(sample_project_path, server_configs=no_servers).run()
        second = Extractor(sample_project_path, server_configs=no_servers).run()

        assert sorted(first.index.symbols) == sorted(second.index.symbols)
        assert build_call_graph(first.index) == build_call_graph(second.index)
        assert build_dependency_graph(first.infra) == build_dependency_graph(second.infra)
