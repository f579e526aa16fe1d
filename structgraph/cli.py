"""Typer-based CLI for structgraph."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, config
from .blast_radius import analyze_blast_radius, top_blast_radius
from .extractor import ExtractionResult, Extractor
from .graph import (
    build_call_graph,
    build_dependency_graph,
    build_import_graph,
    compute_variable_usage,
    unresolved_references,
)

console = Console()

app = typer.Typer(
    help="Structural map of a source tree: symbols, call graphs and infrastructure blast radius.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_SEVERITY_COLORS = {"high": "red", "medium": "yellow", "low": "green"}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"structgraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log extraction details."),
):
    """structgraph: call/import graphs and infrastructure dependency analysis."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _extract(path: Path, languages: Optional[List[str]], no_lsp: bool) -> ExtractionResult:
    return Extractor(path, languages=languages, use_lsp=not no_lsp).run()


@app.command("index")
def index_command(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Repository root."),
    language: Optional[List[str]] = typer.Option(None, "--language", "-l", help="Language to extract (repeatable)."),
    no_lsp: bool = typer.Option(False, "--no-lsp", help="Never start language servers."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the index as JSON."),
):
    """Extract symbols, references and imports into a structure index."""
    result = _extract(path, language, no_lsp)
    index, infra = result.index, result.infra
    compute_variable_usage(infra)

    failed = sum(1 for info in index.files.values() if info.errors) + len(infra.errors)
    typer.echo(f"Indexed '{path.resolve()}'.")
    typer.echo(
        f"Files: {len(index.files)} | Symbols: {len(index.symbols)} | "
        f"References: {sum(len(r) for r in index.references.values())} | "
        f"Resources: {len(infra.resources)} | Files with errors: {failed}"
    )

    if output is not None:
        payload = {
            "index": index.to_dict(),
            "call_graph": build_call_graph(index),
            "import_graph": build_import_graph(index),
            "unresolved": [r.to_dict() for r in unresolved_references(index)],
            "infrastructure": infra.to_dict(),
            "dependency_graph": build_dependency_graph(infra),
        }
        output.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        typer.echo(f"Wrote {output}")


@app.command("calls")
def calls_command(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Repository root."),
    language: Optional[List[str]] = typer.Option(None, "--language", "-l", help="Language to extract (repeatable)."),
    no_lsp: bool = typer.Option(False, "--no-lsp", help="Never start language servers."),
):
    """Print the call graph."""
    result = _extract(path, language, no_lsp)
    graph = build_call_graph(result.index)
    if not graph:
        typer.echo("No calls found.")
        return
    for caller in sorted(graph):
        typer.echo(f"{caller} -> {', '.join(graph[caller])}")


@app.command("infra")
def infra_command(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Infrastructure root."),
    no_lsp: bool = typer.Option(False, "--no-lsp", help="Never start terraform-ls."),
    limit: int = typer.Option(config.DISPLAY_LIMIT, "--limit", "-n", help="Blast-radius rows to show."),
):
    """Show the resource dependency graph and blast radius."""
    result = _extract(path, ["terraform"], no_lsp)
    infra = result.infra
    if infra.is_empty():
        typer.echo("No infrastructure blocks found.")
        return

    compute_variable_usage(infra)
    graph = build_dependency_graph(infra)

    deps = Table(title="Dependencies")
    deps.add_column("Node", style="cyan")
    deps.add_column("Depends on")
    for node in sorted(graph):
        deps.add_row(node, ", ".join(graph[node]))
    console.print(deps)

    radius = Table(title="Blast radius")
    radius.add_column("Target", style="cyan")
    radius.add_column("Severity")
    radius.add_column("Affected", justify="right")
    radius.add_column("Resources")
    for entry in top_blast_radius(analyze_blast_radius(graph), limit):
        color = _SEVERITY_COLORS[entry.severity]
        radius.add_row(
            entry.target,
            f"[{color}]{entry.severity}[/{color}]",
            str(len(entry.affected_resources)),
            ", ".join(entry.affected_resources),
        )
    console.print(radius)

    unused = [name for name, var in sorted(infra.variables.items()) if not var.used_by]
    if unused:
        console.print(f"[yellow]Unused variables:[/yellow] {', '.join(unused)}")


if __name__ == "__main__":
    app()
