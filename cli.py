import asyncio
import json
import mimetypes
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from medgraph.core.config import settings
from medgraph.core.logging import configure_logging
from medgraph.models.graph import Fragment, KnowledgeGraph
from medgraph.models.patient import PatientCreate
from medgraph.services.ai_service import AIService
from medgraph.services.extraction_service import ExtractionService
from medgraph.services.graph_merge import coerce_fragment, fold_fragments
from medgraph.services.layout import layout_graph
from medgraph.services.patient_service import generate_pid

cli_app = typer.Typer()
console = Console()


def _print_graph(graph: KnowledgeGraph):
    graph_json = json.dumps(graph.model_dump(mode="json"), indent=2)
    console.print(Syntax(graph_json, "json", theme="solarized-dark"))


def _load_graph(path: Path) -> KnowledgeGraph:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[bold red]Error:[/bold red] could not read {path}: {exc}")
        raise typer.Exit(code=1)
    return coerce_fragment(payload)


@cli_app.command()
def extract(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Medical file to extract."),
    mime_type: str = typer.Option(None, "--mime", "-m", help="Override the guessed MIME type."),
):
    """
    Classifies and extracts one file with the live model, then prints the laid-out fragment.
    """
    if not settings.GEMINI_API_KEY:
        console.print("[bold red]Error:[/bold red] GEMINI_API_KEY is not set in your .env file.")
        raise typer.Exit(code=1)

    configure_logging()
    mime_type = mime_type or mimetypes.guess_type(file.name)[0] or "text/plain"
    service = ExtractionService(AIService(api_key=settings.GEMINI_API_KEY))

    console.print(f"[cyan]Extracting {file.name} ({mime_type})...[/cyan]")
    result = asyncio.run(service.extract(file.read_bytes(), mime_type, file.name))

    if not isinstance(result, Fragment):
        retry_hint = " (retryable)" if result.retryable else ""
        console.print(f"[bold red]Rejected[/bold red] [{result.kind}]{retry_hint}: {result.reason}")
        raise typer.Exit(code=2)

    console.print(f"[bold green]{len(result.nodes)} nodes, {len(result.edges)} edges[/bold green]")
    _print_graph(KnowledgeGraph(nodes=result.nodes, edges=result.edges))


@cli_app.command()
def layout(graph_file: Path = typer.Argument(..., exists=True, dir_okay=False)):
    """Re-runs the radial layout over a saved graph and prints node positions."""
    graph = layout_graph(_load_graph(graph_file))

    table = Table(title=f"Layout for {graph_file.name}")
    table.add_column("id")
    table.add_column("label")
    table.add_column("type")
    table.add_column("x", justify="right")
    table.add_column("y", justify="right")
    for node in graph.nodes:
        table.add_row(node.id, node.label, node.type, f"{node.x:.1f}", f"{node.y:.1f}")
    console.print(table)


@cli_app.command()
def merge(
    base: Path = typer.Argument(..., exists=True, dir_okay=False, help="Accumulated graph JSON."),
    fragments: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Fragments, in upload order."),
    output: Path = typer.Option(None, "--output", "-o", help="Write the merged graph here instead of stdout."),
):
    """
    Folds fragment files into a base graph in the order given and lays out the result.
    """
    graph = _load_graph(base)
    before = len(graph.nodes)
    merged = layout_graph(fold_fragments(graph, [_load_graph(path) for path in fragments]))

    console.print(
        f"[cyan]Merged {len(fragments)} fragment(s): "
        f"{before} -> {len(merged.nodes)} nodes, {len(merged.edges)} edges[/cyan]"
    )
    if output:
        output.write_text(json.dumps(merged.model_dump(mode="json"), indent=2), encoding="utf-8")
        console.print(f"[bold green]Wrote {output}[/bold green]")
    else:
        _print_graph(merged)


@cli_app.command()
def pid(name: str, age: str):
    """Prints a sample patient identifier for a name and age."""
    try:
        patient = PatientCreate(name=name, age=age)
    except ValidationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(generate_pid(patient.name, patient.age))


if __name__ == "__main__":
    cli_app()
