"""Command line interface for semindex."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from semindex.config import AppConfig
from semindex.errors import ConfigurationError, IndexNotBuilt, ProviderError, StorageError
from semindex.index.service import SemanticIndex
from semindex.ingestion.corpus import load_corpus

console = Console()
app = typer.Typer(help="semindex - incremental semantic index over a corpus of text files")
MODEL_HELP = "Embedding model name (defaults to the one the index was built with)"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).isoformat(timespec="seconds")


def _open_index(config: AppConfig) -> SemanticIndex:
    try:
        return SemanticIndex(config, base_dir=Path.cwd())
    except (ConfigurationError, StorageError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc


@app.command()
def index(
    inputs: List[Path] = typer.Argument(
        ..., help="Files or directories to index.", exists=True, resolve_path=True
    ),
    index_dir: Path = typer.Option(None, "--index-dir", help="Index directory"),
    model: Optional[str] = typer.Option(None, help=MODEL_HELP),
    batch_size: int = typer.Option(AppConfig().batch_size, help="Documents embedded per batch"),
    max_chars: int = typer.Option(
        AppConfig().max_document_chars, help="Skip documents longer than this"
    ),
    timeout: float = typer.Option(AppConfig().embed_timeout, help="Seconds allowed per embedding call"),
    retries: int = typer.Option(AppConfig().max_retries, help="Retries for failed embedding calls"),
    partial: bool = typer.Option(
        False, "--partial", help="Keep indexed documents that are not among INPUTS"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Bring the index up to date with the documents under INPUTS."""
    _setup_logging(verbose)
    config = AppConfig(
        index_dir=index_dir,
        model_name=model,
        batch_size=batch_size,
        max_document_chars=max_chars,
        embed_timeout=timeout,
        max_retries=retries,
    )

    corpus = load_corpus(inputs)
    if not corpus:
        console.print("[yellow]No documents found.[/yellow]")
        if partial:
            return
        # A full run would otherwise remove every indexed document.
        console.print("Refusing to remove every document from the index.")
        raise typer.Exit(code=1)

    semantic_index = _open_index(config)
    console.print(f"Indexing into [bold]{semantic_index.index_dir}[/bold]...")
    try:
        report = semantic_index.reconcile(corpus, full=not partial)
    except (ConfigurationError, StorageError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    finally:
        semantic_index.close()

    console.print(
        f"Inserted: {report.inserted}, updated: {report.updated}, "
        f"unchanged: {report.unchanged}, removed: {report.removed}, "
        f"oversized: {report.oversized}, failed: {report.failed}"
    )
    if report.failures:
        table = Table(show_header=True, header_style="bold red")
        table.add_column("Document")
        table.add_column("Error")
        for doc_id, reason in report.failures.items():
            table.add_row(doc_id, reason)
        console.print(table)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    index_dir: Path = typer.Option(None, "--index-dir", help="Index directory"),
    model: Optional[str] = typer.Option(None, help=MODEL_HELP),
    top_k: int = typer.Option(5, help="Number of results to display"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic search."""
    _setup_logging(verbose)
    config = AppConfig(index_dir=index_dir, model_name=model)
    resolved = config.resolve_index_dir(Path.cwd())
    if not resolved.exists():
        console.print(f"[yellow]Index not found at {resolved}. Run 'semindex index' first.[/yellow]")
        raise typer.Exit(code=1)

    semantic_index = _open_index(config)
    try:
        results = semantic_index.search(query, top_k=top_k)
    except IndexNotBuilt as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1) from exc
    except (ConfigurationError, ProviderError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    finally:
        semantic_index.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Distance")
    table.add_column("Document")
    table.add_column("Preview")

    for result in results:
        snippet = result.preview.replace("\n", " ")
        table.add_row(f"{result.score:.4f}", str(result.path), snippet[:180])

    console.print(table)


@app.command()
def stats(
    index_dir: Path = typer.Option(None, "--index-dir", help="Index directory"),
) -> None:
    """Show what the index currently holds."""
    config = AppConfig(index_dir=index_dir)
    resolved = config.resolve_index_dir(Path.cwd())
    if not resolved.exists():
        console.print("[yellow]Index not found, nothing to report.[/yellow]")
        return

    semantic_index = _open_index(config)
    try:
        view = semantic_index.stats()
    finally:
        semantic_index.close()

    console.print(f"Index directory: {view.index_dir}")
    console.print(f"Documents: {view.document_count}")
    console.print(f"Vectors: {view.vector_count}")
    console.print(f"Dimension: {view.dimension if view.dimension is not None else 'unset'}")
    console.print(f"Metric: {view.metric}")
    console.print(f"Model: {view.model_name or 'unset'}")
    console.print(f"Last updated: {_format_time(view.last_updated)}")


@app.command()
def verify(
    index_dir: Path = typer.Option(None, "--index-dir", help="Index directory"),
) -> None:
    """Check that every document record has exactly one vector and vice versa."""
    config = AppConfig(index_dir=index_dir)
    resolved = config.resolve_index_dir(Path.cwd())
    if not resolved.exists():
        console.print("[yellow]Index not found, nothing to verify.[/yellow]")
        return

    semantic_index = _open_index(config)
    try:
        drift = semantic_index.verify()
    finally:
        semantic_index.close()

    if drift.clean:
        console.print("[green]Index is consistent.[/green]")
        return
    for doc_id in drift.missing_vectors:
        console.print(f"[red]No vector for[/red] {doc_id}")
    for key in drift.orphan_vectors:
        console.print(f"[red]Orphan vector[/red] {key}")
    console.print("Run 'semindex index' again to repair.")
    raise typer.Exit(code=1)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    index_dir: Optional[Path] = typer.Option(None, "--index-dir", help="Index directory"),
    model: Optional[str] = typer.Option(None, help=MODEL_HELP),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    from semindex.web.app import app as web_app

    config = AppConfig(index_dir=index_dir, model_name=model)
    resolved = config.resolve_index_dir(Path.cwd())
    if not resolved.exists():
        console.print("[yellow]Warning: index not found, searches will fail until it is built.[/yellow]")

    web_app.state.index_dir = resolved
    web_app.state.model_name = config.model_name
    console.print(f"Starting HTTP API on http://{host}:{port} (index: {resolved})")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover
    app()
