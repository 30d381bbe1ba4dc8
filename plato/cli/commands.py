"""CLI commands for plato."""

import json
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console

from plato import __logo__, __version__

app = typer.Typer(
    name="plato",
    help=f"{__logo__} plato - Conversation compaction for terminal assistants",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} plato v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _resolve_settings(preset: str | None):
    """Settings from a preset, or from the config file and environment."""
    from plato.config.loader import load_config
    from plato.config.schema import CompactionSettings

    config = load_config()
    if preset:
        try:
            return CompactionSettings.from_preset(preset), config
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
    return config.compaction, config


def _load(file: Path):
    from plato.context.errors import InputError
    from plato.session.manager import load_transcript

    try:
        return load_transcript(file)
    except OSError as e:
        console.print(f"[red]Error: cannot read {file}: {e}[/red]")
        raise typer.Exit(1)
    except InputError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """plato - Conversation compaction for terminal assistants."""
    pass


# ============================================================================
# Compaction
# ============================================================================


@app.command()
def compact(
    file: Path = typer.Argument(..., help="Transcript file (JSON array or JSONL)"),
    level: str = typer.Option(None, "--level", "-l", help="Compression level: light, moderate, aggressive"),
    retention: float = typer.Option(None, "--retention", "-r", help="Fraction of messages to keep"),
    count: int = typer.Option(None, "--count", "-n", help="Exact number of messages to keep"),
    focus: str = typer.Option(None, "--focus", "-f", help="Focus instructions for relevance scoring"),
    threshold: float = typer.Option(None, "--threshold", "-t", help="Minimum effectiveness score"),
    max_threads: int = typer.Option(None, "--max-threads", help="Cap on preserved threads"),
    preserve: str = typer.Option(
        None, "--preserve", help="Comma-separated rules: error-resolution, code-blocks, technical-discussion"
    ),
    preset: str = typer.Option(None, "--preset", "-p", help="Settings preset (see `plato presets`)"),
    force: bool = typer.Option(False, "--force", help="Accept results below the quality threshold"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply without asking for approval"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the preview, never apply"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the result here instead of FILE"),
    as_json: bool = typer.Option(False, "--json", help="Print preview and metrics as JSON"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Compact a conversation transcript, with preview and approval."""
    from pydantic import ValidationError

    from plato.agent.compactor import Compactor
    from plato.cli.render import render_metrics, render_preview
    from plato.config.schema import CompactionRequest
    from plato.context.errors import FailureKind
    from plato.session.manager import Session, save_transcript

    _configure_logging(verbose)
    settings, config = _resolve_settings(preset)
    messages = _load(file)
    rules = [r.strip() for r in preserve.split(",") if r.strip()] if preserve else None

    try:
        request = CompactionRequest(
            level=level,
            target_retention=retention,
            target_count=count,
            focus=focus,
            quality_threshold=threshold,
            max_threads=max_threads,
            preservation_rules=rules,
            force=force,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid options: {e.errors()[0]['msg']}[/red]")
        raise typer.Exit(1)

    session = Session(key=file.stem, messages=messages)
    compactor = Compactor(settings, max_context_tokens=config.context.max_context_tokens)
    outcome = compactor.compact(session, request, preview=True)

    if not outcome.ok:
        if as_json:
            console.print_json(json.dumps({
                "ok": False,
                "failure": outcome.failure.kind.value,
                "message": outcome.failure.message,
                "metrics": outcome.metrics.to_dict() if outcome.metrics else None,
            }))
        else:
            console.print(f"[yellow]{outcome.failure.message}[/yellow]")
            if outcome.metrics:
                render_metrics(console, outcome.metrics)
            if outcome.failure.kind == FailureKind.quality_below_threshold:
                console.print("[dim]Retry with a lower --threshold or --force[/dim]")
        raise typer.Exit(1)

    preview = outcome.preview
    result = outcome.result
    if as_json:
        console.print_json(json.dumps({
            "ok": True,
            "preview_id": preview.preview_id,
            "level": result.level.value,
            "coherence": result.coherence_score,
            "low_coherence": result.low_coherence,
            "degraded": result.degraded,
            "trimmed": result.trimmed,
            "topics_preserved": list(result.topics_preserved),
            "topics_removed": list(result.topics_removed),
            "metrics": result.metrics.to_dict(),
            "entries": [
                {
                    "index": e.index,
                    "role": e.role.value,
                    "kind": e.kind.value,
                    "reason": e.reason,
                    "importance": round(e.importance, 4),
                    "preview": e.preview,
                }
                for e in preview.entries
            ],
        }))
    else:
        render_preview(console, preview.entries)
        render_metrics(
            console, result.metrics, compactor.metrics.generate_quality_insights(result.metrics)
        )
        if result.low_coherence:
            console.print(f"[yellow]Low coherence ({result.coherence_score:.2f}): "
                          "some threads or topics were dropped[/yellow]")
        if result.topics_removed:
            console.print(f"[dim]Topics dropped: {', '.join(result.topics_removed)}[/dim]")
        if result.degraded:
            console.print("[yellow]Analysis failed; fell back to keeping the most recent messages[/yellow]")

    if dry_run:
        compactor.reject(session, preview.preview_id, "dry run")
        return

    approved = yes or (not as_json and typer.confirm("Apply this compaction?", default=False))
    if not approved:
        compactor.reject(session, preview.preview_id, "declined")
        if not as_json:
            console.print("[yellow]Compaction discarded; transcript unchanged[/yellow]")
        return

    if not compactor.approve(session, preview.preview_id):
        console.print("[red]Error: preview could not be applied[/red]")
        raise typer.Exit(1)

    target = output or file
    save_transcript(target, session.messages)
    if not as_json:
        console.print(
            f"[green]✓[/green] Kept {len(session.messages)} of {len(messages)} messages → {target}"
        )


@app.command()
def analyze(
    file: Path = typer.Argument(..., help="Transcript file (JSON array or JSONL)"),
    preset: str = typer.Option(None, "--preset", "-p", help="Settings preset"),
):
    """Show the threads and dependencies found in a transcript."""
    from plato.cli.render import render_threads
    from plato.context.semantic import SemanticAnalyzer
    from plato.context.threads import ThreadPreservationSystem

    _configure_logging(False)
    settings, _ = _resolve_settings(preset)
    messages = _load(file)

    analyzer = SemanticAnalyzer(settings.analyzer)
    threads = ThreadPreservationSystem(analyzer, settings.threads)
    graph = threads.build_graph(messages)
    render_threads(console, graph.threads, set(graph.edges))

    topics = analyzer.identify_topics(messages)
    if topics:
        console.print(f"Topics: {', '.join(sorted(topics))}")


# ============================================================================
# Settings
# ============================================================================


@app.command()
def settings(
    preset: str = typer.Option(None, "--preset", "-p", help="Show a preset instead of the config"),
):
    """Show effective compaction settings."""
    from plato.cli.render import render_settings

    resolved, _ = _resolve_settings(preset)
    render_settings(console, resolved)


@app.command()
def presets():
    """List settings presets."""
    from plato.cli.render import render_presets

    render_presets(console)


if __name__ == "__main__":
    app()
