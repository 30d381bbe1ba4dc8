"""Rich rendering for compaction previews, metrics and settings."""

from typing import Sequence

from rich.console import Console
from rich.table import Table

from plato.config.schema import PRESETS, CompactionSettings
from plato.context.metrics import QualityInsights
from plato.context.models import DiffKind, PreviewDiffEntry, QualityMetrics, Thread

KIND_STYLES = {
    DiffKind.kept: "[green]kept[/green]",
    DiffKind.removed: "[red]removed[/red]",
    DiffKind.summarized: "[yellow]summarized[/yellow]",
}


def render_preview(console: Console, entries: Sequence[PreviewDiffEntry]) -> None:
    table = Table(title="Compaction Preview")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Role", style="cyan")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Reason", style="yellow")
    table.add_column("Content")

    for entry in entries:
        table.add_row(
            str(entry.index),
            entry.role.value,
            KIND_STYLES[entry.kind],
            f"{entry.importance:.2f}",
            entry.reason,
            entry.preview,
        )
    console.print(table)


def render_metrics(
    console: Console, metrics: QualityMetrics, insights: QualityInsights | None = None
) -> None:
    table = Table(title="Quality Metrics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Messages", f"{metrics.original_count} → {metrics.compacted_count}")
    table.add_row("Compression ratio", f"{metrics.compression_ratio:.0%}")
    table.add_row("Token reduction (est.)", f"{metrics.token_reduction:.0%}")
    table.add_row("Information preserved", f"{metrics.information_preservation:.0%}")
    table.add_row("Effectiveness", f"{metrics.effectiveness_score:.2f}")
    table.add_row("Processing time", f"{metrics.processing_time_ms:.0f} ms")
    console.print(table)

    if insights:
        console.print(f"[bold]{insights.recommendation}[/bold]")
        for suggestion in insights.improvement_suggestions:
            console.print(f"  [dim]• {suggestion}[/dim]")


def render_threads(
    console: Console, threads: Sequence[Thread], edges: set[tuple[int, int]]
) -> None:
    table = Table(title="Conversation Threads")
    table.add_column("Thread", style="cyan", justify="right")
    table.add_column("Messages")
    table.add_column("Topic")
    table.add_column("Importance", justify="right")
    table.add_column("Depends on", style="yellow")

    for thread in threads:
        deps = sorted(b for a, b in edges if a == thread.index)
        table.add_row(
            str(thread.index),
            f"{thread.start}–{thread.end} ({len(thread.message_indices)})",
            ", ".join(thread.keywords) or thread.topic,
            f"{thread.importance:.2f}",
            ", ".join(str(d) for d in deps) or "-",
        )
    console.print(table)


def render_settings(console: Console, settings: CompactionSettings) -> None:
    table = Table(title="Compaction Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Level", settings.level.value)
    table.add_row(
        "Retention",
        ", ".join(f"{lvl.value}={r:.0%}" for lvl, r in settings.level_retention.items()),
    )
    table.add_row("Quality threshold", f"{settings.quality_threshold:.2f}")
    table.add_row("Preview required", "yes" if settings.preview_required else "no")
    table.add_row(
        "Content weights",
        ", ".join(f"{ct.value}={w:g}" for ct, w in settings.content_weights.items()),
    )
    table.add_row(
        "Preservation rules",
        ", ".join(rule.value for rule in settings.preservation_rules) or "-",
    )
    weights = settings.scoring.weights
    table.add_row(
        "Scoring weights",
        f"recency={weights.recency:g}, relevance={weights.relevance:g}, "
        f"interaction={weights.interaction:g}, complexity={weights.complexity:g}",
    )
    table.add_row("Search tolerance", f"{settings.threads.tolerance_ratio:.0%}")
    table.add_row("Search iterations", str(settings.threads.max_iterations))
    table.add_row("Metrics history", str(settings.history_size))
    table.add_row("Auto-compact watermark", f"{settings.auto_compact_watermark:.0%}")
    console.print(table)

    for note in settings.warnings():
        console.print(f"[yellow]Warning: {note}[/yellow]")


def render_presets(console: Console) -> None:
    table = Table(title="Presets")
    table.add_column("Name", style="cyan")
    table.add_column("Level")
    table.add_column("Threshold", justify="right")
    table.add_column("Preview")
    table.add_column("Description")

    for name, preset in PRESETS.items():
        table.add_row(
            name,
            preset["level"],
            f"{preset['quality_threshold']:.2f}",
            "yes" if preset["preview_required"] else "no",
            preset["description"],
        )
    console.print(table)
