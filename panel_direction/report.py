"""Console rendering and CSV export for dataset, training and accuracy results."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd
from rich.console import Console
from rich.table import Table

from . import config
from .evaluate import EvaluationResult
from .model import EpochMetrics

console = Console()


def format_ratio(value: Optional[float]) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return "--"
    return f"{value:.2%}"


def render_dataset_summary(summary: Dict[str, object]) -> None:
    symbols = summary.get("symbols") or []
    console.print(
        f"Loaded [bold]{summary.get('n_train', 0)}[/bold] train / [bold]{summary.get('n_test', 0)}[/bold] test windows "
        f"for {len(symbols)} symbols | Window: {summary.get('lookback')}d -> {summary.get('horizon')}d"
    )
    dropped = int(summary.get("dropped_windows") or 0)
    if dropped:
        console.print(
            f"[yellow]{dropped} of {summary.get('candidate_windows')} candidate windows dropped "
            f"because of unresolved gaps[/yellow]"
        )


def render_training_history(history: Iterable[EpochMetrics], limit: int = 10) -> None:
    rows = list(history)
    if not rows:
        console.print("No training epochs to display.")
        return

    table = Table(title="Training History", show_lines=False)
    table.add_column("Epoch", justify="right")
    table.add_column("Loss", justify="right")
    table.add_column("Accuracy", justify="right")
    table.add_column("Val Loss", justify="right")
    table.add_column("Val Accuracy", justify="right")
    for metrics in rows[-limit:]:
        table.add_row(
            str(metrics.epoch),
            f"{metrics.loss:.4f}",
            format_ratio(metrics.accuracy),
            f"{metrics.val_loss:.4f}" if metrics.val_loss is not None else "--",
            format_ratio(metrics.val_accuracy),
        )
    console.print(table)


def render_accuracy(result: EvaluationResult) -> None:
    if result.aborted:
        console.print(f"[bold red]Evaluation aborted[/bold red] after {result.rows_processed} rows; no metrics reported.")
        return

    table = Table(title="Per-symbol accuracy (best -> worst)", show_lines=False)
    table.add_column("Rank", justify="right")
    table.add_column("Symbol", style="bold")
    table.add_column("Accuracy", justify="right")
    for rank, (symbol, accuracy) in enumerate(result.ranked_symbols(), start=1):
        color = "green" if accuracy > 0.5 else "red"
        table.add_row(str(rank), symbol, f"[{color}]{accuracy:.2%}[/{color}]")
    console.print(table)

    days = ", ".join(f"D+{idx + 1}: {format_ratio(acc)}" for idx, acc in enumerate(result.day_accuracy or []))
    console.print(
        f"Horizon accuracy -> {days} | Overall: {format_ratio(result.overall_accuracy())} "
        f"over {result.rows_processed} windows"
    )


def render_timeline(timeline: pd.DataFrame, limit: int = 10) -> None:
    if timeline is None or timeline.empty:
        console.print("No timeline data to display.")
        return

    table = Table(title="Recent correctness (share of horizon days right)", show_lines=False)
    table.add_column("Date", justify="left")
    for symbol in timeline.columns:
        table.add_column(str(symbol), justify="right")
    for idx, row in timeline.tail(limit).iterrows():
        label = idx.strftime("%Y-%m-%d") if isinstance(idx, pd.Timestamp) else str(idx)
        cells = []
        for value in row:
            color = "green" if value > 0.5 else "red"
            cells.append(f"[{color}]{value:.2f}[/{color}]")
        table.add_row(label, *cells)
    console.print(table)


def export_accuracy_csv(result: EvaluationResult, name: str) -> Path:
    """Write per-symbol accuracy, and the timeline when collected, under reports/."""
    if not result.completed:
        raise ValueError("Only completed evaluations can be exported")
    config.REPORT_DIR.mkdir(parents=True, exist_ok=True)
    path = config.REPORT_DIR / f"{name}_accuracy.csv"
    frame = pd.DataFrame(result.ranked_symbols(), columns=["symbol", "accuracy"])
    frame.to_csv(path, index=False)
    if result.timeline is not None:
        result.timeline.to_csv(config.REPORT_DIR / f"{name}_timeline.csv", index_label="date")
    return path


def default_export_name(model_name: str) -> str:
    return f"{model_name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
