"""Command-line interface for the panel direction analyzer."""

from __future__ import annotations

import argparse
import asyncio
import csv
import datetime as dt
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from rich.console import Console

from . import config as config_module
from .config import DEFAULT_MODEL_NAME, load_config
from .core import run_analysis
from .data import DataSufficiencyError, FormatError
from .evaluate import CancellationToken
from .model import EpochMetrics
from .report import (
    default_export_name,
    export_accuracy_csv,
    render_accuracy,
    render_dataset_summary,
    render_timeline,
    render_training_history,
)

console = Console()
logger = logging.getLogger(__name__)

METRICS_LOG_NAME = "metrics_log.csv"
METRICS_LOG_FIELDS = [
    "timestamp",
    "source",
    "model_name",
    "status",
    "n_train",
    "n_test",
    "dropped_windows",
    "overall_accuracy",
    "best_symbol",
    "worst_symbol",
]


def _build_metrics_record(analysis: Dict[str, object]) -> Dict[str, object]:
    meta = analysis.get("meta") or {}
    summary = analysis.get("dataset") or {}
    evaluation = analysis.get("evaluation")
    ranked = evaluation.ranked_symbols() if evaluation is not None else []
    return {
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
        "source": meta.get("source"),
        "model_name": meta.get("model_name"),
        "status": evaluation.status if evaluation is not None else None,
        "n_train": summary.get("n_train"),
        "n_test": summary.get("n_test"),
        "dropped_windows": summary.get("dropped_windows"),
        "overall_accuracy": evaluation.overall_accuracy() if evaluation is not None else None,
        "best_symbol": ranked[0][0] if ranked else None,
        "worst_symbol": ranked[-1][0] if ranked else None,
    }


def _write_metrics_log(path: Path, record: Dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    file_exists = path.exists()
    with path.open("a", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=METRICS_LOG_FIELDS)
        if not file_exists:
            writer.writeheader()
        writer.writerow(record)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train and score a multi-symbol up/down model on a daily price panel")
    parser.add_argument("csv", help="Panel CSV with Date, Symbol, Open, Close columns")
    parser.add_argument("--train-fraction", type=float, default=None, help="Chronological train share (default 0.8)")
    parser.add_argument("--lookback", type=int, default=None, help="Days of history per window (default 12)")
    parser.add_argument("--horizon", type=int, default=None, help="Days ahead to label (default 3)")
    parser.add_argument("--epochs", type=int, default=None, help="Training epochs (default 25)")
    parser.add_argument("--batch-size", type=int, default=None, help="Training batch size (default 64)")
    parser.add_argument(
        "--eval-batch-size",
        type=int,
        default=None,
        help="Rows scored per evaluation chunk (default 256)",
    )
    parser.add_argument("--model-name", default=None, help=f"Saved model name (default {DEFAULT_MODEL_NAME})")
    parser.add_argument("--train", action="store_true", help="Force retraining even if a saved model exists")
    parser.add_argument("--timeline", action="store_true", help="Show per-window correctness for recent test dates")
    parser.add_argument("--limit", type=int, default=10, help="Rows to show in history/timeline tables")
    parser.add_argument("--export", action="store_true", help="Export accuracy (and timeline) CSVs to reports/")
    parser.add_argument(
        "--metrics-log",
        nargs="?",
        const="",
        default=None,
        help="Append a run summary row to a CSV (default reports/metrics_log.csv)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _print_epoch(metrics: EpochMetrics) -> None:
    line = f"Epoch {metrics.epoch} - loss={metrics.loss:.4f} acc={metrics.accuracy:.4f}"
    if metrics.val_accuracy is not None:
        line += f" val_acc={metrics.val_accuracy:.4f}"
    console.print(line)


async def _run(args: argparse.Namespace) -> Dict[str, object]:
    config = load_config(
        train_fraction=args.train_fraction,
        lookback=args.lookback,
        horizon=args.horizon,
        epochs=args.epochs,
        batch_size=args.batch_size,
        eval_batch_size=args.eval_batch_size,
        model_name=args.model_name,
    )
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # no signal handlers outside the main thread / on Windows

    try:
        return await run_analysis(
            args.csv,
            config,
            train=args.train,
            token=token,
            on_epoch_end=_print_epoch,
            collect_timeline=args.timeline or args.export,
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    console.print(f"Preparing dataset from [bold]{args.csv}[/bold]")
    try:
        analysis = asyncio.run(_run(args))
    except (FormatError, DataSufficiencyError, FileNotFoundError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 1
    except ValueError as exc:
        logger.exception("Analysis failed")
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 1

    render_dataset_summary(analysis["dataset"])
    training = analysis["training"]
    if training.loaded:
        console.print(f"Using saved model [bold]{analysis['meta']['model_name']}[/bold]")
    else:
        render_training_history(training.history, limit=args.limit)
    if not training.completed:
        console.print("[yellow]Training cancelled; model was not saved.[/yellow]")

    evaluation = analysis["evaluation"]
    render_accuracy(evaluation)
    if args.timeline and evaluation.completed:
        render_timeline(evaluation.timeline, limit=args.limit)

    if args.export and evaluation.completed:
        path = export_accuracy_csv(evaluation, default_export_name(analysis["meta"]["model_name"]))
        console.print(f"[green]Accuracy report saved to {path}[/green]")

    if args.metrics_log is not None:
        log_path = Path(args.metrics_log) if args.metrics_log else config_module.REPORT_DIR / METRICS_LOG_NAME
        _write_metrics_log(log_path, _build_metrics_record(analysis))
        console.print(f"[green]Metrics appended to {log_path}[/green]")

    return 0 if evaluation.completed else 130


if __name__ == "__main__":
    sys.exit(main())
