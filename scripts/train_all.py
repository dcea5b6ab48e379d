"""Batch training helper: retrain and score one model per panel CSV in a directory."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

import sys

import numpy as np
from rich.console import Console

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from panel_direction.config import load_config
from panel_direction.core import run_analysis
from panel_direction.data import DataSufficiencyError, FormatError

console = Console()
logger = logging.getLogger(__name__)
REPORT_PATH = ROOT_DIR / "reports" / "model_metrics_latest.json"


def _run_entry(csv_path: Path, epochs: int | None) -> Dict[str, object]:
    config = load_config(model_name=f"direction_{csv_path.stem}", epochs=epochs)
    analysis = asyncio.run(run_analysis(csv_path, config, train=True))
    evaluation = analysis["evaluation"]
    training = analysis["training"]
    final_epoch = training.history[-1].as_dict() if training.history else {}
    return {
        "label": csv_path.stem,
        "source": str(csv_path),
        "model_name": config.model_name,
        "training_time": datetime.now(timezone.utc).isoformat(),
        "dataset": analysis["dataset"],
        "final_epoch": final_epoch,
        "evaluation": evaluation.as_dict(),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Retrain direction models for every panel CSV in a directory")
    parser.add_argument("directory", type=Path, help="Directory holding panel CSV files")
    parser.add_argument("--epochs", type=int, default=None, help="Override training epochs")
    args = parser.parse_args()

    results: List[Dict[str, object]] = []
    failures: List[Dict[str, str]] = []
    for csv_path in sorted(args.directory.glob("*.csv")):
        console.rule(f"[bold cyan]Training {csv_path.stem}")
        try:
            entry = _run_entry(csv_path, args.epochs)
        except (FormatError, DataSufficiencyError) as exc:
            logger.warning("Skipping %s: %s", csv_path, exc)
            failures.append({"source": str(csv_path), "error": str(exc)})
            console.print(f"[yellow]Skipped {csv_path.name}: {exc}[/yellow]")
            continue
        results.append(entry)
        overall = entry["evaluation"].get("overall_accuracy")
        console.print(
            f"[green]Finished {entry['label']}[/green] | overall accuracy: "
            f"{overall if overall is None else f'{overall:.3f}'}"
        )

    accuracies = [
        run["evaluation"]["overall_accuracy"] for run in results if run["evaluation"].get("overall_accuracy") is not None
    ]
    timestamp = datetime.now(timezone.utc).isoformat()
    payload = {
        "generated_at": timestamp,
        "runs": results,
        "failures": failures,
        "summary": {
            "runs": len(results),
            "mean_accuracy": float(np.mean(accuracies)) if accuracies else None,
        },
    }
    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    history_path = REPORT_PATH.with_name("model_metrics_history.jsonl")
    with history_path.open("a", encoding="utf-8") as history_file:
        for run in results:
            history_file.write(json.dumps({"generated_at": timestamp, **run}, ensure_ascii=False) + "\n")
    console.print(f"[bold green]Saved metrics to {REPORT_PATH}[/bold green]")


if __name__ == "__main__":
    main()
