"""Reusable analysis pipeline helpers for the CLI and batch scripts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .config import AnalyzerConfig, load_config
from .data import DataSufficiencyError
from .dataset import Dataset, load_dataset
from .evaluate import ABORTED, COMPLETED, CancellationToken, EvaluationResult, evaluate_accuracy
from .model import DirectionModel, EpochMetrics, model_exists

logger = logging.getLogger(__name__)

EpochCallback = Callable[[EpochMetrics], None]


@dataclass
class TrainingOutcome:
    status: str
    history: List[EpochMetrics] = field(default_factory=list)
    loaded: bool = False

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "loaded": self.loaded,
            "epochs": len(self.history),
            "history": [metrics.as_dict() for metrics in self.history],
        }


async def train_model(
    model: DirectionModel,
    dataset: Dataset,
    *,
    epochs: int,
    batch_size: int,
    token: Optional[CancellationToken] = None,
    on_epoch_end: Optional[EpochCallback] = None,
) -> TrainingOutcome:
    """Run training one epoch at a time, yielding to the event loop in between.

    The held-out split doubles as validation data so epoch metrics show
    generalisation as training progresses.
    """
    history: List[EpochMetrics] = []
    if token is not None and token.cancelled:
        return TrainingOutcome(status=ABORTED, history=history)
    validation = (dataset.X_test, dataset.y_test) if dataset.n_test else None
    epochs_iter = model.iter_fit(
        dataset.X_train,
        dataset.y_train,
        epochs=epochs,
        batch_size=batch_size,
        validation_data=validation,
    )
    for metrics in epochs_iter:
        history.append(metrics)
        if on_epoch_end is not None:
            on_epoch_end(metrics)
        await asyncio.sleep(0)
        if token is not None and token.cancelled and len(history) < epochs:
            epochs_iter.close()
            logger.info("Training cancelled after %d of %d epochs", len(history), epochs)
            return TrainingOutcome(status=ABORTED, history=history)
    return TrainingOutcome(status=COMPLETED, history=history)


async def ensure_model(
    model_name: str,
    dataset: Dataset,
    config: AnalyzerConfig,
    *,
    train: bool = False,
    token: Optional[CancellationToken] = None,
    on_epoch_end: Optional[EpochCallback] = None,
    model_factory: Callable[[], DirectionModel] = DirectionModel,
) -> tuple[DirectionModel, TrainingOutcome]:
    """Load a saved model matching the dataset layout, or train and save one."""
    if not train and model_exists(model_name):
        model = DirectionModel.load(model_name)
        if model.is_compatible(dataset.symbols, dataset.lookback, dataset.horizon):
            logger.info("Loaded saved model %s", model_name)
            return model, TrainingOutcome(status=COMPLETED, loaded=True)
        logger.warning("Saved model %s does not match the dataset layout; retraining", model_name)

    model = model_factory()
    model.build(dataset.symbols, lookback=dataset.lookback, horizon=dataset.horizon)
    outcome = await train_model(
        model,
        dataset,
        epochs=config.epochs,
        batch_size=config.batch_size,
        token=token,
        on_epoch_end=on_epoch_end,
    )
    if outcome.completed:
        model.save(model_name)
    return model, outcome


async def run_analysis(
    csv_path: Union[str, Path],
    config: Optional[AnalyzerConfig] = None,
    *,
    train: bool = False,
    token: Optional[CancellationToken] = None,
    on_epoch_end: Optional[EpochCallback] = None,
    collect_timeline: bool = False,
    model_factory: Callable[[], DirectionModel] = DirectionModel,
) -> Dict[str, Any]:
    """Load a panel CSV, fit or load the model, then score the held-out windows."""
    config = config or load_config()
    dataset = load_dataset(
        csv_path,
        train_fraction=config.train_fraction,
        lookback=config.lookback,
        horizon=config.horizon,
    )
    if dataset.n_train == 0 or dataset.n_test == 0:
        raise DataSufficiencyError(
            f"Need windows on both sides of the split (train={dataset.n_train}, test={dataset.n_test})"
        )

    model, training = await ensure_model(
        config.model_name,
        dataset,
        config,
        train=train,
        token=token,
        on_epoch_end=on_epoch_end,
        model_factory=model_factory,
    )
    result: Dict[str, Any] = {
        "meta": {
            "source": str(csv_path),
            "model_name": config.model_name,
            "train_fraction": config.train_fraction,
            "eval_batch_size": config.eval_batch_size,
        },
        "dataset": dataset.summary(),
        "training": training,
        "evaluation": None,
    }
    if not training.completed:
        result["evaluation"] = EvaluationResult(status=ABORTED, rows_processed=0, symbols=list(dataset.symbols))
        return result

    result["evaluation"] = await evaluate_accuracy(
        dataset.X_test,
        dataset.y_test,
        dataset.symbols,
        model.predict,
        token,
        batch_size=config.eval_batch_size,
        horizon=dataset.horizon,
        collect_timeline=collect_timeline,
        row_index=dataset.test_dates,
    )
    return result
