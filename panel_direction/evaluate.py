"""Chunked, cancellable accuracy aggregation over held-out windows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import DEFAULT_EVAL_BATCH_SIZE, DEFAULT_HORIZON

logger = logging.getLogger(__name__)

COMPLETED = "completed"
ABORTED = "aborted"

PredictFn = Callable[[np.ndarray], np.ndarray]


class CancellationToken:
    """Flag shared between the host and long-running loops.

    Loops only look at it at chunk or epoch boundaries; setting it never
    interrupts work already in progress.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @cancelled.setter
    def cancelled(self, value: bool) -> None:
        self._cancelled = bool(value)

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    def __bool__(self) -> bool:
        return self._cancelled


@dataclass
class EvaluationResult:
    status: str
    rows_processed: int
    symbols: List[str]
    symbol_accuracy: Optional[Dict[str, float]] = None
    day_accuracy: Optional[List[float]] = None
    timeline: Optional[pd.DataFrame] = None

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED

    @property
    def aborted(self) -> bool:
        return self.status == ABORTED

    def ranked_symbols(self) -> List[tuple[str, float]]:
        """Symbols ordered from best to worst accuracy."""
        if self.symbol_accuracy is None:
            return []
        return sorted(self.symbol_accuracy.items(), key=lambda item: (-item[1], item[0]))

    def overall_accuracy(self) -> Optional[float]:
        if self.day_accuracy is None:
            return None
        return float(np.mean(self.day_accuracy))

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "rows_processed": self.rows_processed,
            "symbol_accuracy": self.symbol_accuracy,
            "day_accuracy": self.day_accuracy,
            "overall_accuracy": self.overall_accuracy(),
        }


def correctness_matrix(
    probabilities: np.ndarray,
    labels: np.ndarray,
    n_symbols: int,
    horizon: int = DEFAULT_HORIZON,
    threshold: float = 0.5,
) -> np.ndarray:
    """Boolean ``[rows, S, horizon]`` grid of prediction == label."""
    probs = np.asarray(probabilities, dtype=np.float64)
    truth = np.asarray(labels)
    expected = (truth.shape[0], n_symbols * horizon)
    if truth.shape != expected:
        raise ValueError(f"Labels must be shaped {list(expected)}, got {list(truth.shape)}")
    if probs.shape != expected:
        raise ValueError(f"Predictions must be shaped {list(expected)}, got {list(probs.shape)}")
    predicted = probs > threshold
    return (predicted == (truth > threshold)).reshape(truth.shape[0], n_symbols, horizon)


def reference_accuracy(
    probabilities: np.ndarray,
    labels: np.ndarray,
    symbols: Sequence[str],
    horizon: int = DEFAULT_HORIZON,
) -> tuple[Dict[str, float], List[float]]:
    """Single-pass per-symbol and per-day accuracy over the full arrays."""
    correct = correctness_matrix(probabilities, labels, len(symbols), horizon)
    rows = correct.shape[0]
    if rows == 0:
        raise ValueError("No rows to evaluate.")
    per_symbol = correct.sum(axis=(0, 2)) / (rows * horizon)
    per_day = correct.sum(axis=(0, 1)) / (rows * len(symbols))
    return dict(zip(symbols, per_symbol.astype(float).tolist())), per_day.astype(float).tolist()


async def evaluate_accuracy(
    X_test: np.ndarray,
    y_test: np.ndarray,
    symbols: Sequence[str],
    predict: PredictFn,
    token: Optional[CancellationToken] = None,
    *,
    batch_size: int = DEFAULT_EVAL_BATCH_SIZE,
    horizon: int = DEFAULT_HORIZON,
    collect_timeline: bool = False,
    row_index: Optional[pd.Index] = None,
) -> EvaluationResult:
    """Accumulate directional accuracy chunk by chunk.

    The token is checked before every chunk; once it is set the loop stops and
    an aborted result without metrics is returned. Control goes back to the
    event loop after each chunk. Counts are integers, so the normalised result
    does not depend on ``batch_size``.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    symbols = list(symbols)
    n_symbols = len(symbols)
    n_rows = int(np.asarray(y_test).shape[0])
    if n_rows == 0:
        raise ValueError("No test windows to evaluate.")
    if int(np.asarray(X_test).shape[0]) != n_rows:
        raise ValueError("X_test and y_test row counts differ")

    symbol_correct = np.zeros(n_symbols, dtype=np.int64)
    day_correct = np.zeros(horizon, dtype=np.int64)
    timeline_parts: List[np.ndarray] = []
    processed = 0

    for start in range(0, n_rows, batch_size):
        if token is not None and token.cancelled:
            logger.info("Evaluation cancelled after %d of %d rows", processed, n_rows)
            return EvaluationResult(status=ABORTED, rows_processed=processed, symbols=symbols)
        stop = min(start + batch_size, n_rows)
        preds = predict(X_test[start:stop])
        correct = correctness_matrix(preds, y_test[start:stop], n_symbols, horizon)
        symbol_correct += correct.sum(axis=(0, 2))
        day_correct += correct.sum(axis=(0, 1))
        if collect_timeline:
            timeline_parts.append(correct.sum(axis=2) / horizon)
        processed = stop
        del preds, correct
        logger.debug("Evaluated rows %d-%d of %d", start, stop, n_rows)
        await asyncio.sleep(0)

    timeline = None
    if collect_timeline:
        index = row_index if row_index is not None else pd.RangeIndex(n_rows)
        timeline = pd.DataFrame(np.concatenate(timeline_parts, axis=0), index=index, columns=symbols)

    symbol_accuracy = symbol_correct / (processed * horizon)
    day_accuracy = day_correct / (processed * n_symbols)
    return EvaluationResult(
        status=COMPLETED,
        rows_processed=processed,
        symbols=symbols,
        symbol_accuracy=dict(zip(symbols, symbol_accuracy.astype(float).tolist())),
        day_accuracy=day_accuracy.astype(float).tolist(),
        timeline=timeline,
    )
