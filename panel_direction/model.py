"""Trainable direction model: build, epoch-wise fit, predict and persistence."""

from __future__ import annotations

import logging
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import joblib
import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import log_loss
from sklearn.neural_network import MLPClassifier

from .config import DEFAULT_HORIZON, DEFAULT_LOOKBACK, MODEL_DIR

logger = logging.getLogger(__name__)

PREDICTION_THRESHOLD = 0.5


@dataclass
class EpochMetrics:
    epoch: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def binary_accuracy(probabilities: np.ndarray, labels: np.ndarray) -> float:
    predicted = (np.asarray(probabilities) > PREDICTION_THRESHOLD).astype(np.float32)
    return float(np.mean(predicted == np.asarray(labels, dtype=np.float32)))


def binary_crossentropy(probabilities: np.ndarray, labels: np.ndarray) -> float:
    return float(log_loss(np.asarray(labels).ravel(), np.asarray(probabilities).ravel(), labels=[0, 1]))


class DirectionModel:
    """Multi-label up/down classifier over flattened lookback windows.

    One output per (symbol, horizon day), laid out symbol-major like the
    dataset labels. Training runs one epoch per ``iter_fit`` step so callers
    can observe and interrupt progress between epochs.
    """

    def __init__(
        self,
        hidden_layer_sizes: Tuple[int, ...] = (64, 32),
        learning_rate: float = 1e-3,
        random_state: int = 42,
    ) -> None:
        self.hidden_layer_sizes = tuple(hidden_layer_sizes)
        self.learning_rate = learning_rate
        self.random_state = random_state
        self.symbols: Optional[List[str]] = None
        self.lookback = DEFAULT_LOOKBACK
        self.horizon = DEFAULT_HORIZON
        self.estimator: Optional[MLPClassifier] = None
        self.epochs_trained = 0

    @property
    def n_outputs(self) -> int:
        if self.symbols is None:
            raise RuntimeError("Call build() first")
        return len(self.symbols) * self.horizon

    @property
    def is_fitted(self) -> bool:
        return self.estimator is not None and hasattr(self.estimator, "coefs_")

    def build(
        self,
        symbols: Sequence[str],
        lookback: int = DEFAULT_LOOKBACK,
        horizon: int = DEFAULT_HORIZON,
    ) -> "DirectionModel":
        if not symbols:
            raise ValueError("Model requires at least one symbol.")
        self.symbols = list(symbols)
        self.lookback = int(lookback)
        self.horizon = int(horizon)
        self.estimator = MLPClassifier(
            hidden_layer_sizes=self.hidden_layer_sizes,
            activation="tanh",
            solver="adam",
            learning_rate_init=self.learning_rate,
            max_iter=1,
            warm_start=True,
            shuffle=True,
            early_stopping=False,
            random_state=self.random_state,
        )
        self.epochs_trained = 0
        return self

    def _flatten(self, X: np.ndarray) -> np.ndarray:
        if self.symbols is None:
            raise RuntimeError("Call build() first")
        array = np.asarray(X, dtype=np.float64)
        expected = (self.lookback, 2 * len(self.symbols))
        if array.ndim != 3 or array.shape[1:] != expected:
            raise ValueError(f"Expected windows shaped [n, {expected[0]}, {expected[1]}], got {list(array.shape)}")
        return array.reshape(array.shape[0], -1)

    def _check_labels(self, y: np.ndarray, n_rows: int) -> np.ndarray:
        labels = np.asarray(y).astype(int)
        if labels.shape != (n_rows, self.n_outputs):
            raise ValueError(f"Expected labels shaped [{n_rows}, {self.n_outputs}], got {list(labels.shape)}")
        return labels

    def _fit_targets(self, labels: np.ndarray) -> np.ndarray:
        # sklearn reads a single column as one binary target, not a multilabel matrix
        return labels.ravel() if self.n_outputs == 1 else labels

    def _predict_proba(self, features: np.ndarray) -> np.ndarray:
        probs = np.asarray(self.estimator.predict_proba(features), dtype=np.float64)
        if self.n_outputs == 1:
            classes = list(self.estimator.classes_)
            if len(classes) == 1:
                probs = np.full((features.shape[0], 1), float(classes[0] == 1))
            else:
                probs = probs[:, [classes.index(1)]]
        return probs.reshape(features.shape[0], self.n_outputs)

    def iter_fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        *,
        epochs: int = 20,
        batch_size: int = 64,
        validation_data: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    ) -> Iterator[EpochMetrics]:
        """Train for ``epochs`` passes, yielding the metrics of each finished epoch."""
        if self.estimator is None:
            raise RuntimeError("Call build() first")
        if epochs < 1 or batch_size < 1:
            raise ValueError("epochs and batch_size must be positive")
        features = self._flatten(X)
        labels = self._check_labels(y, features.shape[0])
        if features.shape[0] == 0:
            raise ValueError("Cannot fit on an empty training set.")
        val_features = val_labels = None
        if validation_data is not None and len(validation_data[0]):
            val_features = self._flatten(validation_data[0])
            val_labels = self._check_labels(validation_data[1], val_features.shape[0])

        targets = self._fit_targets(labels)
        self.estimator.set_params(batch_size=min(batch_size, features.shape[0]))
        for _ in range(epochs):
            with warnings.catch_warnings():
                # one iteration per call never "converges"
                warnings.simplefilter("ignore", ConvergenceWarning)
                self.estimator.fit(features, targets)
            self.epochs_trained += 1
            train_probs = self._predict_proba(features)
            metrics = EpochMetrics(
                epoch=self.epochs_trained,
                loss=float(self.estimator.loss_),
                accuracy=binary_accuracy(train_probs, labels),
            )
            if val_features is not None:
                val_probs = self._predict_proba(val_features)
                metrics.val_loss = binary_crossentropy(val_probs, val_labels)
                metrics.val_accuracy = binary_accuracy(val_probs, val_labels)
            logger.debug("Epoch %d loss=%.4f acc=%.4f", metrics.epoch, metrics.loss, metrics.accuracy)
            yield metrics

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        *,
        epochs: int = 20,
        batch_size: int = 64,
        validation_data: Optional[Tuple[np.ndarray, np.ndarray]] = None,
        on_epoch_end: Optional[Callable[[EpochMetrics], None]] = None,
    ) -> List[EpochMetrics]:
        history: List[EpochMetrics] = []
        for metrics in self.iter_fit(
            X,
            y,
            epochs=epochs,
            batch_size=batch_size,
            validation_data=validation_data,
        ):
            history.append(metrics)
            if on_epoch_end is not None:
                on_epoch_end(metrics)
        return history

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Up-move probabilities shaped ``[n, S * horizon]``."""
        if not self.is_fitted:
            raise RuntimeError("Model has not been trained; call fit() or load() first")
        features = self._flatten(X)
        if features.shape[0] == 0:
            return np.empty((0, self.n_outputs), dtype=np.float64)
        return self._predict_proba(features)

    def is_compatible(self, symbols: Sequence[str], lookback: int, horizon: int) -> bool:
        return self.symbols == list(symbols) and self.lookback == lookback and self.horizon == horizon

    def save(self, name: str) -> Path:
        if not self.is_fitted:
            raise RuntimeError("Refusing to save an untrained model")
        MODEL_DIR.mkdir(parents=True, exist_ok=True)
        path = MODEL_DIR / f"{name}.joblib"
        joblib.dump(self, path, compress=3)
        logger.info("Saved model to %s", path)
        return path

    @classmethod
    def load(cls, name: str) -> "DirectionModel":
        path = MODEL_DIR / f"{name}.joblib"
        if not path.exists():
            raise FileNotFoundError(f"Model artifacts not found at {path}")
        model = joblib.load(path)
        if not isinstance(model, cls):
            raise ValueError(f"{path} does not contain a {cls.__name__}")
        return model


def model_exists(name: str) -> bool:
    return (MODEL_DIR / f"{name}.joblib").exists()
